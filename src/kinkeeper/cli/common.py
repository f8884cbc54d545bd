"""Shared plumbing for kk commands: home/config resolution, logging, actor lookup."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import click

from kinkeeper.backup.service import BackupService
from kinkeeper.core.config import config_path, database_path, load_config, resolve_home
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import Actor, StorageProvider, UserRole
from kinkeeper.providers.storage import create_storage

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

home_option = click.option(
    "--home",
    type=click.Path(path_type=Path),
    default=None,
    help="Override KK_HOME path.",
)


@dataclass
class Backend:
    home: Path
    config: dict
    db: FamilyDB
    service: BackupService


def load_home(home: Path | None) -> tuple[Path, dict]:
    """Resolve the home directory and load its config.yaml."""
    home_path = (home or resolve_home()).expanduser().resolve()
    config = load_config(config_path(home_path))
    config["home"] = str(home_path)
    return home_path, config


def setup_logging(config: dict) -> None:
    """Configure root logging from config (``--verbose`` forces debug)."""
    ctx = click.get_current_context(silent=True)
    verbose = bool(ctx and ctx.find_root().params.get("verbose"))
    level_name = "debug" if verbose else config.get("logging", {}).get("level", "info")
    logging.basicConfig(
        level=getattr(logging, str(level_name).upper(), logging.INFO),
        format=LOG_FORMAT,
    )


@contextmanager
def open_backend(home: Path | None) -> Iterator[Backend]:
    """Open the database and backup service for one command."""
    home_path, config = load_home(home)
    setup_logging(config)
    db = FamilyDB(database_path(config))
    try:
        provider = StorageProvider(str(config["storage"]["provider"]).upper())
        try:
            storage = create_storage(provider, config)
        except KeyError as e:
            raise click.ClickException(f"No storage adapter for {provider.value}") from e
        yield Backend(
            home=home_path,
            config=config,
            db=db,
            service=BackupService(db, storage, config),
        )
    finally:
        db.close()


def resolve_actor(db: FamilyDB, email: str) -> Actor:
    """Map ``--as`` to an administrator, refusing anyone else."""
    user = db.find_user_by_email(email)
    if user is None:
        raise click.ClickException(f"No user with email {email}")
    if user.role != UserRole.ADMIN.value or not user.is_active:
        raise click.ClickException(f"{email} is not an active administrator")
    return Actor(id=user.id, email=user.email, name=user.name)
