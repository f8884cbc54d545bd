"""CLI command for initializing a kinkeeper home."""

from __future__ import annotations

import logging
from pathlib import Path

import click
import yaml

from kinkeeper.backup.settings import load_settings
from kinkeeper.core.config import DEFAULTS, config_path, database_path, resolve_home
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.fileutil import ensure_dir
from kinkeeper.core.models import FamilySettings

log = logging.getLogger(__name__)


@click.command("init")
@click.argument("path", required=False, type=click.Path(path_type=Path), default=None)
@click.option("--family-name", default="Our Family", show_default=True, help="Family name.")
def init_cmd(path: Path | None, family_name: str) -> None:
    """Initialize a kinkeeper home.

    Creates the config file, the family database with default family and
    backup settings, and the upload directory. PATH defaults to ~/kinkeeper
    (or KK_HOME if set).
    """
    home = (path or resolve_home()).expanduser().resolve()
    cfg_path = config_path(home)

    if cfg_path.exists():
        click.echo(f"Already initialized at {home}")
        return

    ensure_dir(cfg_path.parent)
    cfg_path.write_text(
        yaml.dump(_default_config(), default_flow_style=False, allow_unicode=True, sort_keys=False),
        encoding="utf-8",
    )

    config = dict(DEFAULTS, home=str(home))
    ensure_dir(home / DEFAULTS["storage"]["path"])
    db = FamilyDB(database_path(config))
    try:
        if db.get_family_settings() is None:
            with db.transaction():
                db.insert_record(FamilySettings(family_name=family_name))
        load_settings(db)
    finally:
        db.close()
    log.info("Initialized kinkeeper home at %s", home)

    click.echo(f"Initialized kinkeeper at {home}")
    click.echo()
    click.echo("Next steps:")
    click.echo("  kk user add you@example.com --role ADMIN    Create an administrator")
    click.echo("  kk backup export --as you@example.com       Export a backup archive")
    click.echo("  kk settings show                            Review the backup schedule")


def _default_config() -> dict:
    """Default config.yaml content."""
    return {
        "database": DEFAULTS["database"],
        "storage": DEFAULTS["storage"],
        "backup": DEFAULTS["backup"],
        "logging": DEFAULTS["logging"],
    }
