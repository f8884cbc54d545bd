"""CLI commands for user accounts: kk user add/list."""

from __future__ import annotations

import sqlite3
import uuid
from pathlib import Path

import click

from kinkeeper.cli.common import home_option, open_backend
from kinkeeper.core.models import User, UserRole


@click.group("user")
def user_group() -> None:
    """Manage user accounts."""


@user_group.command("add")
@home_option
@click.argument("email")
@click.option("--name", default=None, help="Display name.")
@click.option(
    "--role", type=click.Choice([r.value for r in UserRole]), default=UserRole.VIEWER.value,
    show_default=True,
)
def user_add(home: Path | None, email: str, name: str | None, role: str) -> None:
    """Create a user account."""
    user = User(id=str(uuid.uuid4()), email=email.strip(), name=name, role=role)
    with open_backend(home) as backend:
        if backend.db.find_user_by_email(user.email) is not None:
            raise click.ClickException(f"User already exists: {email}")
        try:
            with backend.db.transaction():
                backend.db.insert_record(user)
        except sqlite3.IntegrityError as e:
            raise click.ClickException(f"Cannot create user: {e}") from e

    click.echo(f"Created {role} {user.email} ({user.id})")


@user_group.command("list")
@home_option
def user_list(home: Path | None) -> None:
    """List user accounts."""
    with open_backend(home) as backend:
        users = backend.db.list_records(User, order_by="created_at, id")

    if not users:
        click.echo("No users.")
        return
    for user in users:
        state = "" if user.is_active else "  (inactive)"
        click.echo(f"{user.email:<32} {user.role:<7} {user.name or ''}{state}")
