"""CLI commands for the backup policy: kk settings show/set."""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from pathlib import Path

import click

from kinkeeper.backup.settings import (
    coerce_setting,
    cron_expression,
    describe_schedule,
    load_settings,
    next_scheduled_time,
    save_settings,
)
from kinkeeper.cli.common import home_option, open_backend
from kinkeeper.core.models import BackupType, format_dt, to_snake

_SCHEDULED = (BackupType.DAILY, BackupType.WEEKLY, BackupType.MONTHLY)


@click.group("settings")
def settings_group() -> None:
    """Show or change the backup schedule and retention policy."""


@settings_group.command("show")
@home_option
def settings_show(home: Path | None) -> None:
    """Print the current backup policy and upcoming runs."""
    with open_backend(home) as backend:
        settings = load_settings(backend.db)

    for f in dataclasses.fields(settings):
        value = getattr(settings, f.name)
        if hasattr(value, "value"):
            value = value.value
        elif isinstance(value, list):
            value = ", ".join(value) or "-"
        click.echo(f"{f.name:<22} {value}")

    click.echo()
    now = datetime.now(timezone.utc)
    for backup_type in _SCHEDULED:
        line = describe_schedule(backup_type, settings)
        cron = cron_expression(backup_type, settings)
        if cron is not None:
            line += f"  [{cron}]  next {format_dt(next_scheduled_time(backup_type, settings, now))}"
        click.echo(line)


@settings_group.command("set")
@home_option
@click.argument("key")
@click.argument("value")
def settings_set(home: Path | None, key: str, value: str) -> None:
    """Change one setting, e.g. `kk settings set daily_time 01:30`."""
    name = to_snake(key).replace("-", "_")
    with open_backend(home) as backend:
        settings = load_settings(backend.db)
        try:
            setattr(settings, name, coerce_setting(name, value))
            save_settings(backend.db, settings)
        except KeyError as e:
            raise click.ClickException(f"Unknown setting: {key}") from e
        except ValueError as e:
            raise click.ClickException(str(e)) from e

    click.echo(f"{name} = {getattr(settings, name)!r}")
