"""CLI commands for backups: kk backup export/validate/import/run/list/rotate/history."""

from __future__ import annotations

import json
from pathlib import Path

import click

from kinkeeper.backup.errors import BackupError
from kinkeeper.backup.types import ExportOptions, ImportOptions, ValidationOptions
from kinkeeper.cli.common import home_option, open_backend, resolve_actor
from kinkeeper.core.fileutil import atomic_write_bytes
from kinkeeper.core.models import BackupStatus, BackupType, ConflictResolutionStrategy

_STRATEGIES = [s.value for s in ConflictResolutionStrategy]
_TYPES = [t.value.lower() for t in BackupType]


@click.group("backup")
def backup_group() -> None:
    """Export, validate and import family backups."""


@backup_group.command("export")
@home_option
@click.option("--as", "as_email", required=True, help="Administrator e-mail.")
@click.option(
    "--output", "-o", type=click.Path(path_type=Path), default=None,
    help="Archive path (default: ./<generated name>).",
)
@click.option("--photos/--no-photos", default=True, help="Include photos.")
@click.option("--audit-logs/--no-audit-logs", default=True, help="Include audit logs.")
@click.option("--audit-log-days", type=int, default=None, help="Audit log window in days (1-365).")
def backup_export(
    home: Path | None,
    as_email: str,
    output: Path | None,
    photos: bool,
    audit_logs: bool,
    audit_log_days: int | None,
) -> None:
    """Write a backup archive of the whole family dataset."""
    with open_backend(home) as backend:
        actor = resolve_actor(backend.db, as_email)
        options = ExportOptions(
            include_photos=photos,
            include_audit_logs=audit_logs,
            audit_log_days=audit_log_days or backend.service.audit_log_days,
        )
        try:
            exported = backend.service.export_archive(actor, options)
        except ValueError as e:
            raise click.ClickException(str(e)) from e

    target = output or Path.cwd() / exported.filename
    atomic_write_bytes(target, exported.data)

    stats = exported.metadata.statistics
    click.echo(f"Exported {target} ({len(exported.data)} bytes)")
    click.echo(
        f"  {stats.total_people} people, {stats.total_relationships} relationships, "
        f"{stats.total_users} users, {stats.total_suggestions} suggestions, "
        f"{stats.total_photos} photos, {stats.total_audit_logs} audit logs"
    )
    for warning in exported.warnings:
        click.echo(f"  Warning: {warning}")


@backup_group.command("validate")
@home_option
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--approve", "approved", multiple=True, help="Approve a conflict key (repeatable).")
@click.option("--allow-high", is_flag=True, help="Approve every high-severity conflict.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def backup_validate(
    ctx: click.Context,
    home: Path | None,
    archive: Path,
    approved: tuple[str, ...],
    allow_high: bool,
    as_json: bool,
) -> None:
    """Check an archive against the live dataset without changing anything."""
    options = ValidationOptions(approved_conflicts=frozenset(approved), allow_high_severity=allow_high)
    with open_backend(home) as backend:
        result = backend.service.validate_archive(archive.read_bytes(), options)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(f"Valid: {'yes' if result.is_valid else 'no'}")
        if result.metadata:
            click.echo(
                f"Exported {result.metadata.exported_at} by {result.metadata.exported_by.email}"
            )
        click.echo(f"Conflicts: {result.statistics.total_conflicts}")
        for conflict in result.conflicts:
            click.echo(
                f"  [{conflict.severity.value}] {conflict.key} ({conflict.action.value}): "
                f"{conflict.description}"
            )
        for error in result.errors:
            click.echo(f"Error: {error}")
        for warning in result.warnings:
            click.echo(f"Warning: {warning}")
        duration = result.estimated_duration
        click.echo(f"Estimated import time: {duration.min_seconds}-{duration.max_seconds}s")

    if not result.is_valid:
        ctx.exit(1)


@backup_group.command("import")
@home_option
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--as", "as_email", required=True, help="Administrator e-mail.")
@click.option(
    "--strategy", type=click.Choice(_STRATEGIES), default="skip", show_default=True,
    help="How to resolve conflicting records.",
)
@click.option("--backup/--no-backup", "pre_backup", default=True, help="Back up before importing.")
@click.option("--photos/--no-photos", default=True, help="Import photos.")
@click.option("--audit-logs", is_flag=True, help="Import audit logs too.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def backup_import(
    ctx: click.Context,
    home: Path | None,
    archive: Path,
    as_email: str,
    strategy: str,
    pre_backup: bool,
    photos: bool,
    audit_logs: bool,
    as_json: bool,
) -> None:
    """Import an archive into the live dataset."""
    options = ImportOptions(
        create_backup_before_import=pre_backup,
        import_photos=photos,
        import_audit_logs=audit_logs,
    )
    with open_backend(home) as backend:
        actor = resolve_actor(backend.db, as_email)
        try:
            result = backend.service.import_archive(archive.read_bytes(), strategy, actor, options)
        except BackupError as e:
            raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        stats = result.statistics
        click.echo(f"Import {'succeeded' if result.success else 'finished with errors'} ({strategy})")
        click.echo(
            f"  people {stats.people_imported}, relationships {stats.relationships_imported}, "
            f"users {stats.users_imported}, suggestions {stats.suggestions_imported}, "
            f"photos {stats.photos_imported}, audit logs {stats.audit_logs_imported}"
        )
        click.echo(
            f"  conflicts resolved {stats.conflicts_resolved}, skipped {stats.skipped_items}"
        )
        if result.backup_created:
            click.echo(f"  Pre-import backup taken at {result.backup_created}")
        for error in result.errors:
            click.echo(f"Error: {error}")
        for warning in result.warnings:
            click.echo(f"Warning: {warning}")

    if not result.success:
        ctx.exit(1)


@backup_group.command("run")
@home_option
@click.option("--as", "as_email", required=True, help="Administrator e-mail.")
@click.option(
    "--type", "backup_type", type=click.Choice(_TYPES), default="manual", show_default=True,
)
def backup_run(home: Path | None, as_email: str, backup_type: str) -> None:
    """Produce and store a backup now, then apply retention."""
    with open_backend(home) as backend:
        actor = resolve_actor(backend.db, as_email)
        try:
            backup = backend.service.perform_backup(BackupType(backup_type.upper()), actor)
        except Exception as e:
            raise click.ClickException(f"Backup failed: {e}") from e

    click.echo(f"Backup {backup.filename} completed")
    click.echo(
        f"  {backup.size} bytes, {backup.person_count} people, "
        f"{backup.photo_count} photos ({backup.duration} ms)"
    )


@backup_group.command("list")
@home_option
@click.option("--type", "backup_type", type=click.Choice(_TYPES), default=None)
@click.option(
    "--status", type=click.Choice([s.value.lower() for s in BackupStatus]), default=None,
)
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted backups.")
@click.option("--limit", type=int, default=50, show_default=True)
def backup_list(
    home: Path | None,
    backup_type: str | None,
    status: str | None,
    include_deleted: bool,
    limit: int,
) -> None:
    """List recorded backups, newest first."""
    with open_backend(home) as backend:
        backups = backend.db.list_backups(
            backup_type=BackupType(backup_type.upper()) if backup_type else None,
            status=BackupStatus(status.upper()) if status else None,
            include_deleted=include_deleted,
            limit=limit,
        )

    if not backups:
        click.echo("No backups found.")
        return
    for backup in backups:
        size = backup.size if backup.size is not None else "?"
        line = f"{backup.created_at}  {backup.type.value:<8} {backup.status.value:<11} {size:>10}  {backup.filename}"
        if backup.error:
            line += f"  ({backup.error})"
        click.echo(line)


@backup_group.command("rotate")
@home_option
@click.option("--type", "backup_type", type=click.Choice(_TYPES[:3]), required=True)
def backup_rotate(home: Path | None, backup_type: str) -> None:
    """Delete completed backups beyond the retention count."""
    with open_backend(home) as backend:
        deleted = backend.service.rotate_backups(BackupType(backup_type.upper()))

    if not deleted:
        click.echo("Nothing to rotate.")
        return
    for backup in deleted:
        click.echo(f"Deleted {backup.filename}")


@backup_group.command("history")
@home_option
@click.option("--limit", type=int, default=50, show_default=True)
def backup_history(home: Path | None, limit: int) -> None:
    """Show recent imports."""
    with open_backend(home) as backend:
        entries = backend.service.import_history(limit=limit)

    if not entries:
        click.echo("No imports recorded.")
        return
    for entry in entries:
        data = entry.new_data or {}
        stats = data.get("statistics", {})
        detail = data.get("error") or (
            f"{data.get('strategy', '?')}: {stats.get('peopleImported', 0)} people, "
            f"{stats.get('skippedItems', 0)} skipped"
        )
        click.echo(f"{entry.created_at}  {entry.action:<22} {detail}")
