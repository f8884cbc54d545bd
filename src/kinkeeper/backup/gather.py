"""Snapshot gatherer: one consistent read of the live dataset."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from kinkeeper.backup.types import (
    ARCHIVE_VERSION,
    AUDIT_LOGS_FILE,
    PEOPLE_FILE,
    PHOTO_PREFIX,
    RELATIONSHIPS_FILE,
    SETTINGS_FILE,
    SUGGESTIONS_FILE,
    USERS_FILE,
    BackupData,
    BackupMetadata,
    BackupStatistics,
    ExportOptions,
    PhotoRef,
)
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import (
    Actor,
    AuditLog,
    Person,
    Relationship,
    Suggestion,
    User,
    format_dt,
)

log = logging.getLogger(__name__)


def gather(
    db: FamilyDB,
    options: ExportOptions | None = None,
    now: datetime | None = None,
) -> BackupData:
    """Read every exported collection inside a single read transaction.

    Args:
        db: The family database.
        options: What to include. ``audit_log_days`` must be in [1, 365].
        now: Reference time for the audit log window (default: current UTC time).

    Returns:
        An immutable snapshot; later writes to the database are not visible in it.
    """
    options = options or ExportOptions()
    options.validate()
    now = now or datetime.now(timezone.utc)

    with db.snapshot():
        people = db.list_records(Person, order_by="last_name, first_name, id")
        relationships = db.list_records(Relationship, order_by="created_at, id")
        users = db.list_records(User, order_by="created_at, id")
        suggestions = db.list_records(Suggestion, order_by="submitted_at, id")
        settings = db.get_family_settings()

        audit_logs = None
        if options.include_audit_logs:
            cutoff = format_dt(now - timedelta(days=options.audit_log_days))
            audit_logs = tuple(
                db.list_records(
                    AuditLog,
                    where="created_at >= ? AND created_at <= ?",
                    params=(cutoff, format_dt(now)),
                    order_by="created_at, id",
                )
            )

    photos: tuple[PhotoRef, ...] = ()
    if options.include_photos:
        photos = tuple(PhotoRef(p.id, p.photo_url) for p in people if p.photo_url)

    log.debug(
        "Gathered %d people, %d relationships, %d users, %d suggestions, %s audit logs",
        len(people), len(relationships), len(users), len(suggestions),
        "no" if audit_logs is None else len(audit_logs),
    )
    return BackupData(
        people=tuple(people),
        relationships=tuple(relationships),
        users=tuple(users),
        suggestions=tuple(suggestions),
        settings=settings,
        audit_logs=audit_logs,
        photos=photos,
        audit_log_days=options.audit_log_days if options.include_audit_logs else 0,
    )


def build_metadata(
    data: BackupData,
    exported_by: Actor,
    photo_blobs: dict[str, bytes] | None = None,
    exported_at: str | None = None,
) -> BackupMetadata:
    """Manifest for ``data``. Counts are taken from the snapshot itself."""
    photo_blobs = photo_blobs or {}

    data_files = [PEOPLE_FILE, RELATIONSHIPS_FILE, USERS_FILE, SUGGESTIONS_FILE]
    if data.settings is not None:
        data_files.append(SETTINGS_FILE)
    if data.audit_logs is not None:
        data_files.append(AUDIT_LOGS_FILE)

    photo_directories = sorted(
        {name.rsplit("/", 1)[0] for name in photo_blobs if name.startswith(PHOTO_PREFIX)}
    )

    return BackupMetadata(
        version=ARCHIVE_VERSION,
        exported_at=exported_at or format_dt(datetime.now(timezone.utc)),
        exported_by=exported_by,
        statistics=BackupStatistics(
            total_people=len(data.people),
            total_relationships=len(data.relationships),
            total_users=len(data.users),
            total_suggestions=len(data.suggestions),
            total_photos=len(photo_blobs),
            audit_log_days=data.audit_log_days,
            total_audit_logs=len(data.audit_logs or ()),
        ),
        data_files=data_files,
        photo_directories=photo_directories,
    )
