"""Backup orchestration: export, validate, import, scheduled backups, rotation."""

from __future__ import annotations

import logging
import mimetypes
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from kinkeeper.backup.archive import decode, encode, photo_archive_path, photo_person_id
from kinkeeper.backup.errors import (
    DecodeError,
    ImportInProgressError,
    ImportRefusedError,
)
from kinkeeper.backup.gather import build_metadata, gather
from kinkeeper.backup.resolver import ConflictResolver, ImportOutcome
from kinkeeper.backup.settings import (
    BackupSettings,
    backup_filename,
    load_settings,
    retention_for,
)
from kinkeeper.backup.types import (
    ArchiveLimits,
    BackupMetadata,
    DecodedArchive,
    ExportOptions,
    ImportOptions,
    ImportResult,
    PhotoRef,
    ValidationOptions,
    ValidationResult,
)
from kinkeeper.backup.validator import BackupValidator
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.fileutil import LockTimeout, file_lock
from kinkeeper.core.models import (
    Actor,
    AuditLog,
    Backup,
    BackupStatus,
    BackupType,
    ConflictResolutionStrategy,
    Person,
    User,
    format_dt,
)
from kinkeeper.providers.storage import StorageAdapter, create_storage

log = logging.getLogger(__name__)

IMPORT_ACTION = "BACKUP_IMPORT"
IMPORT_FAILED_ACTION = "BACKUP_IMPORT_FAILED"

# Called with the finished backup record and the policy in force
Notifier = Callable[[Backup, BackupSettings], None]


@dataclass
class ExportedArchive:
    filename: str
    data: bytes
    metadata: BackupMetadata
    warnings: list[str] = field(default_factory=list)


class BackupService:
    """Entry points used by the CLI (and any other front end).

    Args:
        db: The family database.
        storage: Adapter holding uploaded photos.
        config: Merged configuration (see ``kinkeeper.core.config``).
        notifier: Optional callback for finished scheduled backups.
    """

    def __init__(
        self,
        db: FamilyDB,
        storage: StorageAdapter,
        config: dict | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.db = db
        self.storage = storage
        self.config = config or {}
        self.notifier = notifier
        backup_cfg = self.config.get("backup", {})
        self.limits = ArchiveLimits.from_config(self.config)
        self.lock_timeout = float(backup_cfg.get("lock_timeout_seconds", 30))
        self.audit_log_days = int(backup_cfg.get("audit_log_days", 90))

    # --- Export ---

    def export_archive(
        self,
        actor: Actor,
        options: ExportOptions | None = None,
        compress_level: int = 6,
        now: datetime | None = None,
    ) -> ExportedArchive:
        """Snapshot the dataset and encode it as archive bytes."""
        now = now or datetime.now(timezone.utc)
        data = gather(self.db, options, now=now)
        blobs, warnings = self._load_photos(data.photos)
        metadata = build_metadata(data, actor, blobs, exported_at=format_dt(now))
        archive = encode(metadata, data, blobs, compress_level=compress_level)
        filename = backup_filename(BackupType.MANUAL, now)
        log.info(
            "Exported %s: %d people, %d photos, %d bytes",
            filename, metadata.statistics.total_people, len(blobs), len(archive),
        )
        return ExportedArchive(filename=filename, data=archive, metadata=metadata, warnings=warnings)

    def _load_photos(self, photos: tuple[PhotoRef, ...]) -> tuple[dict[str, bytes], list[str]]:
        blobs: dict[str, bytes] = {}
        warnings: list[str] = []
        for ref in photos:
            path = self.storage.path_from_url(ref.photo_url)
            if path is None:
                warnings.append(
                    f"Photo of person {ref.person_id} is not in {self.storage.name} storage: "
                    f"{ref.photo_url}"
                )
                continue
            try:
                blobs[photo_archive_path(ref.person_id, path)] = self.storage.read(path)
            except (OSError, ValueError) as e:
                log.warning("Cannot read photo %s: %s", path, e)
                warnings.append(f"Photo of person {ref.person_id} could not be read: {e}")
        return blobs, warnings

    # --- Validate ---

    def validate_archive(
        self, archive: bytes, options: ValidationOptions | None = None
    ) -> ValidationResult:
        return BackupValidator(self.db, self.limits).validate(archive, options)

    # --- Import ---

    def import_archive(
        self,
        archive: bytes,
        strategy: ConflictResolutionStrategy | str,
        actor: Actor,
        options: ImportOptions | None = None,
    ) -> ImportResult:
        """Import an archive while holding the dataset lock.

        Raises:
            ImportInProgressError: another import holds the lock.
            ImportRefusedError: the archive does not decode or validate; nothing
                but the audit entry was written.
        """
        strategy = ConflictResolutionStrategy(strategy)
        options = options or ImportOptions()
        try:
            with file_lock(self.db.db_path, timeout=self.lock_timeout):
                return self._import_locked(archive, strategy, actor, options)
        except LockTimeout as e:
            raise ImportInProgressError(
                f"Another import is running on {self.db.db_path}"
            ) from e

    def _import_locked(
        self,
        archive: bytes,
        strategy: ConflictResolutionStrategy,
        actor: Actor,
        options: ImportOptions,
    ) -> ImportResult:
        try:
            decoded = decode(archive, self.limits)
        except DecodeError as e:
            raise self._refused(actor, strategy, [str(e)]) from e

        # High-severity conflicts are handled by the strategy, not refused
        validation = BackupValidator(self.db, self.limits).evaluate(
            decoded, ValidationOptions(allow_high_severity=True)
        )
        if validation.errors:
            raise self._refused(actor, strategy, validation.errors)

        try:
            backup_created = None
            if options.create_backup_before_import:
                pre_import = self.perform_backup(BackupType.MANUAL, actor, pre_import=True)
                backup_created = pre_import.created_at

            resolver = ConflictResolver(
                self.db, strategy, actor, include_audit_logs=options.import_audit_logs
            )
            outcome = resolver.import_data(decoded, options.conflicts, cancel=options.cancel)
            if options.import_photos and not outcome.cancelled:
                self._import_photos(decoded, outcome)
        except Exception as e:
            self._audit(actor, IMPORT_FAILED_ACTION, {"strategy": strategy.value, "error": str(e)})
            raise

        result = ImportResult(
            success=not outcome.errors,
            imported_by=actor,
            strategy=strategy,
            statistics=outcome.statistics,
            backup_created=backup_created,
            errors=outcome.errors,
            warnings=validation.warnings + outcome.warnings,
        )
        self._audit(actor, IMPORT_ACTION, result.to_dict())
        log.info("Import by %s finished: success=%s", actor.email, result.success)
        return result

    def _refused(
        self, actor: Actor, strategy: ConflictResolutionStrategy, errors: list[str]
    ) -> ImportRefusedError:
        """Audit a refused import and build the error to raise."""
        self._audit(
            actor, IMPORT_FAILED_ACTION,
            {"strategy": strategy.value, "error": "; ".join(errors), "refused": True},
        )
        log.warning("Import by %s refused: %s", actor.email, "; ".join(errors))
        return ImportRefusedError(errors)

    def _import_photos(self, decoded: DecodedArchive, outcome: ImportOutcome) -> None:
        """Store archived photos of people this import wrote and point them at it."""
        for entry_name, blob in sorted(decoded.photos().items()):
            archive_person_id = photo_person_id(entry_name)
            person_id = outcome.written_people.get(archive_person_id)
            if person_id is None:
                continue
            filename = entry_name.rsplit("/", 1)[1]
            mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
            try:
                path = self.storage.upload(blob, filename, mime_type, folder=f"photos/{person_id}")
                with self.db.transaction():
                    person = self.db.get_record(Person, person_id)
                    if person is None:
                        continue
                    self.db.update_record(
                        person.with_changes(photo_url=self.storage.get_url(path))
                    )
            except OSError as e:
                log.warning("Cannot store photo %s: %s", entry_name, e)
                outcome.warnings.append(f"Photo {entry_name} could not be stored: {e}")
                continue
            outcome.statistics.photos_imported += 1

    def _audit(self, actor: Actor, action: str, payload: dict) -> None:
        if not self.db.exists(User, actor.id):
            log.warning("Not auditing %s: actor %s is not a user", action, actor.id)
            return
        entry = AuditLog(
            user_id=actor.id,
            action=action,
            entity_type="Backup",
            new_data=payload,
        )
        with self.db.transaction():
            self.db.insert_record(entry)

    def import_history(self, limit: int = 50) -> list[AuditLog]:
        """Import audit entries, newest first."""
        entries = self.db.list_records(
            AuditLog,
            where="action IN (?, ?)",
            params=(IMPORT_ACTION, IMPORT_FAILED_ACTION),
            order_by="created_at DESC, rowid DESC",
        )
        return entries[:limit]

    # --- Scheduled backups ---

    def perform_backup(
        self,
        backup_type: BackupType | str,
        actor: Actor,
        settings: BackupSettings | None = None,
        *,
        pre_import: bool = False,
    ) -> Backup:
        """Produce, store and record one backup, then apply retention.

        On failure the record ends FAILED with the error and the exception
        propagates.
        """
        backup_type = BackupType(backup_type)
        settings = settings or load_settings(self.db)
        now = datetime.now(timezone.utc)
        backup = Backup(
            filename=backup_filename(backup_type, now, pre_import=pre_import),
            type=backup_type,
            location=settings.storage_provider,
        )
        with self.db.transaction():
            self.db.insert_backup(backup)
            backup.transition(BackupStatus.IN_PROGRESS)
            self.db.update_backup(backup)

        start = time.monotonic()
        try:
            options = ExportOptions(
                include_photos=settings.include_photos,
                include_audit_logs=settings.include_audit_logs,
                audit_log_days=self.audit_log_days,
            )
            exported = self.export_archive(
                actor, options, compress_level=settings.compress_level, now=now
            )
            target = create_storage(settings.storage_provider, self.config)
            backup.path = target.upload(
                exported.data, backup.filename, "application/zip", folder=settings.storage_path
            )
            stats = exported.metadata.statistics
            backup.size = len(exported.data)
            backup.person_count = stats.total_people
            backup.relationship_count = stats.total_relationships
            backup.user_count = stats.total_users
            backup.suggestion_count = stats.total_suggestions
            backup.photo_count = stats.total_photos
            backup.audit_log_count = stats.total_audit_logs
            backup.duration = int((time.monotonic() - start) * 1000)
            backup.transition(BackupStatus.COMPLETED)
            with self.db.transaction():
                self.db.update_backup(backup)
        except Exception as e:
            backup.error = str(e)
            backup.duration = int((time.monotonic() - start) * 1000)
            backup.transition(BackupStatus.FAILED)
            with self.db.transaction():
                self.db.update_backup(backup)
            log.error("Backup %s failed: %s", backup.filename, e)
            self._notify(backup, settings)
            raise

        log.info("Backup %s completed (%d bytes)", backup.filename, backup.size)
        self._notify(backup, settings)
        if not pre_import:
            self.rotate_backups(backup_type, settings)
        return backup

    def rotate_backups(
        self, backup_type: BackupType | str, settings: BackupSettings | None = None
    ) -> list[Backup]:
        """Delete completed backups beyond the retention count. Returns the deleted ones."""
        backup_type = BackupType(backup_type)
        settings = settings or load_settings(self.db)
        keep = retention_for(backup_type, settings)
        if keep is None:
            return []

        completed = self.db.list_backups(
            backup_type=backup_type, status=BackupStatus.COMPLETED, limit=-1
        )
        expired = completed[keep:]
        for backup in expired:
            if backup.path:
                try:
                    create_storage(backup.location, self.config).delete(backup.path)
                except (OSError, KeyError, ValueError) as e:
                    log.warning("Cannot delete stored backup %s: %s", backup.path, e)
            backup.transition(BackupStatus.DELETED)
            with self.db.transaction():
                self.db.update_backup(backup)
        if expired:
            log.info(
                "Rotated %d %s backup(s), keeping %d",
                len(expired), backup_type.value.lower(), keep,
            )
        return expired

    def _notify(self, backup: Backup, settings: BackupSettings) -> None:
        if self.notifier is None:
            return
        wanted = (
            backup.status == BackupStatus.COMPLETED and settings.notify_on_success
        ) or (backup.status == BackupStatus.FAILED and settings.notify_on_failure)
        if not wanted:
            return
        try:
            self.notifier(backup, settings)
        except Exception:
            log.warning("Backup notification failed", exc_info=True)
