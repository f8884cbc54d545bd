"""Shared types for export, validation and import of backup archives."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from kinkeeper.core.models import (
    Actor,
    AuditLog,
    ConflictAction,
    ConflictResolutionStrategy,
    EntityType,
    FamilySettings,
    Person,
    Record,
    Relationship,
    Severity,
    Suggestion,
    User,
    format_dt,
    to_camel,
)

ARCHIVE_VERSION = "1.0.0"
SUPPORTED_VERSIONS = ("1.0.0",)

METADATA_FILE = "metadata.json"
PEOPLE_FILE = "data/people.json"
RELATIONSHIPS_FILE = "data/relationships.json"
USERS_FILE = "data/users.json"
SUGGESTIONS_FILE = "data/suggestions.json"
SETTINGS_FILE = "data/settings.json"
AUDIT_LOGS_FILE = "data/audit-logs.json"
PHOTO_PREFIX = "photos/"

# Archive order; also the order data files are listed in metadata
COLLECTION_FILES: dict[str, type[Record]] = {
    PEOPLE_FILE: Person,
    RELATIONSHIPS_FILE: Relationship,
    USERS_FILE: User,
    SUGGESTIONS_FILE: Suggestion,
    SETTINGS_FILE: FamilySettings,
    AUDIT_LOGS_FILE: AuditLog,
}

REQUIRED_DATA_FILES = (PEOPLE_FILE, RELATIONSHIPS_FILE, USERS_FILE)

_MB = 1024 * 1024


def _now() -> str:
    return format_dt(datetime.now(timezone.utc))


# --- Export ---


@dataclass
class ExportOptions:
    """What to include in an export."""

    include_photos: bool = True
    include_audit_logs: bool = True
    audit_log_days: int = 90

    def validate(self) -> None:
        if not 1 <= self.audit_log_days <= 365:
            raise ValueError(
                f"audit_log_days must be between 1 and 365, got {self.audit_log_days}"
            )


@dataclass
class BackupStatistics:
    total_people: int = 0
    total_relationships: int = 0
    total_users: int = 0
    total_suggestions: int = 0
    total_photos: int = 0
    audit_log_days: int = 0
    total_audit_logs: int = 0

    def to_dict(self) -> dict:
        return {to_camel(k): v for k, v in self.__dict__.items()}

    @classmethod
    def from_dict(cls, data: dict) -> BackupStatistics:
        return cls(
            total_people=int(data["totalPeople"]),
            total_relationships=int(data["totalRelationships"]),
            total_users=int(data["totalUsers"]),
            total_suggestions=int(data["totalSuggestions"]),
            total_photos=int(data["totalPhotos"]),
            audit_log_days=int(data.get("auditLogDays", 0)),
            total_audit_logs=int(data.get("totalAuditLogs", 0)),
        )

    def declared_count(self, filename: str) -> int | None:
        """Record count declared for a data file, None when not bounded."""
        return {
            PEOPLE_FILE: self.total_people,
            RELATIONSHIPS_FILE: self.total_relationships,
            USERS_FILE: self.total_users,
            SUGGESTIONS_FILE: self.total_suggestions,
            AUDIT_LOGS_FILE: self.total_audit_logs,
        }.get(filename)


@dataclass
class BackupMetadata:
    """Manifest embedded verbatim in every archive."""

    version: str
    exported_at: str
    exported_by: Actor
    statistics: BackupStatistics
    data_files: list[str] = field(default_factory=list)
    photo_directories: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "exportedAt": self.exported_at,
            "exportedBy": self.exported_by.to_dict(),
            "statistics": self.statistics.to_dict(),
            "dataFiles": list(self.data_files),
            "photoDirectories": list(self.photo_directories),
        }

    @classmethod
    def from_dict(cls, data: dict) -> BackupMetadata:
        """Parse a manifest. Raises KeyError/TypeError/ValueError when malformed."""
        by = data["exportedBy"]
        data_files = data["dataFiles"]
        photo_dirs = data.get("photoDirectories", [])
        if not isinstance(data_files, list) or not isinstance(photo_dirs, list):
            raise ValueError("dataFiles and photoDirectories must be arrays")
        return cls(
            version=str(data["version"]),
            exported_at=str(data["exportedAt"]),
            exported_by=Actor(id=str(by["id"]), email=str(by["email"]), name=by.get("name")),
            statistics=BackupStatistics.from_dict(data["statistics"]),
            data_files=[str(f) for f in data_files],
            photo_directories=[str(d) for d in photo_dirs],
        )


@dataclass(frozen=True)
class PhotoRef:
    """A person's photo as referenced from the live dataset."""

    person_id: str
    photo_url: str


@dataclass(frozen=True)
class BackupData:
    """Immutable snapshot of the dataset handed from the gatherer to the codec."""

    people: tuple[Person, ...] = ()
    relationships: tuple[Relationship, ...] = ()
    users: tuple[User, ...] = ()
    suggestions: tuple[Suggestion, ...] = ()
    settings: FamilySettings | None = None
    audit_logs: tuple[AuditLog, ...] | None = None
    photos: tuple[PhotoRef, ...] = ()
    audit_log_days: int = 0

    @property
    def total_records(self) -> int:
        return (
            len(self.people) + len(self.relationships) + len(self.users)
            + len(self.suggestions) + len(self.audit_logs or ())
        )


@dataclass
class ArchiveLimits:
    """Bounds applied while decoding and validating untrusted archives."""

    max_archive_bytes: int = 100 * _MB
    max_entry_bytes: int = 50 * _MB
    max_total_bytes: int = 500 * _MB
    max_photos: int = 5000
    max_data_files: int = 20

    @classmethod
    def from_config(cls, config: dict) -> ArchiveLimits:
        cfg = config.get("backup", {})
        return cls(
            max_archive_bytes=int(cfg.get("max_archive_mb", 100) * _MB),
            max_entry_bytes=int(cfg.get("max_entry_mb", 50) * _MB),
            max_total_bytes=int(cfg.get("max_total_mb", 500) * _MB),
            max_photos=int(cfg.get("max_photos", 5000)),
            max_data_files=int(cfg.get("max_data_files", 20)),
        )


@dataclass
class DecodedArchive:
    """In-memory content of an archive: parsed collections plus raw photo blobs."""

    metadata: BackupMetadata
    files: dict[str, object] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    # Entries under data/, known or not
    data_file_count: int = 0

    def records(self, filename: str) -> list:
        content = self.files.get(filename)
        if content is None:
            return []
        if isinstance(content, list):
            return content
        return [content]

    def photos(self) -> dict[str, bytes]:
        return {
            name: blob for name, blob in self.files.items()
            if name.startswith(PHOTO_PREFIX) and isinstance(blob, bytes)
        }


# --- Validation ---


@dataclass
class Conflict:
    """A detected collision between an incoming record and an existing one."""

    type: EntityType
    action: ConflictAction
    new_data: dict
    identity: str
    conflict_fields: list[str] = field(default_factory=list)
    severity: Severity = Severity.LOW
    description: str = ""
    existing_id: str | None = None
    existing_data: dict | None = None

    @property
    def key(self) -> str:
        """Stable handle used to pre-approve a conflict."""
        return f"{self.type.value}:{self.identity}"

    def to_dict(self) -> dict:
        data = {
            "type": self.type.value,
            "action": self.action.value,
            "newData": {to_camel(k): v for k, v in self.new_data.items()},
            "conflictFields": [to_camel(f) for f in self.conflict_fields],
            "severity": self.severity.value,
            "description": self.description,
        }
        if self.existing_id is not None:
            data["existingId"] = self.existing_id
        if self.existing_data is not None:
            data["existingData"] = {to_camel(k): v for k, v in self.existing_data.items()}
        return data


@dataclass
class ValidationOptions:
    """Policy inputs for the validity verdict."""

    approved_conflicts: frozenset[str] = frozenset()
    allow_high_severity: bool = False

    def approves(self, conflict: Conflict) -> bool:
        return self.allow_high_severity or conflict.key in self.approved_conflicts


@dataclass
class ValidationStatistics:
    total_conflicts: int = 0
    conflicts_by_type: dict[str, int] = field(
        default_factory=lambda: {t.value: 0 for t in EntityType}
    )
    conflicts_by_severity: dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in Severity}
    )

    def to_dict(self) -> dict:
        return {
            "totalConflicts": self.total_conflicts,
            "conflictsByType": dict(self.conflicts_by_type),
            "conflictsBySeverity": dict(self.conflicts_by_severity),
        }


@dataclass
class EstimatedDuration:
    min_seconds: int = 0
    max_seconds: int = 0

    def to_dict(self) -> dict:
        return {"minSeconds": self.min_seconds, "maxSeconds": self.max_seconds}


@dataclass
class ValidationResult:
    is_valid: bool
    metadata: BackupMetadata | None = None
    conflicts: list[Conflict] = field(default_factory=list)
    statistics: ValidationStatistics = field(default_factory=ValidationStatistics)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    estimated_duration: EstimatedDuration = field(default_factory=EstimatedDuration)

    def to_dict(self) -> dict:
        return {
            "isValid": self.is_valid,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "statistics": self.statistics.to_dict(),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "estimatedDuration": self.estimated_duration.to_dict(),
        }


# --- Import ---


@dataclass
class ImportStatistics:
    people_imported: int = 0
    relationships_imported: int = 0
    users_imported: int = 0
    suggestions_imported: int = 0
    photos_imported: int = 0
    audit_logs_imported: int = 0
    conflicts_resolved: int = 0
    skipped_items: int = 0

    def to_dict(self) -> dict:
        return {to_camel(k): v for k, v in self.__dict__.items()}

    def copy(self) -> ImportStatistics:
        return ImportStatistics(**self.__dict__)


@dataclass
class ImportOptions:
    create_backup_before_import: bool = True
    import_photos: bool = True
    import_audit_logs: bool = False
    # Conflicts from an earlier validation; None re-derives them at import time
    conflicts: list[Conflict] | None = None
    cancel: threading.Event | None = None


@dataclass
class ImportResult:
    success: bool
    imported_by: Actor
    strategy: ConflictResolutionStrategy
    statistics: ImportStatistics = field(default_factory=ImportStatistics)
    imported_at: str = field(default_factory=_now)
    backup_created: str | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {
            "success": self.success,
            "importedAt": self.imported_at,
            "importedBy": self.imported_by.to_dict(),
            "strategy": self.strategy.value,
            "statistics": self.statistics.to_dict(),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }
        if self.backup_created is not None:
            data["backupCreated"] = self.backup_created
        return data
