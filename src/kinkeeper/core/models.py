"""Core data models for kinkeeper."""

from __future__ import annotations

import dataclasses
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar

# --- Enums ---


class EntityType(str, Enum):
    PERSON = "person"
    USER = "user"
    RELATIONSHIP = "relationship"
    SUGGESTION = "suggestion"
    SETTINGS = "settings"


class ConflictAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3}


class ConflictResolutionStrategy(str, Enum):
    SKIP = "skip"
    REPLACE = "replace"
    MERGE = "merge"


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class RelationshipType(str, Enum):
    PARENT = "PARENT"
    CHILD = "CHILD"
    SPOUSE = "SPOUSE"
    SIBLING = "SIBLING"


class BackupType(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    MANUAL = "MANUAL"


class BackupStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DELETED = "DELETED"


class StorageProvider(str, Enum):
    LOCAL = "LOCAL"
    S3 = "S3"
    R2 = "R2"
    B2 = "B2"


# --- Helpers ---


def _now() -> str:
    return format_dt(datetime.now(timezone.utc))


def _uuid() -> str:
    return str(uuid.uuid4())


def format_dt(dt: datetime) -> str:
    """Format a datetime as an ISO-8601 UTC string with milliseconds."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_dt(value: str) -> datetime:
    """Parse an ISO-8601 string (with or without 'Z') into an aware datetime."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    """snake_case -> camelCase."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def to_snake(name: str) -> str:
    """camelCase -> snake_case."""
    return _CAMEL_RE.sub("_", name).lower()


# --- Records ---


class Record:
    """Shared behaviour of the dataset's entity records.

    Records serialize to the archive's camelCase JSON shape and expose a
    stable identity key plus their field map, which is all the diff and
    merge logic needs.
    """

    kind: ClassVar[EntityType | None] = None
    table: ClassVar[str] = ""
    json_fields: ClassVar[frozenset[str]] = frozenset()
    bool_fields: ClassVar[frozenset[str]] = frozenset()

    def identity_key(self) -> str:
        return self.id  # type: ignore[attr-defined]

    def fields(self) -> dict:
        return {f.name: getattr(self, f.name) for f in dataclasses.fields(self)}  # type: ignore[arg-type]

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in dataclasses.fields(cls)]  # type: ignore[arg-type]

    def to_dict(self) -> dict:
        return {to_camel(k): v for k, v in self.fields().items()}

    @classmethod
    def from_dict(cls, data: dict):
        """Build a record from archive JSON. Unknown keys are dropped."""
        names = set(cls.field_names())
        kwargs = {}
        for key, value in data.items():
            name = to_snake(key)
            if name in names:
                kwargs[name] = value
        return cls(**kwargs)

    def with_changes(self, **changes):
        return dataclasses.replace(self, **changes)  # type: ignore[type-var]


@dataclass
class Person(Record):
    """A person in the family tree."""

    kind: ClassVar[EntityType] = EntityType.PERSON
    table: ClassVar[str] = "people"
    json_fields: ClassVar[frozenset[str]] = frozenset(
        {"current_address", "work_address", "social_links"}
    )
    bool_fields: ClassVar[frozenset[str]] = frozenset({"is_living"})

    id: str = ""
    first_name: str = ""
    last_name: str = ""
    maiden_name: str | None = None
    date_of_birth: str | None = None
    date_of_passing: str | None = None
    birth_place: str | None = None
    native_place: str | None = None
    gender: str | None = None
    photo_url: str | None = None
    bio: str | None = None
    email: str | None = None
    phone: str | None = None
    current_address: dict | None = None
    work_address: dict | None = None
    profession: str | None = None
    employer: str | None = None
    social_links: dict | None = None
    is_living: bool = True
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    created_by_id: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.id


@dataclass
class Relationship(Record):
    """A directed relationship between two people."""

    kind: ClassVar[EntityType] = EntityType.RELATIONSHIP
    table: ClassVar[str] = "relationships"
    bool_fields: ClassVar[frozenset[str]] = frozenset({"is_active"})

    id: str = ""
    person_id: str = ""
    related_person_id: str = ""
    type: str = RelationshipType.PARENT.value
    marriage_date: str | None = None
    divorce_date: str | None = None
    is_active: bool = True
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class User(Record):
    """A user account. Password hashes never leave the database."""

    kind: ClassVar[EntityType] = EntityType.USER
    table: ClassVar[str] = "users"
    bool_fields: ClassVar[frozenset[str]] = frozenset({"is_active", "must_change_password"})

    id: str = ""
    email: str = ""
    name: str | None = None
    person_id: str | None = None
    role: str = UserRole.VIEWER.value
    is_active: bool = True
    must_change_password: bool = False
    invited_by_id: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    last_login_at: str | None = None
    preferred_language: str | None = None

    def identity_key(self) -> str:
        return self.email.strip().lower()


@dataclass
class Suggestion(Record):
    """A pending or reviewed edit suggestion submitted by a member."""

    kind: ClassVar[EntityType] = EntityType.SUGGESTION
    table: ClassVar[str] = "suggestions"
    json_fields: ClassVar[frozenset[str]] = frozenset({"suggested_data"})

    id: str = ""
    type: str = "UPDATE"
    target_person_id: str | None = None
    suggested_data: dict = field(default_factory=dict)
    reason: str | None = None
    status: str = "PENDING"
    submitted_by_id: str = ""
    reviewed_by_id: str | None = None
    review_note: str | None = None
    submitted_at: str = field(default_factory=_now)
    reviewed_at: str | None = None


@dataclass
class FamilySettings(Record):
    """Installation-wide family settings (singleton)."""

    kind: ClassVar[EntityType] = EntityType.SETTINGS
    table: ClassVar[str] = "family_settings"
    json_fields: ClassVar[frozenset[str]] = frozenset({"custom_labels"})
    bool_fields: ClassVar[frozenset[str]] = frozenset(
        {"allow_self_registration", "require_approval_for_edits"}
    )

    id: str = field(default_factory=_uuid)
    family_name: str = "Our Family"
    description: str | None = None
    locale: str = "en"
    custom_labels: dict | None = None
    default_privacy: str = "MEMBERS_ONLY"
    allow_self_registration: bool = True
    require_approval_for_edits: bool = True
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def identity_key(self) -> str:
        return "settings"


@dataclass
class AuditLog(Record):
    """An append-only audit trail entry."""

    table: ClassVar[str] = "audit_logs"
    json_fields: ClassVar[frozenset[str]] = frozenset({"previous_data", "new_data"})

    id: str = field(default_factory=_uuid)
    user_id: str = ""
    action: str = "CREATE"
    entity_type: str = ""
    entity_id: str | None = None
    previous_data: dict | None = None
    new_data: dict | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str = field(default_factory=_now)


# --- Identity of the caller ---


@dataclass(frozen=True)
class Actor:
    """An already-authenticated administrator performing an operation."""

    id: str
    email: str
    name: str | None = None

    def to_dict(self) -> dict:
        return {"id": self.id, "email": self.email, "name": self.name}


# --- Backup records ---


_BACKUP_TRANSITIONS: dict[BackupStatus, set[BackupStatus]] = {
    BackupStatus.PENDING: {BackupStatus.IN_PROGRESS},
    BackupStatus.IN_PROGRESS: {BackupStatus.COMPLETED, BackupStatus.FAILED},
    BackupStatus.COMPLETED: {BackupStatus.DELETED},
    BackupStatus.FAILED: {BackupStatus.DELETED},
    BackupStatus.DELETED: set(),
}


@dataclass
class Backup:
    """A persisted record of one produced archive."""

    filename: str
    type: BackupType = BackupType.MANUAL
    status: BackupStatus = BackupStatus.PENDING
    location: StorageProvider = StorageProvider.LOCAL
    id: str = field(default_factory=_uuid)
    path: str | None = None
    size: int | None = None
    person_count: int | None = None
    relationship_count: int | None = None
    user_count: int | None = None
    suggestion_count: int | None = None
    photo_count: int | None = None
    audit_log_count: int | None = None
    duration: int | None = None  # milliseconds
    error: str | None = None
    created_at: str = field(default_factory=_now)
    deleted_at: str | None = None

    def transition(self, status: BackupStatus) -> None:
        """Move along the linear lifecycle; anything else is a ValueError."""
        status = BackupStatus(status)
        if status not in _BACKUP_TRANSITIONS[self.status]:
            raise ValueError(
                f"Invalid backup status transition: {self.status.value} -> {status.value}"
            )
        self.status = status
        if status == BackupStatus.DELETED and self.deleted_at is None:
            self.deleted_at = _now()

    def to_dict(self) -> dict:
        data = {to_camel(f.name): getattr(self, f.name) for f in dataclasses.fields(self)}
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["location"] = self.location.value
        return data
