"""Conflict taxonomy shared by the validator and the resolver.

Both sides walk an incoming collection through ``plan_collection`` so a
validation preview sees exactly the decisions the import will make.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from kinkeeper.backup.types import Conflict
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import (
    AuditLog,
    ConflictAction,
    EntityType,
    FamilySettings,
    Person,
    Record,
    Relationship,
    Severity,
    Suggestion,
    User,
)

log = logging.getLogger(__name__)

# Never part of a diff: primary key and bookkeeping timestamps
IGNORED_FIELDS = frozenset({"id", "created_at", "updated_at"})

_H, _M, _L = Severity.HIGH, Severity.MEDIUM, Severity.LOW

# Field -> severity. Fields missing from a table are MEDIUM.
SEVERITY_TABLES: dict[EntityType, dict[str, Severity]] = {
    EntityType.PERSON: {
        "created_by_id": _H,
        "first_name": _M, "last_name": _M, "maiden_name": _M,
        "date_of_birth": _M, "date_of_passing": _M,
        "birth_place": _M, "native_place": _M,
        "gender": _M, "email": _M, "is_living": _M,
        "bio": _L, "photo_url": _L, "social_links": _L, "phone": _L,
        "current_address": _L, "work_address": _L, "profession": _L, "employer": _L,
    },
    EntityType.RELATIONSHIP: {
        "person_id": _H, "related_person_id": _H, "type": _H,
        "marriage_date": _M, "divorce_date": _M, "is_active": _M,
    },
    EntityType.USER: {
        "email": _H, "role": _H, "person_id": _H,
        "name": _M, "is_active": _M, "must_change_password": _M,
        "invited_by_id": _M, "preferred_language": _M,
        "last_login_at": _L,
    },
    EntityType.SUGGESTION: {
        "target_person_id": _H, "submitted_by_id": _H, "type": _H,
        "status": _M, "suggested_data": _M, "reviewed_by_id": _M, "reviewed_at": _M,
        "reason": _L, "review_note": _L,
    },
    EntityType.SETTINGS: {
        "family_name": _M, "locale": _M, "default_privacy": _M,
        "allow_self_registration": _M, "require_approval_for_edits": _M,
        "custom_labels": _M,
        "description": _L,
    },
}

# Reference fields rewritten onto matched existing ids: field -> referenced type
REFERENCE_FIELDS: dict[type[Record], dict[str, EntityType]] = {
    Relationship: {"person_id": EntityType.PERSON, "related_person_id": EntityType.PERSON},
    User: {"person_id": EntityType.PERSON, "invited_by_id": EntityType.USER},
    Suggestion: {
        "target_person_id": EntityType.PERSON,
        "submitted_by_id": EntityType.USER,
        "reviewed_by_id": EntityType.USER,
    },
    AuditLog: {"user_id": EntityType.USER},
}

# incoming id -> existing id, per entity type
IdMap = dict[EntityType, dict[str, str]]


def new_id_map() -> IdMap:
    return {kind: {} for kind in EntityType}


def identity_fields(kind: EntityType) -> frozenset[str]:
    """Fields a merge may never change for this entity type."""
    return frozenset(f for f, sev in SEVERITY_TABLES[kind].items() if sev == Severity.HIGH)


def changed_fields(existing: Record, incoming: Record) -> list[str]:
    """Names of fields whose values differ, in declaration order."""
    old = existing.fields()
    new = incoming.fields()
    return [
        name for name in type(incoming).field_names()
        if name not in IGNORED_FIELDS and old.get(name) != new.get(name)
    ]


def classify_severity(kind: EntityType, fields: list[str]) -> Severity:
    """Maximum severity over the differing fields. No fields is LOW."""
    table = SEVERITY_TABLES[kind]
    severity = Severity.LOW
    for name in fields:
        candidate = table.get(name, Severity.MEDIUM)
        if candidate.rank > severity.rank:
            severity = candidate
    return severity


def describe(record: Record) -> str:
    """Short human label for a record."""
    if isinstance(record, Person):
        return f"person '{record.display_name}'"
    if isinstance(record, User):
        return f"user '{record.email}'"
    if isinstance(record, Relationship):
        return (
            f"relationship {record.type} "
            f"{record.person_id} -> {record.related_person_id}"
        )
    if isinstance(record, Suggestion):
        return f"suggestion {record.id}"
    if isinstance(record, FamilySettings):
        return f"family settings '{record.family_name}'"
    return f"{type(record).__name__.lower()} {record.identity_key()}"


def remap_references(record: Record, id_map: IdMap) -> Record:
    """Point reference fields at the existing ids their targets matched."""
    refs = REFERENCE_FIELDS.get(type(record))
    if not refs:
        return record
    changes = {}
    for name, kind in refs.items():
        value = getattr(record, name)
        if value and value in id_map[kind] and id_map[kind][value] != value:
            changes[name] = id_map[kind][value]
    return record.with_changes(**changes) if changes else record


@dataclass
class PlannedRecord:
    """One incoming record and what was found for it in the live dataset.

    * ``existing is None`` - plain create
    * ``existing`` set, no conflict - identical, nothing to do
    * conflict ``update`` - matched with differing fields
    * conflict ``create`` - no match, but a likely duplicate exists
    """

    incoming: Record
    existing: Record | None = None
    conflict: Conflict | None = None

    @property
    def is_create(self) -> bool:
        return self.existing is None

    @property
    def is_unchanged(self) -> bool:
        return self.existing is not None and self.conflict is None

    @property
    def is_duplicate(self) -> bool:
        return self.conflict is not None and self.conflict.action == ConflictAction.CREATE


def find_existing(db: FamilyDB, record: Record) -> tuple[Record | None, bool]:
    """Look up the existing counterpart of ``record`` by its natural identity.

    Returns (match, is_potential_duplicate).
    """
    if isinstance(record, Person):
        match = db.get_record(Person, record.id)
        if match is not None:
            return match, False
        duplicate = db.find_person_by_name(
            record.first_name, record.last_name, record.date_of_birth
        )
        return duplicate, duplicate is not None
    if isinstance(record, User):
        return db.find_user_by_email(record.email) or db.get_record(User, record.id), False
    if isinstance(record, Relationship):
        match = db.get_record(Relationship, record.id) or db.find_relationship(
            record.person_id, record.related_person_id, record.type
        )
        return match, False
    if isinstance(record, FamilySettings):
        return db.get_family_settings(), False
    if isinstance(record, (Suggestion, AuditLog)):
        return db.get_record(type(record), record.id), False
    raise TypeError(f"Unsupported record type: {type(record).__name__}")


def plan_collection(db: FamilyDB, records: list, id_map: IdMap) -> list[PlannedRecord]:
    """Match each incoming record against the live dataset and diff it.

    ``id_map`` is updated with every match so later collections can have
    their references rewritten.
    """
    plans = []
    for original in records:
        record = remap_references(original, id_map)
        existing, duplicate = find_existing(db, record)
        plan = PlannedRecord(incoming=record, existing=existing)
        kind = record.kind

        if existing is None or kind is None:
            # Unmatched, or append-only audit entry that is never diffed
            pass
        elif duplicate:
            plan.conflict = Conflict(
                type=kind,
                action=ConflictAction.CREATE,
                new_data=record.fields(),
                identity=record.identity_key(),
                severity=Severity.LOW,
                description=(
                    f"New {describe(record)} may duplicate existing person {existing.id}"
                ),
            )
        else:
            id_map[kind][original.id] = existing.id
            fields = changed_fields(existing, record)
            if fields:
                plan.conflict = Conflict(
                    type=kind,
                    action=ConflictAction.UPDATE,
                    new_data=record.fields(),
                    identity=record.identity_key(),
                    conflict_fields=fields,
                    severity=classify_severity(kind, fields),
                    description=(
                        f"Existing {describe(existing)} differs in {', '.join(fields)}"
                    ),
                    existing_id=existing.id,
                    existing_data=existing.fields(),
                )
        log.debug(
            "Planned %s: %s", describe(record),
            "create" if plan.is_create else
            "unchanged" if plan.is_unchanged else plan.conflict.action.value,
        )
        plans.append(plan)
    return plans
