"""Conflict resolver: applies an archive to the live dataset under a strategy.

Collections are written in dependency order, one transaction per collection.
Each record write runs in its own savepoint, so one bad record is rolled
back and reported while the rest of its collection commits.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import warnings
from dataclasses import dataclass, field

from kinkeeper.backup.diff import (
    PlannedRecord,
    describe,
    identity_fields,
    new_id_map,
    plan_collection,
)
from kinkeeper.backup.errors import PolicyViolationError, StalenessWarning, WriteError
from kinkeeper.backup.types import (
    AUDIT_LOGS_FILE,
    PEOPLE_FILE,
    RELATIONSHIPS_FILE,
    SETTINGS_FILE,
    SUGGESTIONS_FILE,
    USERS_FILE,
    Conflict,
    DecodedArchive,
    ImportStatistics,
)
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import (
    Actor,
    AuditLog,
    ConflictResolutionStrategy,
    Person,
    Record,
    Relationship,
    Suggestion,
    User,
)

log = logging.getLogger(__name__)

# (archive file, label, statistics counter). People before relationships,
# users before suggestions and audit logs.
IMPORT_PHASES: tuple[tuple[str, str, str | None], ...] = (
    (SETTINGS_FILE, "settings", None),
    (PEOPLE_FILE, "people", "people_imported"),
    (USERS_FILE, "users", "users_imported"),
    (RELATIONSHIPS_FILE, "relationships", "relationships_imported"),
    (SUGGESTIONS_FILE, "suggestions", "suggestions_imported"),
    (AUDIT_LOGS_FILE, "audit logs", "audit_logs_imported"),
)

# References that must resolve for a record to be written: field -> target table
_REQUIRED_REFERENCES: dict[type[Record], dict[str, type[Record]]] = {
    Relationship: {"person_id": Person, "related_person_id": Person},
    Suggestion: {"target_person_id": Person, "submitted_by_id": User},
    AuditLog: {"user_id": User},
}

# References that are cleared when they do not resolve
_OPTIONAL_REFERENCES: dict[type[Record], dict[str, type[Record]]] = {
    User: {"person_id": Person},
}


@dataclass
class ImportOutcome:
    statistics: ImportStatistics = field(default_factory=ImportStatistics)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    cancelled: bool = False
    # archive person id -> database person id, for people created or updated
    written_people: dict[str, str] = field(default_factory=dict)


class ConflictResolver:
    """Write decoded archive content into the dataset.

    Args:
        db: The family database.
        strategy: How matched records with differing fields are handled.
        imported_by: The administrator running the import.
        include_audit_logs: Whether ``data/audit-logs.json`` is applied.
    """

    def __init__(
        self,
        db: FamilyDB,
        strategy: ConflictResolutionStrategy,
        imported_by: Actor,
        include_audit_logs: bool = False,
    ) -> None:
        self.db = db
        self.strategy = ConflictResolutionStrategy(strategy)
        self.imported_by = imported_by
        self.include_audit_logs = include_audit_logs

    def import_data(
        self,
        files: DecodedArchive,
        conflicts: list[Conflict] | None = None,
        cancel: threading.Event | None = None,
    ) -> ImportOutcome:
        """Apply every collection of ``files`` in dependency order.

        Args:
            files: Decoded archive content.
            conflicts: Conflicts reported by an earlier validation. When given,
                differences from what is found now are reported as staleness
                warnings.
            cancel: Checked between collections; once set, remaining
                collections are left untouched.
        """
        outcome = ImportOutcome()
        expected = {c.key: c for c in conflicts} if conflicts is not None else None
        id_map = new_id_map()

        for filename, label, counter in IMPORT_PHASES:
            if filename == AUDIT_LOGS_FILE and not self.include_audit_logs:
                continue
            if cancel is not None and cancel.is_set():
                outcome.cancelled = True
                outcome.errors.append(f"Import cancelled before {label}")
                log.warning("Import cancelled before %s", label)
                break
            records = files.records(filename)
            if not records:
                continue
            self._run_phase(label, counter, records, id_map, expected, outcome)

        if expected and not outcome.cancelled:
            for key in expected:
                self._stale(outcome, f"Conflict {key} reported at validation no longer applies")

        log.info(
            "Import (%s) finished: %s, %d errors, %d warnings",
            self.strategy.value, outcome.statistics.to_dict(),
            len(outcome.errors), len(outcome.warnings),
        )
        return outcome

    # --- Phases ---

    def _run_phase(
        self,
        label: str,
        counter: str | None,
        records: list,
        id_map: dict,
        expected: dict[str, Conflict] | None,
        outcome: ImportOutcome,
    ) -> None:
        stats_before = outcome.statistics.copy()
        written_before = dict(outcome.written_people)
        try:
            with self.db.transaction():
                for plan in plan_collection(self.db, records, id_map):
                    if expected is not None:
                        self._check_staleness(plan, expected, outcome)
                    self._apply(plan, counter, outcome)
        except sqlite3.Error as e:
            error = WriteError(label, e)
            log.error("%s", error, exc_info=True)
            outcome.statistics = stats_before
            outcome.written_people = written_before
            outcome.errors.append(str(error))

    def _apply(self, plan: PlannedRecord, counter: str | None, outcome: ImportOutcome) -> None:
        stats = outcome.statistics

        if plan.is_unchanged:
            return

        if plan.is_create or plan.is_duplicate:
            if plan.is_duplicate and self.strategy == ConflictResolutionStrategy.SKIP:
                stats.skipped_items += 1
                log.debug("Skipped possible duplicate %s", describe(plan.incoming))
                return
            record = self._resolve_references(plan.incoming, outcome)
            if record is not None and self._write(record, create=True, outcome=outcome):
                self._count(counter, stats)
                self._track(plan.incoming, record, outcome)
            return

        updated = self._resolve_update(plan, outcome)
        if updated is None:
            return
        record = self._resolve_references(updated, outcome)
        if record is not None and self._write(record, create=False, outcome=outcome):
            self._count(counter, stats)
            stats.conflicts_resolved += 1
            self._track(plan.incoming, record, outcome)

    def _resolve_update(self, plan: PlannedRecord, outcome: ImportOutcome) -> Record | None:
        """Record to store for a matched record with differences, None to leave it."""
        conflict = plan.conflict
        existing = plan.existing
        incoming = plan.incoming
        stats = outcome.statistics

        if self.strategy == ConflictResolutionStrategy.SKIP:
            stats.skipped_items += 1
            log.debug("Skipped %s", describe(existing))
            return None

        if self.strategy == ConflictResolutionStrategy.REPLACE:
            return incoming.with_changes(id=existing.id)

        if self.strategy == ConflictResolutionStrategy.MERGE:
            protected = [f for f in conflict.conflict_fields if f in identity_fields(conflict.type)]
            if protected:
                violation = PolicyViolationError(describe(existing), protected)
                log.warning("%s", violation)
                outcome.warnings.append(str(violation))
                stats.skipped_items += 1
                return None
            changes = {
                name: getattr(incoming, name)
                for name in conflict.conflict_fields
                if getattr(incoming, name) is not None
            }
            if not changes:
                stats.skipped_items += 1
                log.debug("Nothing to merge into %s", describe(existing))
                return None
            return existing.with_changes(**changes)

        raise ValueError(f"Unknown conflict resolution strategy: {self.strategy!r}")

    # --- Records ---

    def _resolve_references(self, record: Record, outcome: ImportOutcome) -> Record | None:
        """Check references against the dataset; None when the record cannot be written."""
        for name, target in _REQUIRED_REFERENCES.get(type(record), {}).items():
            value = getattr(record, name)
            if name == "target_person_id" and not value:
                continue
            if not self.db.exists(target, value):
                outcome.warnings.append(
                    f"Not importing {describe(record)}: {name} {value} does not exist"
                )
                return None
        changes = {}
        for name, target in _OPTIONAL_REFERENCES.get(type(record), {}).items():
            value = getattr(record, name)
            if value and not self.db.exists(target, value):
                outcome.warnings.append(
                    f"Cleared {name} of {describe(record)}: {value} does not exist"
                )
                changes[name] = None
        return record.with_changes(**changes) if changes else record

    def _write(self, record: Record, *, create: bool, outcome: ImportOutcome) -> bool:
        """Write one record in its own savepoint. Record-level failures are reported."""
        try:
            with self.db.transaction():
                if create:
                    self.db.insert_record(record)
                else:
                    self.db.update_record(record)
        except (sqlite3.IntegrityError, LookupError) as e:
            outcome.errors.append(f"Failed to import {describe(record)}: {e}")
            log.warning("Failed to import %s: %s", describe(record), e)
            return False
        return True

    @staticmethod
    def _count(counter: str | None, stats: ImportStatistics) -> None:
        if counter is not None:
            setattr(stats, counter, getattr(stats, counter) + 1)

    @staticmethod
    def _track(incoming: Record, written: Record, outcome: ImportOutcome) -> None:
        if isinstance(written, Person):
            outcome.written_people[incoming.id] = written.id

    # --- Staleness ---

    def _check_staleness(
        self, plan: PlannedRecord, expected: dict[str, Conflict], outcome: ImportOutcome
    ) -> None:
        if plan.conflict is None:
            return
        prior = expected.pop(plan.conflict.key, None)
        if prior is None:
            self._stale(outcome, f"Conflict {plan.conflict.key} was not reported at validation")
        elif (
            prior.existing_data != plan.conflict.existing_data
            or prior.conflict_fields != plan.conflict.conflict_fields
        ):
            self._stale(outcome, f"Conflict {plan.conflict.key} changed since validation")

    @staticmethod
    def _stale(outcome: ImportOutcome, message: str) -> None:
        warnings.warn(message, StalenessWarning, stacklevel=3)
        log.warning("Stale validation: %s", message)
        outcome.warnings.append(message)
