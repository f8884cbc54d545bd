"""Read-only validation of an uploaded archive against the live dataset."""

from __future__ import annotations

import logging
import math

from kinkeeper.backup.archive import decode
from kinkeeper.backup.diff import new_id_map, plan_collection
from kinkeeper.backup.errors import DecodeError
from kinkeeper.backup.types import (
    AUDIT_LOGS_FILE,
    PEOPLE_FILE,
    RELATIONSHIPS_FILE,
    SETTINGS_FILE,
    SUGGESTIONS_FILE,
    USERS_FILE,
    ArchiveLimits,
    Conflict,
    DecodedArchive,
    EstimatedDuration,
    ValidationOptions,
    ValidationResult,
    ValidationStatistics,
)
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import Person, Severity, User

log = logging.getLogger(__name__)

# Order matters: references are rewritten onto records matched earlier
VALIDATION_ORDER = (SETTINGS_FILE, PEOPLE_FILE, USERS_FILE, RELATIONSHIPS_FILE, SUGGESTIONS_FILE)

_RECORDS_PER_SECOND_FAST = 500
_RECORDS_PER_SECOND_SLOW = 100


def estimate_duration(item_count: int) -> EstimatedDuration:
    """Rough import duration range; non-decreasing in ``item_count``."""
    return EstimatedDuration(
        min_seconds=max(1, math.ceil(item_count / _RECORDS_PER_SECOND_FAST)),
        max_seconds=max(2, math.ceil(item_count / _RECORDS_PER_SECOND_SLOW)),
    )


class BackupValidator:
    """Decode an archive and diff every incoming record without writing."""

    def __init__(self, db: FamilyDB, limits: ArchiveLimits | None = None) -> None:
        self.db = db
        self.limits = limits or ArchiveLimits()

    def validate(
        self, archive: bytes, options: ValidationOptions | None = None
    ) -> ValidationResult:
        """Validate raw archive bytes.

        Data problems end up in the result; only database failures raise.
        """
        try:
            decoded = decode(archive, self.limits)
        except DecodeError as e:
            log.warning("Backup archive rejected: %s", e)
            return ValidationResult(is_valid=False, errors=[str(e)])
        return self.evaluate(decoded, options)

    def evaluate(
        self, decoded: DecodedArchive, options: ValidationOptions | None = None
    ) -> ValidationResult:
        """Validate an already decoded archive."""
        options = options or ValidationOptions()
        result = ValidationResult(is_valid=True, metadata=decoded.metadata)
        result.warnings.extend(decoded.warnings)

        with self.db.snapshot():
            result.conflicts = self.find_conflicts(decoded)
            result.warnings.extend(self._reference_warnings(decoded))

        self._check_limits(decoded, result)
        result.statistics = _statistics(result.conflicts)

        unapproved = [
            c for c in result.conflicts
            if c.severity == Severity.HIGH and not options.approves(c)
        ]
        if unapproved:
            result.is_valid = False
            result.warnings.append(
                f"{len(unapproved)} high-severity conflict(s) need approval: "
                + ", ".join(c.key for c in unapproved)
            )

        item_count = sum(len(decoded.records(name)) for name in (*VALIDATION_ORDER, AUDIT_LOGS_FILE))
        result.estimated_duration = estimate_duration(item_count + len(decoded.photos()))

        log.info(
            "Validated backup from %s: %d conflicts, valid=%s",
            decoded.metadata.exported_at, len(result.conflicts), result.is_valid,
        )
        return result

    def find_conflicts(self, decoded: DecodedArchive) -> list[Conflict]:
        """Conflicts in collection order, then archive order."""
        id_map = new_id_map()
        conflicts = []
        for filename in VALIDATION_ORDER:
            for plan in plan_collection(self.db, decoded.records(filename), id_map):
                if plan.conflict is not None:
                    conflicts.append(plan.conflict)
        return conflicts

    def _reference_warnings(self, decoded: DecodedArchive) -> list[str]:
        """References to people or users found neither in the archive nor the dataset."""
        archive_people = {p.id for p in decoded.records(PEOPLE_FILE)}
        archive_users = {u.id for u in decoded.records(USERS_FILE)}

        def person_known(person_id: str | None) -> bool:
            return person_id in archive_people or self.db.exists(Person, person_id)

        def user_known(user_id: str | None) -> bool:
            return user_id in archive_users or self.db.exists(User, user_id)

        warnings = []
        for rel in decoded.records(RELATIONSHIPS_FILE):
            missing = [
                pid for pid in (rel.person_id, rel.related_person_id) if not person_known(pid)
            ]
            if missing:
                warnings.append(
                    f"Relationship {rel.id} references unknown people: {', '.join(missing)}"
                )
        for sug in decoded.records(SUGGESTIONS_FILE):
            if sug.target_person_id and not person_known(sug.target_person_id):
                warnings.append(
                    f"Suggestion {sug.id} targets unknown person {sug.target_person_id}"
                )
            if not user_known(sug.submitted_by_id):
                warnings.append(
                    f"Suggestion {sug.id} was submitted by unknown user {sug.submitted_by_id}"
                )
        return warnings

    def _check_limits(self, decoded: DecodedArchive, result: ValidationResult) -> None:
        photos = decoded.photos()
        if len(photos) > self.limits.max_photos:
            result.warnings.append(
                f"Archive contains {len(photos)} photos, more than the "
                f"configured limit of {self.limits.max_photos}"
            )
        if decoded.data_file_count > self.limits.max_data_files:
            result.warnings.append(
                f"Archive contains {decoded.data_file_count} data files, more than the "
                f"configured limit of {self.limits.max_data_files}"
            )
        declared = decoded.metadata.statistics.total_photos
        if len(photos) != declared:
            result.warnings.append(
                f"Archive contains {len(photos)} photos but metadata declares {declared}"
            )


def _statistics(conflicts: list[Conflict]) -> ValidationStatistics:
    stats = ValidationStatistics(total_conflicts=len(conflicts))
    for conflict in conflicts:
        stats.conflicts_by_type[conflict.type.value] += 1
        stats.conflicts_by_severity[conflict.severity.value] += 1
    return stats
