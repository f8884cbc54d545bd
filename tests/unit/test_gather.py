"""Tests for kinkeeper.backup.gather."""

from datetime import datetime, timedelta, timezone

import pytest

from kinkeeper.backup.gather import build_metadata, gather
from kinkeeper.backup.types import (
    AUDIT_LOGS_FILE,
    PEOPLE_FILE,
    SETTINGS_FILE,
    ExportOptions,
)
from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import (
    Actor,
    AuditLog,
    FamilySettings,
    Person,
    Relationship,
    Suggestion,
    format_dt,
)

_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _make_audit(db: FamilyDB, log_id: str, age: timedelta, user_id: str = "admin-1") -> None:
    with db.transaction():
        db.insert_record(
            AuditLog(
                id=log_id, user_id=user_id, action="UPDATE", entity_type="Person",
                created_at=format_dt(_NOW - age),
            )
        )


def _seed(db: FamilyDB) -> None:
    with db.transaction():
        db.insert_record(Person(id="p1", first_name="Zed", last_name="Adams", photo_url="/api/uploads/photos/p1/z.jpg"))
        db.insert_record(Person(id="p2", first_name="Amy", last_name="Adams"))
        db.insert_record(Person(id="p3", first_name="Bob", last_name="Brown"))
        db.insert_record(
            Relationship(
                id="r2", person_id="p1", related_person_id="p3",
                created_at="2024-02-01T00:00:00.000Z",
            )
        )
        db.insert_record(
            Relationship(
                id="r1", person_id="p2", related_person_id="p3",
                created_at="2024-01-01T00:00:00.000Z",
            )
        )
        db.insert_record(FamilySettings(family_name="Adams"))


class TestGather:
    def test_collections_and_ordering(self, db: FamilyDB, admin: Actor):
        _seed(db)
        data = gather(db, ExportOptions(include_audit_logs=False), now=_NOW)

        assert [p.id for p in data.people] == ["p2", "p1", "p3"]
        assert [r.id for r in data.relationships] == ["r1", "r2"]
        assert [u.id for u in data.users] == ["admin-1"]
        assert data.settings.family_name == "Adams"
        assert data.audit_logs is None
        assert data.audit_log_days == 0

    def test_suggestions_by_submission_time(self, db: FamilyDB, admin: Actor):
        with db.transaction():
            db.insert_record(Suggestion(id="s-late", submitted_by_id=admin.id, submitted_at="2024-03-01T00:00:00.000Z"))
            db.insert_record(Suggestion(id="s-early", submitted_by_id=admin.id, submitted_at="2024-01-01T00:00:00.000Z"))
        data = gather(db, now=_NOW)
        assert [s.id for s in data.suggestions] == ["s-early", "s-late"]

    def test_audit_log_window(self, db: FamilyDB, admin: Actor):
        _make_audit(db, "recent", timedelta(days=1))
        _make_audit(db, "edge", timedelta(days=90))
        _make_audit(db, "old", timedelta(days=91))
        _make_audit(db, "future", timedelta(days=-1))

        data = gather(db, ExportOptions(audit_log_days=90), now=_NOW)

        cutoff = format_dt(_NOW - timedelta(days=90))
        assert {a.id for a in data.audit_logs} == {"recent", "edge"}
        assert all(a.created_at >= cutoff for a in data.audit_logs)
        assert data.audit_log_days == 90

    def test_audit_logs_ordered_oldest_first(self, db: FamilyDB, admin: Actor):
        _make_audit(db, "b", timedelta(days=1))
        _make_audit(db, "a", timedelta(days=5))
        data = gather(db, now=_NOW)
        assert [a.id for a in data.audit_logs] == ["a", "b"]

    def test_photo_refs(self, db: FamilyDB, admin: Actor):
        _seed(db)
        data = gather(db, now=_NOW)
        assert [(ref.person_id, ref.photo_url) for ref in data.photos] == [
            ("p1", "/api/uploads/photos/p1/z.jpg")
        ]

    def test_photos_excluded(self, db: FamilyDB, admin: Actor):
        _seed(db)
        assert gather(db, ExportOptions(include_photos=False), now=_NOW).photos == ()

    def test_empty_dataset(self, db: FamilyDB):
        data = gather(db, now=_NOW)
        assert data.people == ()
        assert data.settings is None
        assert data.total_records == 0

    @pytest.mark.parametrize("days", [0, 366, -5])
    def test_invalid_window(self, db: FamilyDB, days: int):
        with pytest.raises(ValueError, match="audit_log_days"):
            gather(db, ExportOptions(audit_log_days=days), now=_NOW)

    def test_snapshot_is_immutable(self, db: FamilyDB, admin: Actor):
        _seed(db)
        data = gather(db, now=_NOW)
        with db.transaction():
            db.insert_record(Person(id="p4", first_name="New", last_name="Person"))
        assert len(data.people) == 3
        with pytest.raises(AttributeError):
            data.people = ()


class TestBuildMetadata:
    def test_counts_match_snapshot(self, db: FamilyDB, admin: Actor):
        _seed(db)
        _make_audit(db, "a1", timedelta(days=1))
        data = gather(db, now=_NOW)
        metadata = build_metadata(
            data, admin, {"photos/p1/z.jpg": b"img"}, exported_at=format_dt(_NOW)
        )

        stats = metadata.statistics
        assert (stats.total_people, stats.total_relationships, stats.total_users) == (3, 2, 1)
        assert stats.total_photos == 1
        assert stats.total_audit_logs == 1
        assert stats.audit_log_days == 90
        assert metadata.exported_by == admin
        assert metadata.exported_at == "2024-06-01T12:00:00.000Z"
        assert metadata.version == "1.0.0"
        assert metadata.photo_directories == ["photos/p1"]
        assert SETTINGS_FILE in metadata.data_files
        assert AUDIT_LOGS_FILE in metadata.data_files

    def test_optional_files_omitted(self, db: FamilyDB):
        data = gather(db, ExportOptions(include_audit_logs=False), now=_NOW)
        metadata = build_metadata(data, Actor(id="x", email="x@example.com"))
        assert metadata.data_files[0] == PEOPLE_FILE
        assert SETTINGS_FILE not in metadata.data_files
        assert AUDIT_LOGS_FILE not in metadata.data_files
