"""Tests for kinkeeper.backup.archive."""

import io
import json
import zipfile

import pytest

from kinkeeper.backup.archive import decode, encode, photo_archive_path, photo_person_id
from kinkeeper.backup.errors import DecodeError
from kinkeeper.backup.gather import build_metadata
from kinkeeper.backup.types import (
    AUDIT_LOGS_FILE,
    METADATA_FILE,
    PEOPLE_FILE,
    RELATIONSHIPS_FILE,
    SETTINGS_FILE,
    SUGGESTIONS_FILE,
    USERS_FILE,
    ArchiveLimits,
    BackupData,
)
from kinkeeper.core.models import (
    Actor,
    AuditLog,
    FamilySettings,
    Person,
    Relationship,
    User,
)

_ACTOR = Actor(id="admin-1", email="admin@example.com", name="Admin")
_STAMP = "2024-01-15T02:00:00.000Z"


def _make_data(**overrides) -> BackupData:
    values = dict(
        people=(
            Person(id="p1", first_name="Ada", last_name="Byron", created_at=_STAMP, updated_at=_STAMP),
            Person(id="p2", first_name="Anne", last_name="Byron", created_at=_STAMP, updated_at=_STAMP),
        ),
        relationships=(
            Relationship(
                id="r1", person_id="p2", related_person_id="p1", type="PARENT",
                created_at=_STAMP, updated_at=_STAMP,
            ),
        ),
        users=(User(id="u1", email="ada@example.com", created_at=_STAMP, updated_at=_STAMP),),
        settings=FamilySettings(id="s1", family_name="Byrons", created_at=_STAMP, updated_at=_STAMP),
    )
    values.update(overrides)
    return BackupData(**values)


def _make_archive(data: BackupData | None = None, photos: dict | None = None) -> bytes:
    data = data or _make_data()
    metadata = build_metadata(data, _ACTOR, photos, exported_at=_STAMP)
    return encode(metadata, data, photos)


def _metadata_dict(**stats) -> dict:
    statistics = {
        "totalPeople": 0, "totalRelationships": 0, "totalUsers": 0,
        "totalSuggestions": 0, "totalPhotos": 0,
    }
    statistics.update(stats)
    return {
        "version": "1.0.0",
        "exportedAt": _STAMP,
        "exportedBy": _ACTOR.to_dict(),
        "statistics": statistics,
        "dataFiles": [PEOPLE_FILE, RELATIONSHIPS_FILE, USERS_FILE],
        "photoDirectories": [],
    }


def _zip(entries: dict) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in entries.items():
            if not isinstance(content, bytes):
                content = json.dumps(content).encode("utf-8")
            zf.writestr(name, content)
    return buf.getvalue()


def _minimal_entries(**overrides) -> dict:
    entries = {
        METADATA_FILE: _metadata_dict(),
        PEOPLE_FILE: [],
        RELATIONSHIPS_FILE: [],
        USERS_FILE: [],
    }
    entries.update(overrides)
    return entries


class TestPhotoPaths:
    def test_archive_path_sanitizes_name(self):
        assert photo_archive_path("p1", "photos/p1/abc-My Photo.JPG") == "photos/p1/abc-my-photo.jpg"

    def test_person_id(self):
        assert photo_person_id("photos/p1/a.jpg") == "p1"

    @pytest.mark.parametrize("name", ["photos/a.jpg", "data/people.json", "photos//a.jpg", "photos/p1/"])
    def test_not_a_photo(self, name):
        assert photo_person_id(name) is None


class TestEncode:
    def test_layout(self):
        archive = _make_archive(photos={"photos/p1/a.jpg": b"\xff\xd8"})
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            names = zf.namelist()
            metadata = json.loads(zf.read(METADATA_FILE))
            people = json.loads(zf.read(PEOPLE_FILE))
            settings = json.loads(zf.read(SETTINGS_FILE))

        assert names[0] == METADATA_FILE
        assert "photos/p1/a.jpg" in names
        assert metadata["statistics"]["totalPeople"] == 2
        assert metadata["statistics"]["totalPhotos"] == 1
        assert metadata["photoDirectories"] == ["photos/p1"]
        assert people[0]["firstName"] == "Ada"
        assert isinstance(settings, dict)

    def test_identical_input_identical_bytes(self):
        assert _make_archive() == _make_archive()

    def test_audit_logs_only_when_gathered(self):
        with zipfile.ZipFile(io.BytesIO(_make_archive())) as zf:
            assert AUDIT_LOGS_FILE not in zf.namelist()

        data = _make_data(
            audit_logs=(AuditLog(id="a1", user_id="u1", entity_type="Person", created_at=_STAMP),),
            audit_log_days=30,
        )
        with zipfile.ZipFile(io.BytesIO(_make_archive(data))) as zf:
            assert AUDIT_LOGS_FILE in zf.namelist()
            metadata = json.loads(zf.read(METADATA_FILE))
        assert metadata["statistics"]["auditLogDays"] == 30
        assert metadata["statistics"]["totalAuditLogs"] == 1


class TestDecode:
    def test_round_trip(self):
        data = _make_data()
        decoded = decode(_make_archive(data, photos={"photos/p1/a.jpg": b"img"}))

        assert decoded.metadata.exported_by == _ACTOR
        assert decoded.records(PEOPLE_FILE) == list(data.people)
        assert decoded.records(RELATIONSHIPS_FILE) == list(data.relationships)
        assert decoded.records(USERS_FILE) == list(data.users)
        assert decoded.records(SETTINGS_FILE) == [data.settings]
        assert decoded.photos() == {"photos/p1/a.jpg": b"img"}
        assert decoded.warnings == []

    def test_missing_optional_collection_is_empty(self):
        decoded = decode(_make_archive())
        assert decoded.records(AUDIT_LOGS_FILE) == []
        assert decoded.records(SUGGESTIONS_FILE) == []

    def test_not_a_zip(self):
        with pytest.raises(DecodeError, match="ZIP"):
            decode(b"definitely not a zip file")

    def test_truncated(self):
        archive = _make_archive()
        with pytest.raises(DecodeError):
            decode(archive[: len(archive) // 2])

    def test_missing_metadata(self):
        entries = _minimal_entries()
        del entries[METADATA_FILE]
        with pytest.raises(DecodeError, match="metadata.json"):
            decode(_zip(entries))

    def test_metadata_missing_fields(self):
        with pytest.raises(DecodeError, match="Invalid metadata.json"):
            decode(_zip(_minimal_entries(**{METADATA_FILE: {"version": "1.0.0"}})))

    def test_metadata_not_object(self):
        with pytest.raises(DecodeError):
            decode(_zip(_minimal_entries(**{METADATA_FILE: ["nope"]})))

    def test_invalid_json(self):
        with pytest.raises(DecodeError, match="Invalid JSON"):
            decode(_zip(_minimal_entries(**{PEOPLE_FILE: b"[{oops"})))

    def test_unsupported_version(self):
        metadata = _metadata_dict()
        metadata["version"] = "9.0.0"
        with pytest.raises(DecodeError, match="Unsupported backup version"):
            decode(_zip(_minimal_entries(**{METADATA_FILE: metadata})))

    def test_missing_required_file(self):
        entries = _minimal_entries()
        del entries[USERS_FILE]
        with pytest.raises(DecodeError, match="users.json"):
            decode(_zip(entries))

    def test_missing_listed_file(self):
        metadata = _metadata_dict()
        metadata["dataFiles"].append(SUGGESTIONS_FILE)
        with pytest.raises(DecodeError, match="suggestions.json"):
            decode(_zip(_minimal_entries(**{METADATA_FILE: metadata})))

    def test_collection_must_be_array(self):
        with pytest.raises(DecodeError, match="array"):
            decode(_zip(_minimal_entries(**{PEOPLE_FILE: {"id": "p1"}})))

    def test_more_records_than_declared(self):
        people = [{"id": "p1", "firstName": "A", "lastName": "B"}]
        with pytest.raises(DecodeError, match="declares 0"):
            decode(_zip(_minimal_entries(**{PEOPLE_FILE: people})))

    def test_fewer_records_than_declared_warns(self):
        entries = _minimal_entries(**{METADATA_FILE: _metadata_dict(totalPeople=3)})
        decoded = decode(_zip(entries))
        assert len(decoded.warnings) == 1
        assert "fewer" in decoded.warnings[0]

    def test_record_without_id(self):
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalPeople=1), PEOPLE_FILE: [{"firstName": "A"}]}
        )
        with pytest.raises(DecodeError, match="has no id"):
            decode(_zip(entries))

    def test_record_not_object(self):
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalPeople=1), PEOPLE_FILE: ["p1"]}
        )
        with pytest.raises(DecodeError, match="not a JSON object"):
            decode(_zip(entries))

    def test_user_without_email(self):
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalUsers=1), USERS_FILE: [{"id": "u1"}]}
        )
        with pytest.raises(DecodeError, match="no email"):
            decode(_zip(entries))

    def test_numeric_email_rejected(self):
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalUsers=1), USERS_FILE: [{"id": "u1", "email": 123}]}
        )
        with pytest.raises(DecodeError, match=r"users\.json\[0\]\.email"):
            decode(_zip(entries))

    def test_list_name_rejected(self):
        person = {"id": "p1", "firstName": ["Ada"], "lastName": "Byron"}
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalPeople=1), PEOPLE_FILE: [person]}
        )
        with pytest.raises(DecodeError, match=r"people\.json\[0\]\.firstName"):
            decode(_zip(entries))

    def test_string_flag_rejected(self):
        person = {"id": "p1", "firstName": "Ada", "lastName": "Byron", "isLiving": "yes"}
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalPeople=1), PEOPLE_FILE: [person]}
        )
        with pytest.raises(DecodeError, match="isLiving"):
            decode(_zip(entries))

    def test_null_optional_field_accepted(self):
        person = {"id": "p1", "firstName": "Ada", "lastName": "Byron", "maidenName": None}
        entries = _minimal_entries(
            **{METADATA_FILE: _metadata_dict(totalPeople=1), PEOPLE_FILE: [person]}
        )
        decoded = decode(_zip(entries))
        assert decoded.records(PEOPLE_FILE)[0].maiden_name is None

    def test_settings_field_types_checked(self):
        with pytest.raises(DecodeError, match="familyName"):
            decode(_zip(_minimal_entries(**{SETTINGS_FILE: {"id": "s1", "familyName": 7}})))

    def test_settings_must_be_object(self):
        with pytest.raises(DecodeError, match="settings.json"):
            decode(_zip(_minimal_entries(**{SETTINGS_FILE: []})))

    def test_unknown_entries_ignored(self):
        decoded = decode(_zip(_minimal_entries(**{"README.txt": b"hi", "data/extra.json": []})))
        assert "README.txt" not in decoded.files
        assert "data/extra.json" not in decoded.files
        assert decoded.data_file_count == 4

    def test_archive_size_limit(self):
        archive = _make_archive()
        with pytest.raises(DecodeError, match="larger than"):
            decode(archive, ArchiveLimits(max_archive_bytes=len(archive) - 1))

    def test_entry_size_limit(self):
        archive = _make_archive(photos={"photos/p1/big.jpg": b"x" * 5000})
        with pytest.raises(DecodeError, match="photos/p1/big.jpg"):
            decode(archive, ArchiveLimits(max_entry_bytes=4000))

    def test_total_size_limit(self):
        archive = _make_archive()
        with pytest.raises(DecodeError, match="expands"):
            decode(archive, ArchiveLimits(max_total_bytes=100))
