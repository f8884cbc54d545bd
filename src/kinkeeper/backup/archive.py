"""ZIP archive codec: metadata manifest, one JSON file per collection, photos.

Layout::

    metadata.json
    data/people.json
    data/relationships.json
    data/users.json
    data/suggestions.json
    data/settings.json        (optional)
    data/audit-logs.json      (optional)
    photos/<personId>/<filename>

Decoding is a pure bytes -> memory transform. Every bound is checked before
the corresponding bytes are inflated or parsed.
"""

from __future__ import annotations

import dataclasses
import io
import json
import logging
import zipfile
import zlib
from pathlib import PurePosixPath

from kinkeeper.backup.errors import DecodeError
from kinkeeper.backup.types import (
    AUDIT_LOGS_FILE,
    COLLECTION_FILES,
    METADATA_FILE,
    PEOPLE_FILE,
    PHOTO_PREFIX,
    RELATIONSHIPS_FILE,
    REQUIRED_DATA_FILES,
    SETTINGS_FILE,
    SUGGESTIONS_FILE,
    SUPPORTED_VERSIONS,
    USERS_FILE,
    ArchiveLimits,
    BackupData,
    BackupMetadata,
    DecodedArchive,
)
from kinkeeper.core.fileutil import safe_filename
from kinkeeper.core.models import User, parse_dt, to_snake

log = logging.getLogger(__name__)

# Errors zipfile raises for damaged or unsupported members
_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError, NotImplementedError)

# Field annotation -> accepted JSON value types
_FIELD_TYPES: dict[str, tuple[type, ...]] = {
    "str": (str,),
    "str | None": (str, type(None)),
    "bool": (bool,),
    "dict": (dict,),
    "dict | None": (dict, type(None)),
}


def photo_archive_path(person_id: str, source: str) -> str:
    """Archive entry name for a person's photo: photos/<personId>/<filename>."""
    name = safe_filename(PurePosixPath(source).name or "photo")
    return f"{PHOTO_PREFIX}{person_id}/{name}"


def photo_person_id(entry_name: str) -> str | None:
    """Person id encoded in a photo entry name, None for anything else."""
    parts = entry_name.split("/")
    if len(parts) != 3 or parts[0] != PHOTO_PREFIX.rstrip("/") or not parts[1] or not parts[2]:
        return None
    return parts[1]


# --- Encode ---


def encode(
    metadata: BackupMetadata,
    data: BackupData,
    photo_blobs: dict[str, bytes] | None = None,
    compress_level: int = 6,
) -> bytes:
    """Serialize a snapshot into archive bytes.

    Data files are written in the order listed by ``metadata.data_files``.
    Entry timestamps come from ``metadata.exported_at`` so identical inputs
    give identical bytes.
    """
    photo_blobs = photo_blobs or {}
    stamp = _zip_timestamp(metadata.exported_at)

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        _write(zf, METADATA_FILE, _dump_json(metadata.to_dict()), stamp, compress_level)
        for filename in metadata.data_files:
            payload = _collection_payload(data, filename)
            _write(zf, filename, _dump_json(payload), stamp, compress_level)
        for entry_name in sorted(photo_blobs):
            _write(zf, entry_name, photo_blobs[entry_name], stamp, compress_level)

    archive = buf.getvalue()
    log.debug(
        "Encoded archive: %d data files, %d photos, %d bytes",
        len(metadata.data_files), len(photo_blobs), len(archive),
    )
    return archive


def _collection_payload(data: BackupData, filename: str) -> object:
    if filename == SETTINGS_FILE:
        return data.settings.to_dict() if data.settings else None
    records = {
        PEOPLE_FILE: data.people,
        RELATIONSHIPS_FILE: data.relationships,
        USERS_FILE: data.users,
        SUGGESTIONS_FILE: data.suggestions,
        AUDIT_LOGS_FILE: data.audit_logs or (),
    }.get(filename)
    if records is None:
        raise ValueError(f"Unknown data file: {filename}")
    return [r.to_dict() for r in records]


def _dump_json(payload: object) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


def _zip_timestamp(exported_at: str) -> tuple[int, int, int, int, int, int]:
    try:
        dt = parse_dt(exported_at)
    except ValueError:
        return (1980, 1, 1, 0, 0, 0)
    # ZIP cannot represent dates before 1980
    if dt.year < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return (dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second)


def _write(
    zf: zipfile.ZipFile,
    name: str,
    content: bytes,
    stamp: tuple[int, int, int, int, int, int],
    compress_level: int,
) -> None:
    info = zipfile.ZipInfo(name, date_time=stamp)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    zf.writestr(info, content, compresslevel=compress_level)


# --- Decode ---


def decode(archive: bytes, limits: ArchiveLimits | None = None) -> DecodedArchive:
    """Parse archive bytes into metadata plus a map of file name -> content.

    Collections become lists of typed records, ``data/settings.json`` a
    single record, photos raw bytes. Unknown entries are skipped.

    Raises:
        DecodeError: the archive is unreadable, incomplete or exceeds a bound.
    """
    limits = limits or ArchiveLimits()

    if len(archive) > limits.max_archive_bytes:
        raise DecodeError(
            f"Archive is {len(archive)} bytes, larger than the "
            f"{limits.max_archive_bytes} byte limit"
        )

    try:
        zf = zipfile.ZipFile(io.BytesIO(archive))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, ValueError) as e:
        raise DecodeError(f"Not a valid ZIP archive: {e}") from e

    with zf:
        entries = {info.filename: info for info in zf.infolist() if not info.is_dir()}
        _check_sizes(entries, limits)

        metadata = _read_metadata(zf, entries)
        decoded = DecodedArchive(metadata=metadata)
        decoded.data_file_count = sum(1 for name in entries if name.startswith("data/"))

        for required in REQUIRED_DATA_FILES:
            if required not in entries:
                raise DecodeError(f"Backup archive is missing required file {required}")
        for listed in metadata.data_files:
            if listed not in entries:
                raise DecodeError(f"Backup archive is missing listed file {listed}")

        for filename, cls in COLLECTION_FILES.items():
            if filename not in entries:
                continue
            payload = _read_json(zf, entries[filename])
            if filename == SETTINGS_FILE:
                decoded.files[filename] = _parse_settings(payload)
            else:
                decoded.files[filename] = _parse_collection(
                    filename, cls, payload, metadata, decoded.warnings
                )

        for name, info in entries.items():
            if photo_person_id(name) is not None:
                decoded.files[name] = _read_entry(zf, info)
            elif name not in decoded.files and name != METADATA_FILE:
                log.debug("Ignoring unknown archive entry %s", name)

    return decoded


def _check_sizes(entries: dict[str, zipfile.ZipInfo], limits: ArchiveLimits) -> None:
    total = 0
    for name, info in entries.items():
        if info.file_size > limits.max_entry_bytes:
            raise DecodeError(
                f"Archive entry {name} is {info.file_size} bytes, larger than the "
                f"{limits.max_entry_bytes} byte limit"
            )
        total += info.file_size
    if total > limits.max_total_bytes:
        raise DecodeError(
            f"Archive expands to {total} bytes, larger than the "
            f"{limits.max_total_bytes} byte limit"
        )


def _read_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> bytes:
    try:
        return zf.read(info)
    except _READ_ERRORS as e:
        raise DecodeError(f"Cannot read {info.filename}: {e}") from e


def _read_json(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> object:
    raw = _read_entry(zf, info)
    try:
        return json.loads(raw.decode("utf-8"))
    except ValueError as e:
        raise DecodeError(f"Invalid JSON in {info.filename}: {e}") from e


def _read_metadata(zf: zipfile.ZipFile, entries: dict[str, zipfile.ZipInfo]) -> BackupMetadata:
    if METADATA_FILE not in entries:
        raise DecodeError(f"Backup archive is missing {METADATA_FILE}")
    payload = _read_json(zf, entries[METADATA_FILE])
    if not isinstance(payload, dict):
        raise DecodeError(f"{METADATA_FILE} must be a JSON object")
    try:
        metadata = BackupMetadata.from_dict(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Invalid {METADATA_FILE}: {e!r}") from e
    if metadata.version not in SUPPORTED_VERSIONS:
        raise DecodeError(
            f"Unsupported backup version {metadata.version} "
            f"(supported: {', '.join(SUPPORTED_VERSIONS)})"
        )
    return metadata


def _parse_collection(
    filename: str,
    cls: type,
    payload: object,
    metadata: BackupMetadata,
    warnings: list[str],
) -> list:
    if not isinstance(payload, list):
        raise DecodeError(f"{filename} must contain a JSON array")

    declared = metadata.statistics.declared_count(filename)
    if declared is not None:
        if len(payload) > declared:
            raise DecodeError(
                f"{filename} holds {len(payload)} records but metadata declares {declared}"
            )
        if len(payload) < declared:
            warnings.append(
                f"{filename} holds {len(payload)} records, fewer than the {declared} declared"
            )

    records = []
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise DecodeError(f"{filename}[{index}] is not a JSON object")
        if not item.get("id"):
            raise DecodeError(f"{filename}[{index}] has no id")
        if cls is User and not item.get("email"):
            raise DecodeError(f"{filename}[{index}] has no email")
        _check_field_types(cls, item, f"{filename}[{index}]")
        records.append(cls.from_dict(item))
    return records


def _parse_settings(payload: object):
    if payload is None:
        return None
    if not isinstance(payload, dict):
        raise DecodeError(f"{SETTINGS_FILE} must contain a JSON object")
    _check_field_types(COLLECTION_FILES[SETTINGS_FILE], payload, SETTINGS_FILE)
    return COLLECTION_FILES[SETTINGS_FILE].from_dict(payload)


def _check_field_types(cls: type, item: dict, label: str) -> None:
    """Reject values whose JSON type does not match the record field."""
    annotations = {f.name: f.type for f in dataclasses.fields(cls)}
    for key, value in item.items():
        annotation = annotations.get(to_snake(key))
        expected = _FIELD_TYPES.get(annotation) if annotation else None
        if expected is not None and not isinstance(value, expected):
            raise DecodeError(
                f"{label}.{key} must be {annotation}, got {type(value).__name__}"
            )
