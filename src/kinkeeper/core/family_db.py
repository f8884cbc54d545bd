"""SQLite store for the family dataset and backup bookkeeping."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from kinkeeper.core.models import (
    Backup,
    BackupStatus,
    BackupType,
    FamilySettings,
    Person,
    Record,
    Relationship,
    StorageProvider,
    User,
)

log = logging.getLogger(__name__)

_BACKUP_COLUMNS = [
    "id", "filename", "type", "status", "location", "path", "size",
    "person_count", "relationship_count", "user_count", "suggestion_count",
    "photo_count", "audit_log_count", "duration", "error", "created_at",
    "deleted_at",
]


class FamilyDB:
    """SQLite database at <home>/.kk/family.db.

    The connection runs in autocommit mode; multi-statement units go through
    ``transaction()`` (writes) or ``snapshot()`` (consistent reads).
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._savepoint_seq = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = self._open()
        return self._conn

    def _open(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        conn.executescript(_SCHEMA)
        return conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # --- Transactions ---

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """Atomic write unit. Nested calls become savepoints."""
        conn = self.conn
        if conn.in_transaction:
            self._savepoint_seq += 1
            name = f"sp_{self._savepoint_seq}"
            conn.execute(f"SAVEPOINT {name}")
            try:
                yield
            except BaseException:
                conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                conn.execute(f"RELEASE SAVEPOINT {name}")
                raise
            conn.execute(f"RELEASE SAVEPOINT {name}")
            return

        conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    @contextmanager
    def snapshot(self) -> Generator[None, None, None]:
        """Consistent read: every query inside sees the same database state."""
        conn = self.conn
        if conn.in_transaction:
            yield
            return
        conn.execute("BEGIN DEFERRED")
        try:
            yield
        finally:
            conn.execute("COMMIT")

    # --- Entity records ---

    def list_records(
        self,
        cls: type[Record],
        *,
        order_by: str = "id",
        where: str = "",
        params: tuple = (),
    ) -> list:
        """List records of one type. ``where``/``order_by`` are trusted SQL fragments."""
        sql = f"SELECT * FROM {cls.table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order_by}"
        rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_record(cls, row) for row in rows]

    def get_record(self, cls: type[Record], record_id: str):
        row = self.conn.execute(
            f"SELECT * FROM {cls.table} WHERE id = ?", (record_id,)
        ).fetchone()
        return _row_to_record(cls, row) if row else None

    def find_user_by_email(self, email: str) -> User | None:
        row = self.conn.execute(
            "SELECT * FROM users WHERE lower(email) = lower(?)", (email.strip(),)
        ).fetchone()
        return _row_to_record(User, row) if row else None

    def find_relationship(
        self, person_id: str, related_person_id: str, rel_type: str
    ) -> Relationship | None:
        row = self.conn.execute(
            "SELECT * FROM relationships WHERE person_id = ? AND related_person_id = ?"
            " AND type = ? ORDER BY id LIMIT 1",
            (person_id, related_person_id, rel_type),
        ).fetchone()
        return _row_to_record(Relationship, row) if row else None

    def find_person_by_name(
        self, first_name: str, last_name: str, date_of_birth: str | None
    ) -> Person | None:
        row = self.conn.execute(
            "SELECT * FROM people WHERE first_name = ? AND last_name = ?"
            " AND date_of_birth IS ? ORDER BY id LIMIT 1",
            (first_name, last_name, date_of_birth),
        ).fetchone()
        return _row_to_record(Person, row) if row else None

    def get_family_settings(self) -> FamilySettings | None:
        row = self.conn.execute(
            "SELECT * FROM family_settings ORDER BY created_at LIMIT 1"
        ).fetchone()
        return _row_to_record(FamilySettings, row) if row else None

    def exists(self, cls: type[Record], record_id: str | None) -> bool:
        if not record_id:
            return False
        row = self.conn.execute(
            f"SELECT 1 FROM {cls.table} WHERE id = ?", (record_id,)
        ).fetchone()
        return row is not None

    def count(self, cls: type[Record]) -> int:
        row = self.conn.execute(f"SELECT COUNT(*) AS cnt FROM {cls.table}").fetchone()
        return row["cnt"] if row else 0

    def insert_record(self, record: Record) -> None:
        values = _record_to_row(record)
        columns = list(values)
        placeholders = ", ".join("?" for _ in columns)
        self.conn.execute(
            f"INSERT INTO {record.table} ({', '.join(columns)}) VALUES ({placeholders})",
            [values[c] for c in columns],
        )

    def update_record(self, record: Record) -> None:
        values = _record_to_row(record)
        record_id = values.pop("id")
        assignments = ", ".join(f"{c} = ?" for c in values)
        cursor = self.conn.execute(
            f"UPDATE {record.table} SET {assignments} WHERE id = ?",
            [*values.values(), record_id],
        )
        if cursor.rowcount == 0:
            raise LookupError(f"No {record.table} row with id {record_id}")

    def set_password_hash(self, user_id: str, password_hash: str | None) -> None:
        self.conn.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?", (password_hash, user_id)
        )

    def get_password_hash(self, user_id: str) -> str | None:
        row = self.conn.execute(
            "SELECT password_hash FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        return row["password_hash"] if row else None

    # --- Backups ---

    def insert_backup(self, backup: Backup) -> None:
        values = _backup_to_row(backup)
        placeholders = ", ".join("?" for _ in _BACKUP_COLUMNS)
        self.conn.execute(
            f"INSERT INTO backups ({', '.join(_BACKUP_COLUMNS)}) VALUES ({placeholders})",
            [values[c] for c in _BACKUP_COLUMNS],
        )

    def update_backup(self, backup: Backup) -> None:
        values = _backup_to_row(backup)
        values.pop("id")
        assignments = ", ".join(f"{c} = ?" for c in values)
        self.conn.execute(
            f"UPDATE backups SET {assignments} WHERE id = ?",
            [*values.values(), backup.id],
        )

    def get_backup(self, backup_id: str) -> Backup | None:
        row = self.conn.execute("SELECT * FROM backups WHERE id = ?", (backup_id,)).fetchone()
        return _row_to_backup(row) if row else None

    def list_backups(
        self,
        *,
        backup_type: BackupType | None = None,
        status: BackupStatus | None = None,
        include_deleted: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Backup]:
        """List backups newest first."""
        sql = "SELECT * FROM backups WHERE 1 = 1"
        params: list = []
        if backup_type is not None:
            sql += " AND type = ?"
            params.append(BackupType(backup_type).value)
        if status is not None:
            sql += " AND status = ?"
            params.append(BackupStatus(status).value)
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_backup(r) for r in rows]

    # --- Backup settings (singleton) ---

    def read_backup_settings(self) -> dict | None:
        row = self.conn.execute("SELECT data FROM backup_settings WHERE id = 1").fetchone()
        return json.loads(row["data"]) if row else None

    def write_backup_settings(self, data: dict) -> None:
        self.conn.execute(
            "INSERT INTO backup_settings (id, data) VALUES (1, ?)"
            " ON CONFLICT(id) DO UPDATE SET data = excluded.data",
            (json.dumps(data, sort_keys=True),),
        )


# --- Schema ---

_SCHEMA = """
CREATE TABLE IF NOT EXISTS people (
    id TEXT PRIMARY KEY,
    first_name TEXT NOT NULL,
    last_name TEXT NOT NULL,
    maiden_name TEXT,
    date_of_birth TEXT,
    date_of_passing TEXT,
    birth_place TEXT,
    native_place TEXT,
    gender TEXT,
    photo_url TEXT,
    bio TEXT,
    email TEXT,
    phone TEXT,
    current_address TEXT,
    work_address TEXT,
    profession TEXT,
    employer TEXT,
    social_links TEXT,
    is_living INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    created_by_id TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    password_hash TEXT,
    person_id TEXT REFERENCES people(id) ON DELETE SET NULL,
    role TEXT NOT NULL DEFAULT 'VIEWER',
    is_active INTEGER NOT NULL DEFAULT 1,
    must_change_password INTEGER NOT NULL DEFAULT 0,
    invited_by_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_login_at TEXT,
    preferred_language TEXT
);

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    person_id TEXT NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    related_person_id TEXT NOT NULL REFERENCES people(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    marriage_date TEXT,
    divorce_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS suggestions (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    target_person_id TEXT REFERENCES people(id) ON DELETE CASCADE,
    suggested_data TEXT NOT NULL,
    reason TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    submitted_by_id TEXT NOT NULL REFERENCES users(id),
    reviewed_by_id TEXT,
    review_note TEXT,
    submitted_at TEXT NOT NULL,
    reviewed_at TEXT
);

CREATE TABLE IF NOT EXISTS family_settings (
    id TEXT PRIMARY KEY,
    family_name TEXT NOT NULL,
    description TEXT,
    locale TEXT NOT NULL,
    custom_labels TEXT,
    default_privacy TEXT NOT NULL,
    allow_self_registration INTEGER NOT NULL,
    require_approval_for_edits INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    action TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT,
    previous_data TEXT,
    new_data TEXT,
    ip_address TEXT,
    user_agent TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_audit_logs_created ON audit_logs(created_at);
CREATE INDEX IF NOT EXISTS idx_relationships_endpoints
    ON relationships(person_id, related_person_id, type);

CREATE TABLE IF NOT EXISTS backups (
    id TEXT PRIMARY KEY,
    filename TEXT NOT NULL,
    type TEXT NOT NULL,
    status TEXT NOT NULL,
    location TEXT NOT NULL,
    path TEXT,
    size INTEGER,
    person_count INTEGER,
    relationship_count INTEGER,
    user_count INTEGER,
    suggestion_count INTEGER,
    photo_count INTEGER,
    audit_log_count INTEGER,
    duration INTEGER,
    error TEXT,
    created_at TEXT NOT NULL,
    deleted_at TEXT
);

CREATE TABLE IF NOT EXISTS backup_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    data TEXT NOT NULL
);
"""


def _record_to_row(record: Record) -> dict:
    values = record.fields()
    for name in record.json_fields:
        if values[name] is not None:
            values[name] = json.dumps(values[name], sort_keys=True)
    for name in record.bool_fields:
        values[name] = int(bool(values[name]))
    return values


def _row_to_record(cls: type[Record], row: sqlite3.Row):
    keys = row.keys()
    values = {name: row[name] for name in cls.field_names() if name in keys}
    for name in cls.json_fields:
        if values.get(name) is not None:
            values[name] = json.loads(values[name])
    for name in cls.bool_fields:
        if name in values:
            values[name] = bool(values[name])
    return cls(**values)


def _backup_to_row(backup: Backup) -> dict:
    values = {c: getattr(backup, c) for c in _BACKUP_COLUMNS}
    values["type"] = BackupType(backup.type).value
    values["status"] = BackupStatus(backup.status).value
    values["location"] = StorageProvider(backup.location).value
    return values


def _row_to_backup(row: sqlite3.Row) -> Backup:
    values = {c: row[c] for c in _BACKUP_COLUMNS}
    values["type"] = BackupType(values["type"])
    values["status"] = BackupStatus(values["status"])
    values["location"] = StorageProvider(values["location"])
    return Backup(**values)

