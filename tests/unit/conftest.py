"""Shared fixtures: a fresh family database and an administrator."""

from pathlib import Path

import pytest

from kinkeeper.core.family_db import FamilyDB
from kinkeeper.core.models import Actor, User, UserRole


@pytest.fixture
def db(tmp_path: Path):
    family_db = FamilyDB(tmp_path / ".kk" / "family.db")
    yield family_db
    family_db.close()


@pytest.fixture
def admin(db: FamilyDB) -> Actor:
    user = User(
        id="admin-1",
        email="admin@example.com",
        name="Admin",
        role=UserRole.ADMIN.value,
        created_at="2024-01-01T00:00:00.000Z",
        updated_at="2024-01-01T00:00:00.000Z",
    )
    with db.transaction():
        db.insert_record(user)
    return Actor(id=user.id, email=user.email, name=user.name)
