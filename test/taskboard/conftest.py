"""
Shared fixtures for taskboard tests.

Provides an isolated SQLite database per test, seeded users, and a TestClient
whose database dependency points at that temporary database.
"""

import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from taskboard.api import app, get_database
from taskboard.database import SQLiteTaskDatabase


@pytest.fixture
def db():
    """Fresh SQLite database with the schema applied; removed after the test."""
    tmp_file = tempfile.NamedTemporaryFile(delete=False, suffix="_taskboard.db", prefix="test_")
    tmp_file.close()
    database = SQLiteTaskDatabase(tmp_file.name)
    database.initialize_schema()

    yield database

    database.close()
    for suffix in ("", "-wal", "-shm"):
        Path(tmp_file.name + suffix).unlink(missing_ok=True)


@pytest.fixture
def users(db):
    """One admin and two ordinary users."""
    return {
        "admin": db.create_user("Alice Admin", email="alice@example.com", user_type="admin"),
        "member": db.create_user("Bob Member", email="bob@example.com"),
        "other": db.create_user("Carol Other", email="carol@example.com"),
    }


@pytest.fixture
def client(db):
    """TestClient bound to the temporary database (lifespan is not run)."""
    app.dependency_overrides[get_database] = lambda: db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def headers_for():
    """Build the identity header the upstream auth layer would forward."""
    def _headers(user):
        return {"X-User-Id": str(user["id"])}
    return _headers
