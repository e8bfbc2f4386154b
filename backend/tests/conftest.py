"""
Shared pytest fixtures for backend tests.
Uses a temp-file SQLite database per test for isolation.
"""
import pytest
import sqlite3
import sys
import os

# Add backend to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config
import database
from models import CurrentUser
from sessions import SessionStore

TEST_EMAIL = "alice@example.com"


@pytest.fixture
def test_db(monkeypatch, tmp_path):
    """
    Create an isolated test database for each test.
    Uses a temp file (not :memory:) because database.py opens new connections per operation.
    """
    db_path = str(tmp_path / "test.db")
    monkeypatch.setattr(database, "DATABASE_PATH", db_path)
    monkeypatch.setattr(database, "init_db", lambda: None)

    # Create tables directly (skip alembic for tests)
    conn = sqlite3.connect(db_path)
    conn.executescript("""
        CREATE TABLE tasks (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            section TEXT NOT NULL DEFAULT 'personal',
            date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT,
            priority TEXT,
            recurring TEXT,
            collaborators TEXT DEFAULT '[]',
            status TEXT NOT NULL DEFAULT 'Pending',
            created_by TEXT NOT NULL,
            user_id TEXT,
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE users (
            id INTEGER PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE notifications (
            id INTEGER PRIMARY KEY,
            notification_id TEXT NOT NULL UNIQUE,
            task_id TEXT NOT NULL,
            utc_offset REAL NOT NULL,
            notification_type TEXT NOT NULL,
            sent_at TEXT NOT NULL
        );
    """)
    conn.commit()
    conn.close()

    yield db_path


@pytest.fixture
def user():
    return CurrentUser(id="user-1", email=TEST_EMAIL)


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def no_oracle(monkeypatch):
    """Oracle unreachable: the resolver falls back to keyword parsing."""
    monkeypatch.setattr(config, "ANTHROPIC_API_KEY", None)


@pytest.fixture
def app_client(test_db, user, monkeypatch):
    """
    Create a test client for the FastAPI app.
    Mocks init_db to skip alembic migrations and auth to a fixed user.
    """
    from fastapi.testclient import TestClient
    import main
    from auth import get_current_user

    # Skip alembic in tests - tables already created by test_db fixture
    monkeypatch.setattr(database, "init_db", lambda: None)
    monkeypatch.setattr(config, "BACKGROUND_TASKS", False)
    main.app.dependency_overrides[get_current_user] = lambda: user
    main.session_store.clear()

    with TestClient(main.app) as client:
        yield client

    main.app.dependency_overrides.clear()
    main.session_store.clear()
