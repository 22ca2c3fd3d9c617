"""
Pytest configuration and shared fixtures.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add repo root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import main  # noqa: E402


class FakeCalendarSource:
    """Stands in for Google Calendar; records every fetch."""

    def __init__(self, items=None, error=None):
        self.items = list(items or [])
        self.error = error
        self.calls = []

    def list_events(self, time_min, time_max, max_results):
        self.calls.append((time_min, time_max, max_results))
        if self.error is not None:
            raise self.error
        yield from self.items[:max_results]


def make_google_event(event_id, summary="", description=None, start=None, minutes=60, all_day=False):
    start = start or datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
    end = start + timedelta(minutes=minutes)
    item = {"id": event_id, "summary": summary}
    if description is not None:
        item["description"] = description
    if all_day:
        item["start"] = {"date": start.date().isoformat()}
        item["end"] = {"date": end.date().isoformat()}
    else:
        item["start"] = {"dateTime": start.isoformat().replace("+00:00", "Z")}
        item["end"] = {"dateTime": end.isoformat().replace("+00:00", "Z")}
    return item


@pytest.fixture(autouse=True)
def default_config(monkeypatch):
    """Pin env-driven settings so a local .env can't change test outcomes."""
    monkeypatch.setattr(main, "TAG_POLICY", "with_description")
    monkeypatch.setattr(main, "TAG_SOURCE_FIELD", "description")
    monkeypatch.setattr(main, "TAG_REGISTRY_ENABLED", True)
    monkeypatch.setattr(main, "CALENDAR_TIMEZONE", "UTC")
    monkeypatch.setattr(main, "SYNC_MAX_RESULTS", 100)
    monkeypatch.setattr(main, "COOKIE_SECURE", False)
    monkeypatch.setattr(main, "GOOGLE_CLIENT_ID", "")
    monkeypatch.setattr(main, "GOOGLE_CLIENT_SECRET", "")
    monkeypatch.setattr(main, "ENCRYPTION_KEY", "test-encryption-key")


@pytest.fixture
def google_config(monkeypatch):
    monkeypatch.setattr(main, "GOOGLE_CLIENT_ID", "client-id.apps.googleusercontent.com")
    monkeypatch.setattr(main, "GOOGLE_CLIENT_SECRET", "client-secret")


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "tagtrack.db"
    monkeypatch.setattr(main, "DB_PATH", path)
    main._ensure_db()
    return path


@pytest.fixture
def conn(db_path):
    connection = main._db()
    yield connection
    connection.close()


@pytest.fixture
def settings():
    return main.SyncSettings(
        tag_policy="with_description",
        tag_field="description",
        registry_enabled=True,
        max_results=100,
        timezone="UTC",
    )


@pytest.fixture
def user_id(conn):
    uid = main._upsert_user(conn, "google-123", "someone@example.com", "Someone")
    conn.commit()
    return uid


@pytest.fixture
def client(db_path):
    from fastapi.testclient import TestClient

    return TestClient(main.app)


@pytest.fixture
def signed_in_client(client, conn, user_id):
    session_id = main._create_session(conn, user_id)
    conn.commit()
    client.cookies.set(main.SESSION_COOKIE, session_id)
    return client


@pytest.fixture
def fake_source(monkeypatch):
    source = FakeCalendarSource()
    monkeypatch.setattr(main, "_calendar_source_for", lambda user_id: source)
    return source


def count_rows(conn, table):
    return conn.execute(f"SELECT COUNT(1) FROM {table}").fetchone()[0]
