"""Tests for the HTTP surface: auth, events sync, tags, reports, health."""

from datetime import datetime, timedelta, timezone

import httplib2
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

import main
from conftest import count_rows, make_google_event

WINDOW = {"startDate": "2025-03-09", "endDate": "2025-03-16"}


def set_cookie_headers(resp, name):
    return [h for h in resp.headers.get_list("set-cookie") if h.startswith(f"{name}=")]


def cleared(resp, name):
    return any("Max-Age=0" in h for h in set_cookie_headers(resp, name))


class TestEventsEndpoint:
    def test_unauthenticated_is_401_without_writes(self, client, conn, fake_source):
        fake_source.items = [make_google_event("g1", description="#acme Work")]
        before = count_rows(conn, "events")

        resp = client.get("/api/events", params=WINDOW)

        assert resp.status_code == 401
        assert resp.json() == {"error": "Not authenticated"}
        assert fake_source.calls == []
        assert count_rows(conn, "events") == before == 0

    def test_returns_normalized_events(self, signed_in_client, fake_source):
        fake_source.items = [
            make_google_event("g1", summary="Build", description="#acme Backend work", minutes=90),
            make_google_event("g2", summary="Offsite", all_day=True),
        ]
        resp = signed_in_client.get("/api/events", params=WINDOW)

        assert resp.status_code == 200
        body = resp.json()
        assert [e["id"] for e in body] == ["g1", "g2"]
        assert body[0]["duration"] == 90
        assert body[0]["project_tags"] == [{"tag": "acme", "description": "Backend work"}]
        assert body[1]["is_all_day"] is True
        start, end, cap = fake_source.calls[0]
        assert start == datetime(2025, 3, 9, tzinfo=timezone.utc)
        assert end == datetime(2025, 3, 16, tzinfo=timezone.utc)
        assert cap == 100

    def test_tag_filters(self, signed_in_client, fake_source, conn):
        fake_source.items = [
            make_google_event("g1", description="#acme A"),
            make_google_event("g2", description="#ops B"),
            make_google_event("g3", description="#misc C"),
        ]
        one = signed_in_client.get("/api/events", params={**WINDOW, "projectTag": "acme"})
        many = signed_in_client.get("/api/events", params={**WINDOW, "projectTags": "acme,#ops"})

        assert [e["id"] for e in one.json()] == ["g1"]
        assert [e["id"] for e in many.json()] == ["g1", "g2"]
        assert count_rows(conn, "events") == 3

    def test_max_results_is_forwarded(self, signed_in_client, fake_source):
        signed_in_client.get("/api/events", params={**WINDOW, "maxResults": 5})
        assert fake_source.calls[0][2] == 5

    def test_default_window_looks_back_a_week(self, signed_in_client, fake_source):
        signed_in_client.get("/api/events")
        start, end, _ = fake_source.calls[0]
        assert end is None
        assert abs((datetime.now(timezone.utc) - timedelta(days=7)) - start) < timedelta(minutes=1)

    def test_bad_parameters_are_400(self, signed_in_client, fake_source):
        for params in (
            {"startDate": "yesterday"},
            {"startDate": "2025-03-16", "endDate": "2025-03-09"},
            {"maxResults": 0},
            {"maxResults": "lots"},
        ):
            resp = signed_in_client.get("/api/events", params=params)
            assert resp.status_code == 400, params
            assert "error" in resp.json()
        assert fake_source.calls == []

    def test_expired_google_token_clears_session_cookie(self, signed_in_client, fake_source):
        fake_source.error = HttpError(httplib2.Response({"status": 401}), b"Unauthorized")
        resp = signed_in_client.get("/api/events", params=WINDOW)

        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to fetch events"}
        assert cleared(resp, main.SESSION_COOKIE)

    def test_google_not_connected_is_401(self, signed_in_client):
        resp = signed_in_client.get("/api/events", params=WINDOW)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Google not connected"}


class TestTagsEndpoint:
    def test_registry_records(self, signed_in_client, fake_source):
        fake_source.items = [make_google_event("g1", description="#acme Client #ops")]
        signed_in_client.get("/api/events", params=WINDOW)

        body = signed_in_client.get("/api/events/tags").json()
        assert [(t["tag"], t["description"]) for t in body] == [("acme", "Client"), ("ops", "")]
        assert all(t["id"].startswith("tag_") for t in body)

    def test_distinct_tags_without_registry(self, signed_in_client, fake_source, monkeypatch):
        monkeypatch.setattr(main, "TAG_REGISTRY_ENABLED", False)
        fake_source.items = [
            make_google_event("g1", description="#acme x #ops"),
            make_google_event("g2", description="#acme y"),
        ]
        signed_in_client.get("/api/events", params=WINDOW)

        assert signed_in_client.get("/api/events/tags").json() == ["acme", "ops"]

    def test_requires_session(self, client):
        assert client.get("/api/events/tags").status_code == 401


class TestWeeklyReport:
    def test_fan_out_totals(self, signed_in_client, fake_source):
        monday = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)
        fake_source.items = [
            make_google_event("g1", summary="Pairing", description="#a x #b y", start=monday, minutes=30),
            make_google_event("g2", summary="Solo", description="#a z", start=monday + timedelta(days=1), minutes=60),
            make_google_event("g3", summary="Next week", description="#a", start=monday + timedelta(days=7)),
        ]
        signed_in_client.get("/api/events", params={"startDate": "2025-03-09", "endDate": "2025-03-23"})

        report = signed_in_client.get("/api/reports/weekly", params={"startDate": "2025-03-12"}).json()

        assert report["week_start"] == "2025-03-09"
        assert report["week_end"] == "2025-03-15"
        assert {g["tag"]: g["total_minutes"] for g in report["groups"]} == {"a": 90, "b": 30}
        assert report["total_minutes"] == 120
        assert report["total_formatted"] == "2h 0m"

        only_b = signed_in_client.get(
            "/api/reports/weekly", params={"startDate": "2025-03-12", "projectTags": "b"}
        ).json()
        assert [g["tag"] for g in only_b["groups"]] == ["b"]

    def test_bad_start_date(self, signed_in_client):
        resp = signed_in_client.get("/api/reports/weekly", params={"startDate": "03/12/2025"})
        assert resp.status_code == 400


class TestAuth:
    def test_status_without_session(self, client):
        assert client.get("/auth/status").json() == {"isAuthenticated": False}

    def test_status_with_valid_credentials(self, signed_in_client, conn, user_id):
        creds = Credentials(token="access-token", expiry=datetime.utcnow() + timedelta(hours=1))
        main._save_google_tokens(conn, user_id, creds)
        conn.commit()

        assert signed_in_client.get("/auth/status").json() == {
            "isAuthenticated": True,
            "email": "someone@example.com",
        }

    def test_status_with_missing_credentials_clears_cookie(self, signed_in_client):
        resp = signed_in_client.get("/auth/status")
        assert resp.json() == {"isAuthenticated": False}
        assert cleared(resp, main.SESSION_COOKIE)

    def test_logout_drops_session(self, signed_in_client, conn):
        resp = signed_in_client.post("/auth/logout")
        assert resp.json() == {"success": True}
        assert cleared(resp, main.SESSION_COOKIE)
        assert count_rows(conn, "sessions") == 0

    def test_new_session_prunes_expired_ones(self, conn, user_id):
        conn.execute(
            "INSERT INTO sessions (id, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
            ("stale", user_id, "2020-01-01T00:00:00+00:00", "2020-01-01T01:00:00+00:00"),
        )
        fresh = main._create_session(conn, user_id)
        conn.commit()

        ids = [r["id"] for r in conn.execute("SELECT id FROM sessions").fetchall()]
        assert ids == [fresh]

    def test_refresh_requires_session(self, client):
        assert client.post("/auth/refresh").status_code == 401

    def test_google_start_needs_config(self, client):
        resp = client.get("/auth/google", follow_redirects=False)
        assert resp.status_code == 400
        assert "GOOGLE_CLIENT_ID" in resp.json()["error"]

    def test_google_start_redirects_with_state_cookie(self, client, google_config):
        resp = client.get("/auth/google", follow_redirects=False)
        assert resp.status_code == 307
        assert resp.headers["location"].startswith("https://accounts.google.com/")
        assert set_cookie_headers(resp, main.STATE_COOKIE)

    def test_callback_rejects_state_mismatch(self, client, google_config, conn):
        client.cookies.set(main.STATE_COOKIE, "expected")
        resp = client.get("/auth/google/callback", params={"code": "abc", "state": "forged"}, follow_redirects=False)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Invalid OAuth state. Please try again."}
        assert count_rows(conn, "sessions") == 0

    def test_callback_requires_code(self, client, google_config):
        client.cookies.set(main.STATE_COOKIE, "s1")
        resp = client.get("/auth/google/callback", params={"state": "s1"}, follow_redirects=False)
        assert resp.status_code == 400

    def test_callback_creates_session(self, client, google_config, conn, monkeypatch):
        class FakeFlow:
            code_verifier = None

            def __init__(self):
                self.credentials = Credentials(token="access-token", refresh_token="refresh-secret")

            def fetch_token(self, code):
                assert code == "auth-code"

        monkeypatch.setattr(main, "_google_flow", lambda state=None: FakeFlow())
        monkeypatch.setattr(
            main,
            "_fetch_google_profile",
            lambda creds: {"id": "google-42", "email": "new@example.com", "name": "New"},
        )
        client.cookies.set(main.STATE_COOKIE, "s1")

        resp = client.get(
            "/auth/google/callback", params={"code": "auth-code", "state": "s1"}, follow_redirects=False
        )

        assert resp.status_code == 307
        assert resp.headers["location"] == main.FRONTEND_URL
        session_cookie = set_cookie_headers(resp, main.SESSION_COOKIE)
        assert session_cookie and "HttpOnly" in session_cookie[0]
        assert cleared(resp, main.STATE_COOKIE)

        stored = conn.execute("SELECT access_token, refresh_token_enc FROM google_tokens").fetchone()
        assert stored["access_token"] == "access-token"
        assert "refresh-secret" not in stored["refresh_token_enc"]
        assert main.decrypt_token(stored["refresh_token_enc"]) == "refresh-secret"
        assert count_rows(conn, "sessions") == 1


class TestHealth:
    def test_healthy(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["database"] is True

    def test_unhealthy_without_schema(self, client, tmp_path, monkeypatch):
        monkeypatch.setattr(main, "DB_PATH", tmp_path / "empty.db")
        resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["database"] is False
