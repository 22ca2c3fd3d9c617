import hashlib
import html
import json
import logging
import math
import os
import re
import secrets
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, ClassVar, Iterable, Iterator, Literal, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import anyio.from_thread
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
import httplib2
from pydantic import BaseModel, ConfigDict, Field
from starlette.responses import RedirectResponse

APP_NAME = "TagTrack"
API_VERSION = "1.0.0"
BASE_DIR = Path(__file__).parent

# Load local env (secrets live in .env; file itself is ignored)
load_dotenv(dotenv_path=BASE_DIR / ".env", override=False)

DB_PATH = Path(os.getenv("TAGTRACK_DB_PATH", "") or BASE_DIR / "tagtrack.db")

# Google OAuth (Calendar, read-only)
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", "http://127.0.0.1:8000/auth/google/callback")
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

GOOGLE_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]

# Where the browser lands after a successful login
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3001")

# Refresh tokens are encrypted at rest with a key derived from this value
ENCRYPTION_KEY = os.getenv("ENCRYPTION_KEY", "")

# Cookies
SESSION_COOKIE = "session_id"
STATE_COOKIE = "oauth_state"
VERIFIER_COOKIE = "oauth_verifier"
SESSION_MAX_AGE = int(os.getenv("SESSION_MAX_AGE", "3600"))
STATE_MAX_AGE = 600
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in ("true", "1", "yes", "on")

# Sync behaviour
CALENDAR_ID = "primary"
CALENDAR_TIMEZONE = os.getenv("CALENDAR_TIMEZONE", "UTC")
SYNC_MAX_RESULTS = int(os.getenv("SYNC_MAX_RESULTS", "100"))
MAX_RESULTS_LIMIT = 2500  # Google Calendar events.list page ceiling
DEFAULT_LOOKBACK_DAYS = 7
TAG_POLICY = os.getenv("TAG_POLICY", "with_description")  # with_description | summary_only
TAG_SOURCE_FIELD = os.getenv("TAG_SOURCE_FIELD", "description")  # description | summary
TAG_REGISTRY_ENABLED = os.getenv("TAG_REGISTRY_ENABLED", "true").lower() in ("true", "1", "yes", "on")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

TagPolicy = Literal["with_description", "summary_only"]
TagField = Literal["description", "summary"]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


# ─────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────

class TagTrackError(Exception):
    """Base error; rendered to the client as {"error": message}."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, clear_session: bool = False) -> None:
        self.message = message or self.default_message
        self.clear_session = clear_session
        super().__init__(self.message)


class AuthenticationMissing(TagTrackError):
    status_code = 401
    default_message = "Not authenticated"


class ValidationFailure(TagTrackError):
    status_code = 400
    default_message = "Invalid request"


class UpstreamFailure(TagTrackError):
    status_code = 500
    default_message = "Failed to fetch events"


class PersistenceFailure(TagTrackError):
    status_code = 500
    default_message = "Failed to store events"


class SyncAborted(TagTrackError):
    status_code = 499
    default_message = "Client closed request"


# ─────────────────────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────────────────────

def _db() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_db() -> None:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(DB_PATH) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
              id TEXT PRIMARY KEY,
              google_id TEXT NOT NULL UNIQUE,
              email TEXT NOT NULL,
              name TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS google_tokens (
              user_id TEXT PRIMARY KEY,
              access_token TEXT NOT NULL DEFAULT '',
              refresh_token_enc TEXT NOT NULL DEFAULT '',
              token_uri TEXT NOT NULL DEFAULT '',
              scopes_json TEXT NOT NULL DEFAULT '[]',
              expiry TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              created_at TEXT NOT NULL,
              expires_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS events (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              google_event_id TEXT NOT NULL,
              summary TEXT NOT NULL DEFAULT '',
              description TEXT,
              start_at TEXT,
              end_at TEXT,
              is_all_day INTEGER NOT NULL DEFAULT 0,
              duration INTEGER,                      -- minutes; NULL = unknown
              tags_json TEXT NOT NULL DEFAULT '[]',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(user_id, google_event_id)  -- idempotency key for sync
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS project_tags (
              id TEXT PRIMARY KEY,
              user_id TEXT NOT NULL,
              tag TEXT NOT NULL,
              description TEXT NOT NULL DEFAULT '',
              created_at TEXT NOT NULL,
              updated_at TEXT NOT NULL,
              UNIQUE(user_id, tag)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS event_tags (
              user_id TEXT NOT NULL,
              google_event_id TEXT NOT NULL,
              tag_id TEXT NOT NULL,
              position INTEGER NOT NULL DEFAULT 0,
              PRIMARY KEY (user_id, google_event_id, tag_id)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_events_user_start ON events (user_id, start_at)")
        conn.commit()


def _chunks(items: list[str], size: int = 500) -> Iterator[list[str]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ─────────────────────────────────────────────────────────────
# Tag extraction & normalization
# ─────────────────────────────────────────────────────────────

SUMMARY_TAG_RE = re.compile(r"#(\w+)")
# "#tag trailing words" up to the next '#' or end of text
DESCRIPTION_TAG_RE = re.compile(r"#(\w+)([^#]*)")
HTML_TAG_RE = re.compile(r"</?[A-Za-z][^>]*>")
HTML_ENTITY_RE = re.compile(r"&(?:#\d+|#[xX][0-9A-Fa-f]+|[A-Za-z][A-Za-z0-9]*);")


@dataclass(frozen=True)
class ProjectTagMatch:
    tag: str
    description: str = ""


def extract_project_tags(text: Any, policy: TagPolicy = "with_description") -> list[ProjectTagMatch]:
    """
    Parse `#tag` markers out of free text, left to right.

    summary_only: description is always "".
    with_description: description is the phrase following the tag, up to the next '#'.
    Missing or non-string text yields [].
    """
    if not text or not isinstance(text, str):
        return []
    if policy == "summary_only":
        return [ProjectTagMatch(tag=m.group(1)) for m in SUMMARY_TAG_RE.finditer(text)]
    if policy == "with_description":
        return [
            ProjectTagMatch(tag=m.group(1), description=m.group(2).strip())
            for m in DESCRIPTION_TAG_RE.finditer(text)
        ]
    raise ValueError(f"Unknown tag policy: {policy!r}")


def duration_minutes(start: datetime | None, end: datetime | None) -> int | None:
    """Whole minutes between start and end, rounded half up. None when either side is unknown."""
    if start is None or end is None:
        return None
    minutes = (end - start).total_seconds() / 60
    # Negative when end precedes start; kept as-is.
    return math.floor(minutes + 0.5)


@dataclass(frozen=True)
class PreciseInstant:
    """Timed event boundary (Google `dateTime`)."""

    at: datetime
    kind: ClassVar[str] = "datetime"


@dataclass(frozen=True)
class DateOnlyInstant:
    """All-day event boundary (Google `date`), anchored at local midnight."""

    day: date
    at: datetime
    kind: ClassVar[str] = "date"


EventTime = PreciseInstant | DateOnlyInstant


def _parse_rfc3339(value: str, tz: ZoneInfo) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz)
    return dt.astimezone(timezone.utc)


def parse_event_time(boundary: Any, tz: ZoneInfo) -> EventTime | None:
    """Prefer the precise `dateTime`; fall back to the date-only `date`."""
    if not isinstance(boundary, dict):
        return None
    raw_dt = boundary.get("dateTime")
    if raw_dt:
        try:
            return PreciseInstant(at=_parse_rfc3339(str(raw_dt), tz))
        except ValueError:
            return None
    raw_day = boundary.get("date")
    if raw_day:
        try:
            day = date.fromisoformat(str(raw_day))
        except ValueError:
            return None
        return DateOnlyInstant(day=day, at=datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc))
    return None


@dataclass
class TrackedEvent:
    google_event_id: str
    summary: str
    description: str | None
    start: EventTime | None
    end: EventTime | None
    duration: int | None
    tags: list[ProjectTagMatch] = field(default_factory=list)

    @property
    def tag_names(self) -> list[str]:
        return [t.tag for t in self.tags]

    @property
    def is_all_day(self) -> bool:
        return isinstance(self.start, DateOnlyInstant)


def _unescape_entity(match: re.Match) -> str:
    char = html.unescape(match.group(0))
    # an escaped "#" is literal text, never a tag marker; show it as a fullwidth number sign
    return "\uff03" if char == "#" else char


def _plain_text(text: str | None) -> str:
    if not text:
        return ""
    # Google returns HTML descriptions for events edited in the web UI
    text = HTML_TAG_RE.sub(" ", text)
    return HTML_ENTITY_RE.sub(_unescape_entity, text)


def normalize_event(
    raw: dict[str, Any],
    policy: TagPolicy = "with_description",
    tag_field: TagField = "description",
    tz: ZoneInfo | None = None,
) -> TrackedEvent:
    tz = tz or ZoneInfo("UTC")
    summary = raw.get("summary") or ""
    description = raw.get("description")
    start = parse_event_time(raw.get("start"), tz)
    end = parse_event_time(raw.get("end"), tz)
    source_text = summary if tag_field == "summary" else _plain_text(description)
    return TrackedEvent(
        google_event_id=str(raw.get("id") or ""),
        summary=summary,
        description=description,
        start=start,
        end=end,
        duration=duration_minutes(start.at if start else None, end.at if end else None),
        tags=extract_project_tags(source_text, policy),
    )


# ─────────────────────────────────────────────────────────────
# Credentials & sessions
# ─────────────────────────────────────────────────────────────

def _require_google_config() -> None:
    if not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET):
        raise ValidationFailure("Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET.")
    if not ENCRYPTION_KEY:
        raise ValidationFailure("ENCRYPTION_KEY not configured (required to store refresh tokens).")


def _token_cipher() -> AESGCM:
    # AES-256 needs 32 bytes; derive them from whatever ENCRYPTION_KEY holds
    return AESGCM(hashlib.sha256(ENCRYPTION_KEY.encode("utf-8")).digest())


def encrypt_token(token: str) -> str:
    if not token:
        return ""
    nonce = secrets.token_bytes(12)
    return (nonce + _token_cipher().encrypt(nonce, token.encode("utf-8"), None)).hex()


def decrypt_token(value: str) -> str:
    if not value:
        return ""
    try:
        raw = bytes.fromhex(value)
        return _token_cipher().decrypt(raw[:12], raw[12:], None).decode("utf-8")
    except (ValueError, InvalidTag) as exc:
        raise UpstreamFailure("Stored Google credentials unreadable; reconnect required", clear_session=True) from exc


def _google_flow(state: str | None = None) -> Flow:
    return Flow.from_client_config(
        {
            "web": {
                "client_id": GOOGLE_CLIENT_ID,
                "client_secret": GOOGLE_CLIENT_SECRET,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": GOOGLE_TOKEN_URI,
            }
        },
        scopes=GOOGLE_SCOPES,
        redirect_uri=GOOGLE_REDIRECT_URI,
        state=state,
    )


def _save_google_tokens(conn: sqlite3.Connection, user_id: str, creds: Credentials) -> None:
    now = _utc_now().isoformat()
    conn.execute(
        """
        INSERT INTO google_tokens
          (user_id, access_token, refresh_token_enc, token_uri, scopes_json, expiry, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO UPDATE SET
          access_token=excluded.access_token,
          refresh_token_enc=CASE
            WHEN excluded.refresh_token_enc != '' THEN excluded.refresh_token_enc
            ELSE google_tokens.refresh_token_enc
          END,
          token_uri=excluded.token_uri,
          scopes_json=excluded.scopes_json,
          expiry=excluded.expiry,
          updated_at=excluded.updated_at
        """,
        (
            user_id,
            creds.token or "",
            encrypt_token(creds.refresh_token or ""),
            getattr(creds, "token_uri", None) or GOOGLE_TOKEN_URI,
            json.dumps(list(creds.scopes or [])),
            creds.expiry.isoformat() if getattr(creds, "expiry", None) else "",
            now,
            now,
        ),
    )


def _get_google_creds(user_id: str, force_refresh: bool = False) -> Credentials:
    with _db() as conn:
        row = conn.execute(
            """
            SELECT access_token, refresh_token_enc, token_uri, scopes_json, expiry
            FROM google_tokens
            WHERE user_id = ?
            """,
            (user_id,),
        ).fetchone()
    if not row:
        raise AuthenticationMissing("Google not connected")

    creds = Credentials(
        token=row["access_token"] or None,
        refresh_token=decrypt_token(row["refresh_token_enc"]) or None,
        token_uri=row["token_uri"] or GOOGLE_TOKEN_URI,
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        scopes=json.loads(row["scopes_json"] or "[]"),
    )
    if row["expiry"]:
        try:
            # google-auth compares expiry as naive UTC
            creds.expiry = datetime.fromisoformat(row["expiry"]).replace(tzinfo=None)
        except ValueError:
            logger.warning("Ignoring unparseable token expiry for %s", user_id)

    if creds.valid and not force_refresh:
        return creds
    if not creds.refresh_token:
        raise UpstreamFailure("Google credentials invalid; reconnect required", clear_session=True)
    try:
        creds.refresh(GoogleAuthRequest())
    except RefreshError as exc:
        raise UpstreamFailure("Google token refresh failed; reconnect required", clear_session=True) from exc
    except TransportError as exc:
        raise UpstreamFailure("Could not reach Google to refresh credentials") from exc
    with _db() as conn:
        conn.execute(
            """
            UPDATE google_tokens
            SET access_token = ?, expiry = ?, updated_at = ?
            WHERE user_id = ?
            """,
            (
                creds.token or "",
                creds.expiry.isoformat() if getattr(creds, "expiry", None) else "",
                _utc_now().isoformat(),
                user_id,
            ),
        )
        conn.commit()
    return creds


def _fetch_google_profile(creds: Credentials) -> dict[str, Any]:
    svc = build("oauth2", "v2", credentials=creds, cache_discovery=False)
    return svc.userinfo().get().execute()


def _upsert_user(conn: sqlite3.Connection, google_id: str, email: str, name: str) -> str:
    now = _utc_now().isoformat()
    conn.execute(
        """
        INSERT INTO users (id, google_id, email, name, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(google_id) DO UPDATE SET
          email=excluded.email,
          name=excluded.name,
          updated_at=excluded.updated_at
        """,
        (f"user_{secrets.token_hex(8)}", google_id, email, name, now, now),
    )
    row = conn.execute("SELECT id FROM users WHERE google_id = ?", (google_id,)).fetchone()
    return row[0]


def _create_session(conn: sqlite3.Connection, user_id: str) -> str:
    session_id = secrets.token_urlsafe(32)
    now = _utc_now()
    conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (now.isoformat(),))
    conn.execute(
        "INSERT INTO sessions (id, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
        (session_id, user_id, now.isoformat(), (now + timedelta(seconds=SESSION_MAX_AGE)).isoformat()),
    )
    return session_id


def _session_user(request: Request) -> dict[str, Any] | None:
    session_id = request.cookies.get(SESSION_COOKIE)
    if not session_id:
        return None
    with _db() as conn:
        row = conn.execute(
            """
            SELECT u.id, u.email, u.name
            FROM sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.id = ? AND s.expires_at > ?
            """,
            (session_id, _utc_now().isoformat()),
        ).fetchone()
    return dict(row) if row else None


def _require_session(request: Request) -> dict[str, Any]:
    user = _session_user(request)
    if not user:
        raise AuthenticationMissing()
    return user


def _set_cookie(response, key: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key,
        value,
        max_age=max_age,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="none" if COOKIE_SECURE else "lax",
        path="/",
    )


def _clear_auth_cookies(response) -> None:
    for key in (SESSION_COOKIE, STATE_COOKIE, VERIFIER_COOKIE):
        response.delete_cookie(key, path="/")


# ─────────────────────────────────────────────────────────────
# Calendar source
# ─────────────────────────────────────────────────────────────

class CalendarSource(Protocol):
    def list_events(
        self, time_min: datetime, time_max: datetime | None, max_results: int
    ) -> Iterable[dict[str, Any]]: ...


class GoogleCalendarSource:
    """Single capped fetch from the user's primary Google Calendar."""

    def __init__(self, creds: Credentials, calendar_id: str = CALENDAR_ID) -> None:
        self.creds = creds
        self.calendar_id = calendar_id

    def list_events(
        self, time_min: datetime, time_max: datetime | None, max_results: int
    ) -> Iterator[dict[str, Any]]:
        svc = build("calendar", "v3", credentials=self.creds, cache_discovery=False)
        params: dict[str, Any] = {
            "calendarId": self.calendar_id,
            "timeMin": time_min.isoformat(),
            "maxResults": max_results,
            "singleEvents": True,
            "orderBy": "startTime",
        }
        if time_max is not None:
            params["timeMax"] = time_max.isoformat()
        resp = svc.events().list(**params).execute()
        yield from resp.get("items", [])


def _calendar_source_for(user_id: str) -> CalendarSource:
    return GoogleCalendarSource(_get_google_creds(user_id))


# ─────────────────────────────────────────────────────────────
# Tag registry
# ─────────────────────────────────────────────────────────────

def find_or_update_project_tag(
    conn: sqlite3.Connection,
    user_id: str,
    tag: str,
    description: str,
    *,
    keep_existing_description: bool = False,
) -> str:
    """
    Create the (user, tag) record or overwrite its description; returns the tag id.

    By default the last write wins, even with an empty description. Sync passes
    keep_existing_description=True so an empty observation doesn't blank it.
    """
    now = _utc_now().isoformat()
    conn.execute(
        """
        INSERT INTO project_tags (id, user_id, tag, description, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, tag) DO UPDATE SET
          description=CASE
            WHEN excluded.description != '' OR ? = 0 THEN excluded.description
            ELSE project_tags.description
          END,
          updated_at=excluded.updated_at
        """,
        (f"tag_{secrets.token_hex(8)}", user_id, tag, description or "", now, now, int(keep_existing_description)),
    )
    row = conn.execute(
        "SELECT id FROM project_tags WHERE user_id = ? AND tag = ?",
        (user_id, tag),
    ).fetchone()
    return row[0]


def list_project_tags(conn: sqlite3.Connection, user_id: str) -> list[dict[str, Any]]:
    cur = conn.execute(
        """
        SELECT id, tag, description, created_at, updated_at
        FROM project_tags
        WHERE user_id = ?
        ORDER BY tag ASC
        """,
        (user_id,),
    )
    return [dict(r) for r in cur.fetchall()]


def _link_event_tags(conn: sqlite3.Connection, user_id: str, google_event_id: str, tag_ids: list[str]) -> None:
    conn.execute(
        "DELETE FROM event_tags WHERE user_id = ? AND google_event_id = ?",
        (user_id, google_event_id),
    )
    for position, tag_id in enumerate(tag_ids):
        conn.execute(
            """
            INSERT OR IGNORE INTO event_tags (user_id, google_event_id, tag_id, position)
            VALUES (?, ?, ?, ?)
            """,
            (user_id, google_event_id, tag_id, position),
        )


# ─────────────────────────────────────────────────────────────
# API models
# ─────────────────────────────────────────────────────────────

class ProjectTagOut(BaseModel):
    tag: str
    description: str = ""


class ProjectTagRecordOut(ProjectTagOut):
    id: str
    created_at: datetime
    updated_at: datetime


class TrackedEventOut(BaseModel):
    id: str  # Google event id
    summary: str = ""
    description: str | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None
    is_all_day: bool = False
    duration: int | None = None  # minutes; None when start/end unknown
    project_tags: list[ProjectTagOut] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TagGroupOut(BaseModel):
    tag: str
    total_minutes: int = 0
    total_formatted: str = "0h 0m"
    events: list[TrackedEventOut] = []


class WeeklyReportOut(BaseModel):
    week_start: str
    week_end: str
    total_minutes: int
    total_formatted: str
    groups: list[TagGroupOut]


class AuthStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_authenticated: bool = Field(alias="isAuthenticated")
    email: str | None = None


class HealthResponse(BaseModel):
    status: str  # "healthy" or "unhealthy"
    version: str
    database: bool
    timestamp: str
    error: str | None = None


# ─────────────────────────────────────────────────────────────
# Synchronizer
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class SyncSettings:
    tag_policy: TagPolicy = "with_description"
    tag_field: TagField = "description"
    registry_enabled: bool = True
    max_results: int = 100
    timezone: str = "UTC"


def _sync_settings(max_results: int | None = None) -> SyncSettings:
    return SyncSettings(
        tag_policy=TAG_POLICY,
        tag_field=TAG_SOURCE_FIELD,
        registry_enabled=TAG_REGISTRY_ENABLED,
        max_results=SYNC_MAX_RESULTS if max_results is None else max_results,
        timezone=CALENDAR_TIMEZONE,
    )


def collect_events(
    source: CalendarSource,
    start: datetime,
    end: datetime | None,
    settings: SyncSettings,
) -> list[TrackedEvent]:
    """Fetch the window from the calendar source and normalize every event."""
    try:
        raw_events = list(source.list_events(start, end, settings.max_results))
    except HttpError as exc:
        status = getattr(getattr(exc, "resp", None), "status", None)
        logger.error("Calendar fetch failed (HTTP %s): %s", status, exc)
        raise UpstreamFailure(clear_session=status == 401) from exc
    except RefreshError as exc:
        logger.warning("Google credentials rejected during fetch: %s", exc)
        raise UpstreamFailure("Google credentials invalid; reconnect required", clear_session=True) from exc
    except (TransportError, httplib2.HttpLib2Error, OSError) as exc:
        logger.error("Calendar fetch failed: %s", exc)
        raise UpstreamFailure() from exc

    tz = _zone(settings.timezone)
    events: list[TrackedEvent] = []
    for raw in raw_events:
        if not raw.get("id"):
            logger.warning("Skipping calendar event without id: %r", (raw.get("summary") or "")[:40])
            continue
        events.append(normalize_event(raw, settings.tag_policy, settings.tag_field, tz))
    logger.info(
        "Fetched %d events (%d tagged) for %s..%s",
        len(events),
        sum(1 for ev in events if ev.tags),
        start.isoformat(),
        end.isoformat() if end else "open",
    )
    return events


def _upsert_event(conn: sqlite3.Connection, user_id: str, event: TrackedEvent) -> None:
    now = _utc_now().isoformat()
    conn.execute(
        """
        INSERT INTO events
          (id, user_id, google_event_id, summary, description, start_at, end_at,
           is_all_day, duration, tags_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id, google_event_id) DO UPDATE SET
          summary=excluded.summary,
          description=excluded.description,
          start_at=excluded.start_at,
          end_at=excluded.end_at,
          is_all_day=excluded.is_all_day,
          duration=excluded.duration,
          tags_json=excluded.tags_json,
          updated_at=excluded.updated_at
        """,
        (
            f"ev_{secrets.token_hex(10)}",
            user_id,
            event.google_event_id,
            event.summary,
            event.description,
            event.start.at.isoformat() if event.start else None,
            event.end.at.isoformat() if event.end else None,
            int(event.is_all_day),
            event.duration,
            json.dumps([{"tag": t.tag, "description": t.description} for t in event.tags]),
            now,
            now,
        ),
    )


def store_events(
    conn: sqlite3.Connection,
    user_id: str,
    events: list[TrackedEvent],
    settings: SyncSettings,
) -> int:
    """
    Upsert every event (and its registry tags) keyed by Google event id.

    Each event is committed on its own; a failure part way leaves earlier
    events stored.
    """
    stored = 0
    try:
        for event in events:
            tag_ids: list[str] = []
            if settings.registry_enabled:
                for match in event.tags:
                    tag_ids.append(
                        find_or_update_project_tag(
                            conn, user_id, match.tag, match.description, keep_existing_description=True
                        )
                    )
            _upsert_event(conn, user_id, event)
            if settings.registry_enabled:
                _link_event_tags(conn, user_id, event.google_event_id, tag_ids)
            conn.commit()
            stored += 1
    except sqlite3.Error as exc:
        logger.exception("Store failed after %d of %d events", stored, len(events))
        raise PersistenceFailure() from exc
    logger.info("Upserted %d events for %s", stored, user_id)
    return stored


def _row_to_event(row: sqlite3.Row, tags: list[dict[str, Any]]) -> TrackedEventOut:
    return TrackedEventOut(
        id=row["google_event_id"],
        summary=row["summary"] or "",
        description=row["description"],
        start_at=row["start_at"],
        end_at=row["end_at"],
        is_all_day=bool(row["is_all_day"]),
        duration=row["duration"],
        project_tags=[ProjectTagOut(tag=t["tag"], description=t.get("description") or "") for t in tags],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _registry_tags(
    conn: sqlite3.Connection, user_id: str, google_event_ids: list[str]
) -> dict[str, list[dict[str, Any]]]:
    out: dict[str, list[dict[str, Any]]] = {}
    for chunk in _chunks(google_event_ids):
        placeholders = ",".join("?" for _ in chunk)
        cur = conn.execute(
            f"""
            SELECT et.google_event_id, pt.tag, pt.description
            FROM event_tags et
            JOIN project_tags pt ON pt.id = et.tag_id
            WHERE et.user_id = ? AND et.google_event_id IN ({placeholders})
            ORDER BY et.google_event_id, et.position ASC
            """,
            [user_id, *chunk],
        )
        for r in cur.fetchall():
            out.setdefault(r["google_event_id"], []).append({"tag": r["tag"], "description": r["description"]})
    return out


def _events_out(
    conn: sqlite3.Connection, user_id: str, rows: list[sqlite3.Row], registry: bool
) -> list[TrackedEventOut]:
    resolved = _registry_tags(conn, user_id, [r["google_event_id"] for r in rows]) if registry else {}
    out: list[TrackedEventOut] = []
    for r in rows:
        if registry:
            tags = resolved.get(r["google_event_id"], [])
        else:
            tags = json.loads(r["tags_json"] or "[]")
        out.append(_row_to_event(r, tags))
    return out


EVENT_COLUMNS = """
    google_event_id, summary, description, start_at, end_at, is_all_day,
    duration, tags_json, created_at, updated_at
"""


def load_events_by_id(
    conn: sqlite3.Connection, user_id: str, google_event_ids: list[str], registry: bool
) -> list[TrackedEventOut]:
    """Re-read stored events, preserving the order of google_event_ids."""
    rows: dict[str, sqlite3.Row] = {}
    try:
        for chunk in _chunks(google_event_ids):
            placeholders = ",".join("?" for _ in chunk)
            cur = conn.execute(
                f"SELECT {EVENT_COLUMNS} FROM events WHERE user_id = ? AND google_event_id IN ({placeholders})",
                [user_id, *chunk],
            )
            for r in cur.fetchall():
                rows[r["google_event_id"]] = r
        ordered = [rows[gid] for gid in google_event_ids if gid in rows]
        return _events_out(conn, user_id, ordered, registry)
    except sqlite3.Error as exc:
        raise PersistenceFailure("Failed to read events") from exc


def load_events_in_window(
    conn: sqlite3.Connection, user_id: str, start: datetime, end: datetime, registry: bool
) -> list[TrackedEventOut]:
    try:
        cur = conn.execute(
            f"""
            SELECT {EVENT_COLUMNS}
            FROM events
            WHERE user_id = ? AND start_at >= ? AND start_at < ?
            ORDER BY start_at ASC
            """,
            (user_id, start.astimezone(timezone.utc).isoformat(), end.astimezone(timezone.utc).isoformat()),
        )
        return _events_out(conn, user_id, cur.fetchall(), registry)
    except sqlite3.Error as exc:
        raise PersistenceFailure("Failed to read events") from exc


def sync_events(
    conn: sqlite3.Connection,
    source: CalendarSource,
    user_id: str | None,
    start: datetime,
    end: datetime | None = None,
    tag_filter: Iterable[str] | None = None,
    settings: SyncSettings | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> list[TrackedEventOut]:
    """
    Mirror calendar events for [start, end) into the store and return them.

    Persistence covers every fetched event; tag_filter only narrows the
    returned list (case-sensitive on raw tag text).
    """
    if not user_id:
        raise AuthenticationMissing()
    settings = settings or _sync_settings()

    events = collect_events(source, start, end, settings)
    if should_abort is not None and should_abort():
        logger.info("Client disconnected before store; dropping %d events", len(events))
        raise SyncAborted()

    store_events(conn, user_id, events, settings)

    wanted = set(tag_filter or [])
    if wanted:
        events = [ev for ev in events if wanted.intersection(ev.tag_names)]
    return load_events_by_id(conn, user_id, [ev.google_event_id for ev in events], settings.registry_enabled)


# ─────────────────────────────────────────────────────────────
# Reporting
# ─────────────────────────────────────────────────────────────

def format_duration(minutes: int | None) -> str:
    minutes = minutes or 0
    sign = "-" if minutes < 0 else ""
    minutes = abs(minutes)
    return f"{sign}{minutes // 60}h {minutes % 60}m"


def group_events_by_tag(
    events: Iterable[TrackedEventOut], selected_tags: Iterable[str] | None = None
) -> list[TagGroupOut]:
    """
    Fan-out grouping: an event lands in every group whose tag it carries.

    Groups keep first-seen order. Group totals can add up to more than the
    input duration when events carry several tags.
    """
    selected = set(selected_tags) if selected_tags is not None else None
    grouped: dict[str, list[TrackedEventOut]] = {}
    for event in events:
        seen: set[str] = set()
        for pt in event.project_tags:
            if pt.tag in seen or (selected is not None and pt.tag not in selected):
                continue
            seen.add(pt.tag)
            grouped.setdefault(pt.tag, []).append(event)

    out: list[TagGroupOut] = []
    for tag, tag_events in grouped.items():
        total = sum(ev.duration or 0 for ev in tag_events)
        out.append(
            TagGroupOut(tag=tag, total_minutes=total, total_formatted=format_duration(total), events=tag_events)
        )
    return out


def summarize_groups(groups: Iterable[TagGroupOut]) -> int:
    return sum(g.total_minutes for g in groups)


def _week_bounds(start_day: str | None, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Sunday 00:00 to the next Sunday, local time."""
    if start_day:
        try:
            base = datetime.combine(date.fromisoformat(start_day), time.min, tzinfo=tz)
        except ValueError as exc:
            raise ValidationFailure("Invalid startDate; expected YYYY-MM-DD") from exc
    else:
        base = _utc_now().astimezone(tz)
    # weekday(): Mon=0 .. Sun=6
    days_since_sunday = (base.weekday() + 1) % 7
    sunday_start = (base - timedelta(days=days_since_sunday)).replace(hour=0, minute=0, second=0, microsecond=0)
    return sunday_start, sunday_start + timedelta(days=7)


# ─────────────────────────────────────────────────────────────
# App
# ─────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    _ensure_db()
    logger.info("%s %s using database %s", APP_NAME, API_VERSION, DB_PATH)
    yield


app = FastAPI(title=APP_NAME, version=API_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TagTrackError)
async def tagtrack_error_handler(request: Request, exc: TagTrackError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s (cause: %r)", type(exc).__name__, request.url.path, exc.message, exc.__cause__)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    response = JSONResponse(status_code=exc.status_code, content={"error": exc.message})
    if exc.clear_session:
        response.delete_cookie(SESSION_COOKIE, path="/")
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected parameters on %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": "Invalid request parameters"})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/auth/google")
def google_oauth_start() -> RedirectResponse:
    _require_google_config()
    flow = _google_flow()
    authorization_url, state = flow.authorization_url(
        access_type="offline",
        include_granted_scopes="true",
        prompt="consent",  # always re-consent so Google hands back a refresh token
    )
    response = RedirectResponse(authorization_url)
    _set_cookie(response, STATE_COOKIE, state, STATE_MAX_AGE)
    # Newer google-auth-oauthlib adds PKCE; the verifier must survive until the callback
    if getattr(flow, "code_verifier", None):
        _set_cookie(response, VERIFIER_COOKIE, flow.code_verifier, STATE_MAX_AGE)
    return response


@app.get("/auth/google/callback")
def google_oauth_callback(request: Request, code: str | None = None, state: str | None = None) -> RedirectResponse:
    _require_google_config()
    expected_state = request.cookies.get(STATE_COOKIE)
    if not expected_state or not state or not secrets.compare_digest(state, expected_state):
        raise ValidationFailure("Invalid OAuth state. Please try again.")
    if not code:
        raise ValidationFailure("Missing OAuth code.")

    flow = _google_flow(state=state)
    flow.code_verifier = request.cookies.get(VERIFIER_COOKIE) or None
    try:
        flow.fetch_token(code=code)
    except Exception as exc:
        raise UpstreamFailure("Failed to get tokens from Google") from exc
    creds = flow.credentials

    try:
        profile = _fetch_google_profile(creds)
    except (HttpError, RefreshError, TransportError, httplib2.HttpLib2Error) as exc:
        raise UpstreamFailure("Failed to get user info from Google") from exc
    if not profile.get("id") or not profile.get("email"):
        raise UpstreamFailure("Missing user information from Google")

    try:
        with _db() as conn:
            user_id = _upsert_user(conn, profile["id"], profile["email"], profile.get("name") or "")
            _save_google_tokens(conn, user_id, creds)
            session_id = _create_session(conn, user_id)
            conn.commit()
    except sqlite3.Error as exc:
        raise PersistenceFailure("Failed to store credentials") from exc
    logger.info("Signed in %s", profile["email"])

    response = RedirectResponse(url=FRONTEND_URL)
    _set_cookie(response, SESSION_COOKIE, session_id, SESSION_MAX_AGE)
    response.delete_cookie(STATE_COOKIE, path="/")
    response.delete_cookie(VERIFIER_COOKIE, path="/")
    return response


@app.get("/auth/status", response_model=AuthStatusOut)
def auth_status(request: Request) -> JSONResponse:
    user = _session_user(request)
    if not user:
        return JSONResponse({"isAuthenticated": False})
    try:
        _get_google_creds(user["id"])
    except (AuthenticationMissing, UpstreamFailure) as exc:
        logger.info("Session for %s no longer valid: %s", user["email"], exc.message)
        response = JSONResponse({"isAuthenticated": False})
        response.delete_cookie(SESSION_COOKIE, path="/")
        return response
    return JSONResponse(AuthStatusOut(is_authenticated=True, email=user["email"]).model_dump(by_alias=True))


@app.post("/auth/refresh")
def auth_refresh(request: Request) -> JSONResponse:
    user = _require_session(request)
    _get_google_creds(user["id"], force_refresh=True)
    return JSONResponse({"success": True})


@app.post("/auth/logout")
def auth_logout(request: Request) -> JSONResponse:
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        with _db() as conn:
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            conn.commit()
    response = JSONResponse({"success": True})
    _clear_auth_cookies(response)
    return response


def _parse_request_instant(value: str | None, name: str, tz: ZoneInfo) -> datetime | None:
    """Accept YYYY-MM-DD (local midnight) or a full ISO-8601 timestamp."""
    if not value:
        return None
    try:
        if len(value) == 10:
            return datetime.combine(date.fromisoformat(value), time.min, tzinfo=tz).astimezone(timezone.utc)
        return _parse_rfc3339(value, tz)
    except ValueError as exc:
        raise ValidationFailure(f"Invalid {name}; expected YYYY-MM-DD or ISO-8601") from exc


def _parse_tag_filter(single: list[str] | None, csv: str | None) -> list[str]:
    raw = list(single or [])
    if csv:
        raw.extend(csv.split(","))
    out: list[str] = []
    for value in raw:
        value = value.strip().removeprefix("#")
        if value and value not in out:
            out.append(value)
    return out


@app.get("/api/events", response_model=list[TrackedEventOut])
def api_events(
    request: Request,
    start_date: str | None = Query(None, alias="startDate"),
    end_date: str | None = Query(None, alias="endDate"),
    project_tag: list[str] | None = Query(None, alias="projectTag"),
    project_tags: str | None = Query(None, alias="projectTags"),
    max_results: int | None = Query(None, alias="maxResults"),
) -> list[TrackedEventOut]:
    """
    Sync the user's primary calendar for the window and return normalized events.

    - startDate: defaults to 7 days ago
    - endDate: optional exclusive upper bound
    - projectTag / projectTags: response-only tag filter
    """
    user = _require_session(request)
    settings = _sync_settings(max_results)
    if not 1 <= settings.max_results <= MAX_RESULTS_LIMIT:
        raise ValidationFailure(f"maxResults must be between 1 and {MAX_RESULTS_LIMIT}")
    tz = _zone(settings.timezone)
    start = _parse_request_instant(start_date, "startDate", tz) or _utc_now() - timedelta(days=DEFAULT_LOOKBACK_DAYS)
    end = _parse_request_instant(end_date, "endDate", tz)
    if end is not None and end <= start:
        raise ValidationFailure("endDate must be after startDate")
    tag_filter = _parse_tag_filter(project_tag, project_tags)

    source = _calendar_source_for(user["id"])
    with _db() as conn:
        return sync_events(
            conn,
            source,
            user["id"],
            start,
            end,
            tag_filter,
            settings,
            should_abort=lambda: anyio.from_thread.run(request.is_disconnected),
        )


@app.get("/api/events/tags", response_model=None)
def api_event_tags(request: Request) -> JSONResponse:
    """Registry records for the user, or distinct tag strings when the registry is off."""
    user = _require_session(request)
    try:
        with _db() as conn:
            if TAG_REGISTRY_ENABLED:
                records = [
                    ProjectTagRecordOut(**r).model_dump(mode="json") for r in list_project_tags(conn, user["id"])
                ]
                return JSONResponse(records)
            cur = conn.execute("SELECT tags_json FROM events WHERE user_id = ?", (user["id"],))
            tags: list[str] = []
            for r in cur.fetchall():
                for t in json.loads(r["tags_json"] or "[]"):
                    if t["tag"] not in tags:
                        tags.append(t["tag"])
            return JSONResponse(tags)
    except sqlite3.Error as exc:
        raise PersistenceFailure("Failed to fetch tags") from exc


@app.get("/api/reports/weekly", response_model=WeeklyReportOut)
def api_weekly_report(
    request: Request,
    start_date: str | None = Query(None, alias="startDate"),
    project_tags: str | None = Query(None, alias="projectTags"),
) -> WeeklyReportOut:
    """Time per tag for the Sunday-to-Saturday week containing startDate (stored events only)."""
    user = _require_session(request)
    tz = _zone(CALENDAR_TIMEZONE)
    week_start, week_end = _week_bounds(start_date, tz)
    selected = _parse_tag_filter(None, project_tags) or None
    with _db() as conn:
        events = load_events_in_window(conn, user["id"], week_start, week_end, TAG_REGISTRY_ENABLED)
    groups = group_events_by_tag(events, selected)
    total = summarize_groups(groups)
    return WeeklyReportOut(
        week_start=week_start.date().isoformat(),
        week_end=(week_end - timedelta(days=1)).date().isoformat(),
        total_minutes=total,
        total_formatted=format_duration(total),
        groups=groups,
    )


@app.get("/health", response_model=HealthResponse)
def health_check():
    """Returns 200 if the store answers, 503 otherwise."""
    timestamp = _utc_now().isoformat()
    try:
        with _db() as conn:
            conn.execute("SELECT 1 FROM events LIMIT 1").fetchall()
    except sqlite3.Error as exc:
        return JSONResponse(
            status_code=503,
            content=HealthResponse(
                status="unhealthy",
                version=API_VERSION,
                database=False,
                timestamp=timestamp,
                error=str(exc),
            ).model_dump(),
        )
    return HealthResponse(status="healthy", version=API_VERSION, database=True, timestamp=timestamp)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.getenv("API_HOST", "127.0.0.1"),
        port=int(os.getenv("API_PORT", "8000")),
    )
