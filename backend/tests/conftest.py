"""Pytest fixtures: SQLite database, in-memory chat surfaces and a fake webhook subscriber."""
import json
from datetime import datetime, timezone, timedelta

import httpx
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from tabletop.database import Base, get_db, get_session_factory
from tabletop.integrations.chat_surface import ChatSurface, MessageNotFound, MissingPermission, SurfaceError
from tabletop.main import app
from tabletop.services.dashboard_service import DashboardSync, get_dashboard_sync
from tabletop.services.webhook_service import get_webhook_client

# Import all models so they register with Base.metadata
from tabletop.models.event import Event                 # noqa: F401
from tabletop.models.time_slot import TimeSlot          # noqa: F401
from tabletop.models.participant import Participant     # noqa: F401
from tabletop.models.vote import Vote                   # noqa: F401
from tabletop.models.webhook_event import WebhookEvent  # noqa: F401
from tabletop.models.login_token import LoginToken      # noqa: F401

SQLITE_URL = "sqlite:///./test.db"
BASE_URL = "https://tabletop.test"


class FakeSurface(ChatSurface):
    """In-memory chat platform that records every call."""

    def __init__(self, platform: str = "telegram", retires_by_delete: bool = True):
        self.token = "test-token"
        self._client = None
        self._sleep = lambda seconds: None
        self.platform = platform
        self.retires_by_delete = retires_by_delete
        self.sent = []        # (chat_id, message_id, text)
        self.edits = []       # (chat_id, message_id, text)
        self.deleted = []     # (chat_id, message_id)
        self.pinned = []      # (chat_id, message_id)
        self.unpinned = []    # (chat_id, message_id)
        self.vanished = set()
        self.can_pin = True
        self.down = False
        self._next_id = 100

    def send(self, chat_id, text):
        if self.down:
            raise SurfaceError("platform unavailable")
        self._next_id += 1
        message_id = str(self._next_id)
        self.sent.append((str(chat_id), message_id, text))
        return message_id

    def edit(self, chat_id, message_id, text):
        if self.down:
            raise SurfaceError("platform unavailable")
        if message_id in self.vanished:
            raise MessageNotFound(f"message {message_id} not found")
        self.edits.append((str(chat_id), message_id, text))

    def delete(self, chat_id, message_id):
        self.vanished.add(message_id)
        self.deleted.append((str(chat_id), message_id))

    def pin(self, chat_id, message_id):
        if not self.can_pin:
            raise MissingPermission("not enough rights to pin a message")
        self.pinned.append((str(chat_id), message_id))

    def unpin(self, chat_id, message_id):
        self.unpinned.append((str(chat_id), message_id))

    def open_dm(self, user_id):
        return f"dm-{user_id}"

    def texts_to(self, chat_id) -> list[str]:
        return [text for cid, _, text in self.sent if cid == str(chat_id)]


class WebhookReceiver:
    """httpx.MockTransport handler standing in for the subscriber."""

    def __init__(self):
        self.requests = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code)

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def surfaces():
    return {
        "telegram": FakeSurface("telegram", retires_by_delete=True),
        "discord": FakeSurface("discord", retires_by_delete=False),
    }


@pytest.fixture(scope="function")
def sync(surfaces):
    return DashboardSync(surfaces, BASE_URL)


@pytest.fixture(scope="function")
def receiver():
    return WebhookReceiver()


@pytest.fixture(scope="function")
def webhook_client(receiver):
    with httpx.Client(transport=httpx.MockTransport(receiver)) as c:
        yield c


@pytest.fixture(scope="function")
def client(session_factory, sync, webhook_client):
    """FastAPI TestClient wired to SQLite, fake chat surfaces and the fake subscriber."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dashboard_sync] = lambda: sync
    app.dependency_overrides[get_webhook_client] = lambda: webhook_client
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def future_slots(count: int = 2, days_ahead: int = 3) -> list[dict]:
    """Non-overlapping 3h slots starting ``days_ahead`` days from now, one day apart."""
    start = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0) + timedelta(days=days_ahead)
    return [
        {
            "startTime": (start + timedelta(days=i)).isoformat(),
            "endTime": (start + timedelta(days=i, hours=3)).isoformat(),
        }
        for i in range(count)
    ]


def create_test_event(client: TestClient, **overrides) -> dict:
    """Helper: POST /api/events and return the response JSON merged with the public view."""
    payload = {
        "title": "Board Game Night",
        "minPlayers": 2,
        "timeSlots": future_slots(),
    }
    payload.update(overrides)
    resp = client.post("/api/events", json=payload)
    assert resp.status_code == 201, resp.text
    created = resp.json()
    view = client.get(f"/api/event/{created['slug']}").json()
    created["timeSlots"] = view["timeSlots"]
    return created


def admin_headers(created: dict) -> dict:
    return {"X-Admin-Token": created["adminToken"]}


def cast_vote(client: TestClient, created: dict, name: str, choices: dict, **extra) -> int:
    """Helper: vote ``{slot_index: "YES"|"MAYBE"|"NO"}`` and return the participant id."""
    slots = created["timeSlots"]
    votes = []
    for index, preference in choices.items():
        can_host = False
        if isinstance(preference, tuple):
            preference, can_host = preference
        votes.append({"slotId": slots[index]["id"], "preference": preference, "canHost": can_host})
    body = {"name": name, "votes": votes}
    body.update(extra)
    resp = client.post(f"/api/event/{created['id']}/vote", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()["participantId"]


def connect_telegram(db, slug: str, chat_id: str = "-1001") -> None:
    """Attach a Telegram group chat directly in the database."""
    row = db.query(Event).filter(Event.slug == slug).first()
    row.telegram_chat_id = chat_id
    db.commit()
