"""Tests for the scheduled jobs (reminders and retention cleanup).

Covers:
- Reminder due window, weekday (0 = Sunday), event timezone and the 18h gap
- check_reminders only targets open, sub-quorum, Telegram-connected polls,
  including polls that reached quorum before any manager was linked
- Cleanup retention per status; outbox rows survive their event
- Expired login tokens and old delivered webhooks are purged
- Cron routes behind the shared secret
"""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from tabletop.clock import utcnow
from tabletop.config import settings
from tabletop.models.event import Event, EventStatus
from tabletop.models.login_token import LoginToken
from tabletop.models.participant import Participant
from tabletop.models.time_slot import TimeSlot
from tabletop.models.vote import Vote, VotePreference
from tabletop.models.webhook_event import WebhookEvent, WebhookStatus
from tabletop.services import cleanup_service, reminder_service

# Monday 2 March 2026, 18:30 in New York (EST, UTC-5)
MONDAY_EVENING = datetime(2026, 3, 2, 23, 30, tzinfo=timezone.utc)

CRON = {"Authorization": "Bearer cron-123"}


@pytest.fixture(autouse=True)
def job_settings(monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-123")
    monkeypatch.setattr(settings, "CLEANUP_RETENTION_DAYS_FINALIZED", 1)
    monkeypatch.setattr(settings, "CLEANUP_RETENTION_DAYS_DRAFT", 1)
    monkeypatch.setattr(settings, "CLEANUP_RETENTION_DAYS_CANCELLED", 1)


def _schedule(**overrides):
    fields = {
        "slug": "remind01",
        "timezone": "America/New_York",
        "reminder_time": "18:00",
        "reminder_days": "1",
        "last_reminder_sent": None,
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


def _event_row(db, slug, slots=(), **fields):
    row = Event(slug=slug, title=f"Event {slug}", admin_token_hash="0" * 64, **fields)
    for start, end in slots:
        row.time_slots.append(TimeSlot(start_time=start, end_time=end))
    db.add(row)
    db.commit()
    return row


def _slug_exists(db, slug) -> bool:
    db.expire_all()
    return db.query(Event).filter(Event.slug == slug).first() is not None


class TestReminderDue:

    def test_due_inside_window(self):
        assert reminder_service.is_reminder_due(_schedule(), MONDAY_EVENING)

    def test_before_target_time(self):
        assert not reminder_service.is_reminder_due(_schedule(), MONDAY_EVENING - timedelta(hours=1))

    def test_after_window(self):
        late = MONDAY_EVENING + timedelta(minutes=reminder_service.REMINDER_WINDOW_MINUTES)
        assert not reminder_service.is_reminder_due(_schedule(), late)

    def test_uses_event_timezone(self):
        # 23:30 UTC is already past the 90 minute window for an 18:00 UTC reminder
        assert not reminder_service.is_reminder_due(_schedule(timezone="UTC"), MONDAY_EVENING)

    def test_weekday_is_sunday_based(self):
        assert not reminder_service.is_reminder_due(_schedule(reminder_days="2"), MONDAY_EVENING)
        assert reminder_service.is_reminder_due(_schedule(reminder_days="0,1"), MONDAY_EVENING)

    def test_eighteen_hour_gap(self):
        recent = _schedule(last_reminder_sent=MONDAY_EVENING - timedelta(hours=10))
        assert not reminder_service.is_reminder_due(recent, MONDAY_EVENING)
        yesterday = _schedule(last_reminder_sent=MONDAY_EVENING - timedelta(hours=19))
        assert reminder_service.is_reminder_due(yesterday, MONDAY_EVENING)

    def test_incomplete_schedule(self):
        assert not reminder_service.is_reminder_due(_schedule(reminder_time=None), MONDAY_EVENING)
        assert not reminder_service.is_reminder_due(_schedule(reminder_days=""), MONDAY_EVENING)


class TestCheckReminders:

    def _reminded(self, db, slug, **fields):
        defaults = {
            "timezone": "America/New_York",
            "reminder_enabled": True,
            "reminder_time": "18:00",
            "reminder_days": "1",
            "telegram_chat_id": "-1001",
        }
        defaults.update(fields)
        return _event_row(db, slug, **defaults)

    def test_sends_once_per_day(self, db, sync, surfaces):
        row = self._reminded(db, "remind01")
        assert reminder_service.check_reminders(db, sync, MONDAY_EVENING) == {"checked": 1, "sent": 1}
        assert "Reminder" in surfaces["telegram"].texts_to("-1001")[0]
        assert row.last_reminder_sent is not None

        later = MONDAY_EVENING + timedelta(minutes=30)
        assert reminder_service.check_reminders(db, sync, later)["sent"] == 0

    def test_skips_ineligible_events(self, db, sync, surfaces):
        self._reminded(db, "viable01", quorum_viable_notified=True)
        self._reminded(db, "final001", status=EventStatus.finalized)
        self._reminded(db, "nochat01", telegram_chat_id=None)
        self._reminded(db, "off00001", reminder_enabled=False)
        assert reminder_service.check_reminders(db, sync, MONDAY_EVENING) == {"checked": 0, "sent": 0}
        assert surfaces["telegram"].sent == []

    def test_skips_poll_that_reached_quorum_without_manager(self, db, sync, surfaces):
        start = MONDAY_EVENING + timedelta(days=7)
        row = self._reminded(db, "viable02", slots=[(start, start + timedelta(hours=3))])
        alice = Participant(event=row, name="Alice")
        db.add(alice)
        db.add(Vote(participant=alice, time_slot_id=row.time_slots[0].id, preference=VotePreference.yes))
        db.commit()

        assert row.quorum_viable_notified is False
        assert reminder_service.check_reminders(db, sync, MONDAY_EVENING)["sent"] == 0
        assert surfaces["telegram"].sent == []

    def test_failed_send_is_retried_next_run(self, db, sync, surfaces):
        row = self._reminded(db, "remind01")
        surfaces["telegram"].down = True
        assert reminder_service.check_reminders(db, sync, MONDAY_EVENING)["sent"] == 0
        assert row.last_reminder_sent is None

        surfaces["telegram"].down = False
        assert reminder_service.check_reminders(db, sync, MONDAY_EVENING + timedelta(minutes=15))["sent"] == 1

    def test_discord_is_not_reminded(self, db, sync, surfaces):
        self._reminded(db, "remind01", discord_channel_id="c1")
        reminder_service.check_reminders(db, sync, MONDAY_EVENING)
        assert surfaces["discord"].sent == []


class TestCleanup:

    def test_finalized_event_expires_after_its_slot(self, db, sync, surfaces):
        now = utcnow()
        start = now - timedelta(days=3)
        row = _event_row(db, "past0001", slots=[(start, start + timedelta(hours=3))],
                         from_url="https://hooks.example.com/x", telegram_chat_id="-1001", telegram_announcement_id="77")
        row.status = EventStatus.finalized
        row.finalized_slot_id = row.time_slots[0].id
        db.add(WebhookEvent(event_id=row.id, url=row.from_url, payload="{}", status=WebhookStatus.pending))
        db.commit()

        summary = cleanup_service.cleanup_expired(db, sync, now)
        assert summary["deleted"] == 1
        assert not _slug_exists(db, "past0001")
        assert surfaces["telegram"].unpinned == [("-1001", "77")]
        assert db.query(WebhookEvent).one().event_id is None

    def test_upcoming_finalized_event_is_kept(self, db, sync):
        now = utcnow()
        start = now + timedelta(days=2)
        row = _event_row(db, "soon0001", slots=[(start, start + timedelta(hours=3))])
        row.status = EventStatus.finalized
        row.finalized_slot_id = row.time_slots[0].id
        db.commit()
        assert cleanup_service.cleanup_expired(db, sync, now)["deleted"] == 0
        assert _slug_exists(db, "soon0001")

    def test_draft_retention(self, db, sync):
        now = utcnow()
        old = now - timedelta(days=3)
        future = now + timedelta(days=3)
        _event_row(db, "stale001", slots=[(old, old + timedelta(hours=2))])
        _event_row(db, "open0001", slots=[(old, old + timedelta(hours=2)), (future, future + timedelta(hours=2))])
        _event_row(db, "empty001", created_at=now - timedelta(days=2))

        summary = cleanup_service.cleanup_expired(db, sync, now)
        assert summary["deleted"] == 2
        assert not _slug_exists(db, "stale001")
        assert not _slug_exists(db, "empty001")
        assert _slug_exists(db, "open0001")

    def test_cancelled_retention_uses_last_update(self, db, sync):
        now = utcnow()
        future = now + timedelta(days=5)
        slots = [(future, future + timedelta(hours=2))]
        _event_row(db, "gone0001", slots=slots, status=EventStatus.cancelled, updated_at=now - timedelta(days=2))
        _event_row(db, "just0001", slots=slots, status=EventStatus.cancelled, updated_at=now)

        cleanup_service.cleanup_expired(db, sync, now)
        assert not _slug_exists(db, "gone0001")
        assert _slug_exists(db, "just0001")

    def test_purges_tokens_and_delivered_webhooks(self, db, sync):
        now = utcnow()
        db.add(LoginToken(token_hash="a" * 64, chat_id="1", expires_at=now - timedelta(minutes=1)))
        db.add(LoginToken(token_hash="b" * 64, chat_id="2", expires_at=now + timedelta(minutes=10)))
        db.add(WebhookEvent(url="https://h.test", payload="{}", status=WebhookStatus.sent, created_at=now - timedelta(days=5)))
        db.add(WebhookEvent(url="https://h.test", payload="{}", status=WebhookStatus.pending, created_at=now - timedelta(days=5)))
        db.commit()

        summary = cleanup_service.cleanup_expired(db, sync, now)
        assert summary["tokens_purged"] == 1
        assert summary["webhooks_purged"] == 1
        assert [t.chat_id for t in db.query(LoginToken).all()] == ["2"]
        assert db.query(WebhookEvent).one().status == WebhookStatus.pending


class TestCronRoutes:

    def test_routes_need_the_secret(self, client):
        for path in ("/api/cron/cleanup", "/api/cron/reminders", "/api/cron/webhooks"):
            assert client.get(path).status_code == 401

    def test_cleanup_route(self, client):
        resp = client.get("/api/cron/cleanup", headers=CRON)
        assert resp.status_code == 200
        assert set(resp.json()) == {"scanned", "deleted", "errors", "tokens_purged", "webhooks_purged"}

    def test_reminders_route(self, client):
        resp = client.get("/api/cron/reminders", headers=CRON)
        assert resp.status_code == 200
        assert resp.json() == {"checked": 0, "sent": 0}
