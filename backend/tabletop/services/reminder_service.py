"""Scheduled voting reminders for polls that have not reached quorum yet."""
import logging
from datetime import datetime, timedelta
from typing import Optional

import pytz
from sqlalchemy.orm import Session

from tabletop.clock import ensure_utc, utcnow
from tabletop.models.event import Event, EventStatus
from tabletop.services import messages
from tabletop.services.resolution import check_event_quorum

logger = logging.getLogger(__name__)

# The cron may run late; anything up to this far past the target time still fires
REMINDER_WINDOW_MINUTES = 90
# One reminder per logical day
MIN_GAP = timedelta(hours=18)


def _weekday_sunday_first(local: datetime) -> int:
    return (local.weekday() + 1) % 7


def _parse_days(raw: Optional[str]) -> set[int]:
    days = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit():
            days.add(int(part))
    return days


def is_reminder_due(event: Event, now: datetime) -> bool:
    if not event.reminder_time or not event.reminder_days:
        return False
    try:
        tz = pytz.timezone(event.timezone or "UTC")
    except pytz.UnknownTimeZoneError:
        tz = pytz.utc
    local = ensure_utc(now).astimezone(tz)

    hours, minutes = (int(part) for part in event.reminder_time.split(":"))
    late_by = (local.hour * 60 + local.minute) - (hours * 60 + minutes)
    if late_by < 0 or late_by > REMINDER_WINDOW_MINUTES:
        logger.debug("Reminder for %s not due (late by %d min, tz %s)", event.slug, late_by, tz)
        return False

    last = ensure_utc(event.last_reminder_sent)
    if last is not None and ensure_utc(now) - last < MIN_GAP:
        return False

    return _weekday_sunday_first(local) in _parse_days(event.reminder_days)


def check_reminders(db: Session, sync, now: Optional[datetime] = None) -> dict[str, int]:
    """Send due reminders to Telegram groups; returns how many were checked and sent."""
    now = ensure_utc(now) if now else utcnow()
    candidates = (
        db.query(Event)
        .filter(
            Event.status == EventStatus.draft,
            Event.reminder_enabled.is_(True),
            Event.quorum_viable_notified.is_(False),
            Event.telegram_chat_id.isnot(None),
        )
        .all()
    )

    sent = 0
    for event in candidates:
        if not is_reminder_due(event, now):
            continue
        # The viable flag only tracks alerts to a linked manager
        if check_event_quorum(event.time_slots, event.min_players, len(event.participants)).viable:
            continue
        if sync.broadcast(event, messages.reminder(event, sync.base_url), platforms=["telegram"]):
            event.last_reminder_sent = now
            db.commit()
            sent += 1
            logger.info("Reminder sent for event %s", event.slug)
    return {"checked": len(candidates), "sent": sent}
