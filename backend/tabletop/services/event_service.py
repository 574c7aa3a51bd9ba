"""Event lifecycle service: the one place state-changing event operations live.

Every operation:
- validates before touching any row (HTTPException 400/404/409)
- applies its change and queues webhooks in a single transaction, committed once
- then runs chat side effects, which are logged on failure and never raised

Seat allocation and waitlist rules come from ``resolution``; chat delivery
goes through ``DashboardSync``; webhook rows are handed to ``schedule``
(a callable taking webhook ids) for delivery after the response.
"""
import logging
import re
import secrets
import string
from datetime import datetime
from typing import Any, Callable, Optional

import pytz
from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tabletop.clock import ensure_utc, utcnow
from tabletop.models.event import Event, EventStatus
from tabletop.models.participant import Participant, ParticipantStatus
from tabletop.models.time_slot import TimeSlot
from tabletop.models.vote import Vote, VotePreference
from tabletop.services import identity_service, links, messages, webhook_service
from tabletop.services.dashboard_service import DashboardSync, roster
from tabletop.services.resolution import (
    ALERT_PERFECT,
    ALERT_VIABLE,
    allocate_seats,
    check_event_quorum,
    check_slot_quorum,
    order_waitlist,
    quorum_alert,
    select_promotions,
    triage_vote,
)

logger = logging.getLogger(__name__)

SLUG_ALPHABET = string.ascii_letters + string.digits
SLUG_LENGTH = 8
REMINDER_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
TELEGRAM_INVITE_PREFIX = "https://t.me/"

Schedule = Optional[Callable[[list[str]], None]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _new_slug(db: Session) -> str:
    while True:
        slug = "".join(secrets.choice(SLUG_ALPHABET) for _ in range(SLUG_LENGTH))
        if not db.query(Event.id).filter(Event.slug == slug).first():
            return slug


def _get_event(db: Session, slug: str) -> Event:
    return identity_service.get_event_or_404(db, slug)


def _queue(db: Session, event: Event, event_type: str, extra: Optional[dict[str, Any]] = None) -> list[str]:
    row = webhook_service.enqueue_webhook(db, event, event_type, extra)
    return [row.id] if row else []


def _hand_off(schedule: Schedule, webhook_ids: list[str]) -> None:
    if schedule and webhook_ids:
        schedule(webhook_ids)


def _side_effect(label: str, event: Event, fn: Callable, *args) -> None:
    """Post-commit work: failures are logged, never raised into the request."""
    try:
        fn(*args)
    except Exception:
        logger.exception("Post-commit %s failed for event %s", label, event.slug)


def _save_message_ids(db: Session, event: Event) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        logger.exception("Could not store chat message ids for event %s", event.slug)
        db.rollback()


def _slot_payload(slot: TimeSlot) -> dict[str, Any]:
    return {
        "id": slot.id,
        "startTime": ensure_utc(slot.start_time).isoformat(),
        "endTime": ensure_utc(slot.end_time).isoformat(),
    }


def _notify_manager(sync: DashboardSync, event: Event, html: str) -> bool:
    if event.manager_chat_id and sync.direct_message("telegram", event.manager_chat_id, html):
        return True
    if event.manager_discord_id:
        return sync.direct_message("discord", event.manager_discord_id, html)
    return False


def _attending(participant: Participant, slot_id: Optional[int]) -> bool:
    return any(
        v.time_slot_id == slot_id and v.preference in (VotePreference.yes, VotePreference.maybe)
        for v in participant.votes
    )


def _renumber_waitlist(event: Event) -> None:
    """Keep stored waitlist positions in priority order with no gaps."""
    waiting = [p for p in event.participants if p.status == ParticipantStatus.waitlist]
    for position, participant in enumerate(order_waitlist(waiting, event.finalized_slot_id), start=1):
        participant.waitlist_position = position


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------

def create_event(
    db: Session,
    title: str,
    slots: list[tuple[datetime, datetime]],
    min_players: int = 1,
    max_players: Optional[int] = None,
    description: Optional[str] = None,
    timezone: str = "UTC",
    manager_telegram: Optional[str] = None,
    manager_discord_username: Optional[str] = None,
    from_url: Optional[str] = None,
    from_url_id: Optional[str] = None,
    schedule: Schedule = None,
) -> tuple[Event, str]:
    """Create an event and its slots. Returns the event and the plaintext admin token."""
    if not title or not title.strip():
        raise HTTPException(status_code=400, detail="Title is required")
    if not slots:
        raise HTTPException(status_code=400, detail="At least one time slot is required")
    for start, end in slots:
        if end <= start:
            raise HTTPException(status_code=400, detail="Each time slot must end after it starts")
    if min_players < 1:
        raise HTTPException(status_code=400, detail="min_players must be at least 1")
    if max_players is not None and max_players < min_players:
        raise HTTPException(status_code=400, detail="max_players cannot be less than min_players")
    if timezone not in pytz.all_timezones_set:
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {timezone}")
    if from_url and not from_url.startswith(("http://", "https://")):
        raise HTTPException(status_code=400, detail="from_url must be an http(s) URL")

    admin_token = identity_service.new_long_token()
    event = Event(
        slug=_new_slug(db),
        title=title.strip(),
        description=description,
        timezone=timezone,
        status=EventStatus.draft,
        min_players=min_players,
        max_players=max_players,
        manager_telegram=identity_service.format_handle(manager_telegram),
        manager_discord_username=identity_service.normalize_handle(manager_discord_username) or None,
        admin_token_hash=identity_service.hash_token(admin_token),
        from_url=from_url,
        from_url_id=from_url_id,
    )
    for start, end in sorted(slots):
        event.time_slots.append(TimeSlot(start_time=start, end_time=end))
    db.add(event)
    db.flush()

    # The manager may already be known to the bot from another event
    if event.manager_telegram:
        event.manager_chat_id = identity_service.known_chat_id(db, event.manager_telegram)
    if event.manager_discord_username:
        event.manager_discord_id = identity_service.known_discord_id(db, event.manager_discord_username)

    webhook_ids = _queue(db, event, webhook_service.CREATED, {
        "timeSlots": [_slot_payload(s) for s in event.time_slots],
    })
    db.commit()
    db.refresh(event)
    logger.info("Created event '%s' (%s) with %d slots", event.title, event.slug, len(event.time_slots))

    _hand_off(schedule, webhook_ids)
    return event, admin_token


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------

def _upsert_participant(
    db: Session,
    event: Event,
    name: str,
    participant_id: Optional[int],
    telegram_id: Optional[str],
    verified_discord_id: Optional[str],
    discord_username: Optional[str],
) -> Participant:
    participant = db.get(Participant, participant_id) if participant_id else None
    if participant is not None and participant.event_id != event.id:
        logger.warning("Ignoring participant %s from another event on vote for %s", participant_id, event.slug)
        participant = None
    if participant is None:
        participant = Participant(event=event, name=name.strip(), status=ParticipantStatus.pending)
        db.add(participant)

    participant.name = name.strip()

    if telegram_id is not None:
        handle = identity_service.format_handle(telegram_id)
        if handle != participant.telegram_id:
            participant.telegram_id = handle
            participant.chat_id = None
    if participant.telegram_id and not participant.chat_id:
        participant.chat_id = identity_service.known_chat_id(db, participant.telegram_id)

    if discord_username is not None:
        clean = identity_service.normalize_handle(discord_username) or None
        if clean != participant.discord_username:
            participant.discord_username = clean
            participant.discord_id = None
    if verified_discord_id:
        participant.discord_id = verified_discord_id
    if participant.discord_username and not participant.discord_id:
        participant.discord_id = identity_service.known_discord_id(db, participant.discord_username)
    return participant


def _replace_votes(db: Session, participant: Participant, votes: list[dict[str, Any]]) -> None:
    """Replace-all semantics; an unchanged (slot, preference) keeps its created_at."""
    existing = {v.time_slot_id: v for v in participant.votes}
    wanted = {v["slot_id"]: v for v in votes}

    for slot_id, vote in existing.items():
        if slot_id not in wanted:
            db.delete(vote)

    for slot_id, choice in wanted.items():
        preference = VotePreference(choice["preference"])
        can_host = bool(choice.get("can_host", False))
        vote = existing.get(slot_id)
        if vote is None:
            db.add(Vote(participant=participant, time_slot_id=slot_id, preference=preference, can_host=can_host))
        elif vote.preference != preference:
            vote.preference = preference
            vote.can_host = can_host
            vote.created_at = utcnow()
        else:
            vote.can_host = can_host


def _readmit(event: Event, participant: Participant) -> tuple[list[Participant], list[Participant], int]:
    """Post-finalization bookkeeping for one voter.

    Returns (newly accepted, newly waitlisted, seats freed).
    """
    accepted, waitlisted = [], []
    others_accepted = sum(
        1 for p in event.participants if p.status == ParticipantStatus.accepted and p.id != participant.id
    )

    if _attending(participant, event.finalized_slot_id):
        new_status = triage_vote(participant.status, others_accepted, event.max_players)
        if new_status != participant.status:
            if new_status == ParticipantStatus.accepted:
                participant.waitlist_position = None
                accepted.append(participant)
            else:
                waitlisted.append(participant)
            participant.status = new_status
        return accepted, waitlisted, 0

    freed = 1 if participant.status == ParticipantStatus.accepted else 0
    if participant.status != ParticipantStatus.pending:
        logger.info("Participant %s left the finalized slot of %s", participant.id, event.slug)
    participant.status = ParticipantStatus.pending
    participant.waitlist_position = None
    return accepted, waitlisted, freed


def _promote(event: Event, freed: int) -> list[Participant]:
    if freed <= 0 or event.max_players is None:
        return []
    accepted_now = sum(1 for p in event.participants if p.status == ParticipantStatus.accepted)
    capacity = event.max_players - accepted_now
    waiting = [p for p in event.participants if p.status == ParticipantStatus.waitlist]
    promoted = select_promotions(waiting, min(freed, capacity))
    for participant in promoted:
        participant.status = ParticipantStatus.accepted
        participant.waitlist_position = None
        logger.info("Promoted participant %s off the waitlist of %s", participant.id, event.slug)
    return promoted


def submit_vote(
    db: Session,
    sync: DashboardSync,
    event_id: int,
    name: str,
    votes: list[dict[str, Any]],
    participant_id: Optional[int] = None,
    telegram_id: Optional[str] = None,
    verified_discord_id: Optional[str] = None,
    discord_username: Optional[str] = None,
) -> Participant:
    """Upsert a participant and replace all of their votes for the event.

    Platform ids are never taken from the request body: ``verified_discord_id``
    comes from the signed login identity, Telegram ids from passive capture.
    """
    event = db.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    if event.status == EventStatus.cancelled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Event has been cancelled")
    if not name or not name.strip():
        raise HTTPException(status_code=400, detail="Name is required")

    slot_ids = {slot.id for slot in event.time_slots}
    seen = set()
    for vote in votes:
        if vote["slot_id"] not in slot_ids:
            raise HTTPException(status_code=400, detail=f"Time slot {vote['slot_id']} does not belong to this event")
        if vote["slot_id"] in seen:
            raise HTTPException(status_code=400, detail=f"Duplicate vote for time slot {vote['slot_id']}")
        seen.add(vote["slot_id"])

    participant = _upsert_participant(db, event, name, participant_id, telegram_id, verified_discord_id, discord_username)
    _replace_votes(db, participant, votes)
    db.flush()
    # Reload collections so counts below see the flushed votes
    db.expire_all()

    newly_accepted, newly_waitlisted, promoted = [], [], []
    alert = None
    if event.status == EventStatus.finalized:
        newly_accepted, newly_waitlisted, freed = _readmit(event, participant)
        promoted = _promote(event, freed)
        _renumber_waitlist(event)
    elif event.manager_chat_id or event.manager_discord_id:
        quorum = check_event_quorum(event.time_slots, event.min_players, len(event.participants))
        alert = quorum_alert(quorum, event.quorum_viable_notified, event.quorum_perfect_notified)

    db.commit()
    db.refresh(participant)
    logger.info("Participant %s voted on %s (%d votes)", participant.id, event.slug, len(votes))

    _side_effect("activity notice", event, sync.broadcast, event, messages.activity_notice(event, participant.name))
    _side_effect("dashboard sync", event, sync.publish, event)
    if alert:
        _side_effect("quorum alert", event, _send_quorum_alert, sync, event, alert)
    for p in newly_accepted:
        _side_effect("accepted DM", event, sync.notify_participant, p, messages.accepted_dm(event, sync.base_url))
    for p in newly_waitlisted:
        _side_effect("waitlist DM", event, sync.notify_participant, p, messages.waitlisted_dm(event))
    for p in promoted:
        _side_effect("promotion DM", event, sync.notify_participant, p, messages.promoted_dm(event, sync.base_url))
    _save_message_ids(db, event)
    return participant


def _send_quorum_alert(sync: DashboardSync, event: Event, alert: str) -> None:
    """DM the one-time manager alert; its flags are set only once it was delivered.

    Flags only ever go True. The caller commits them with the message ids.
    """
    if alert == ALERT_PERFECT:
        html = messages.quorum_perfect_alert(event, sync.base_url)
    else:
        html = messages.quorum_viable_alert(event, sync.base_url)
    if not _notify_manager(sync, event, html):
        logger.warning("Quorum alert '%s' for event %s not delivered; will retry on the next vote", alert, event.slug)
        return
    if alert == ALERT_PERFECT:
        event.quorum_perfect_notified = True
    event.quorum_viable_notified = True
    logger.info("Quorum alert '%s' sent for event %s", alert, event.slug)


# ---------------------------------------------------------------------------
# Finalize / cancel / delete
# ---------------------------------------------------------------------------

def finalize_event(
    db: Session,
    sync: DashboardSync,
    slug: str,
    slot_id: int,
    host_id: Optional[int] = None,
    location: Optional[str] = None,
    schedule: Schedule = None,
) -> Event:
    """Lock in a slot, allocate seats and announce the result."""
    event = _get_event(db, slug)
    if event.status != EventStatus.draft:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Event is already {event.status.value.lower()}")
    slot = event.slot_by_id(slot_id)
    if slot is None:
        raise HTTPException(status_code=400, detail="Time slot does not belong to this event")
    if host_id is not None and not any(p.id == host_id for p in event.participants):
        raise HTTPException(status_code=400, detail="Host must be a participant of this event")

    allocation = allocate_seats(slot.votes, event.min_players, event.max_players)
    by_id = {p.id: p for p in event.participants}
    for participant in event.participants:
        participant.status = ParticipantStatus.pending
        participant.waitlist_position = None
    accepted = [by_id[v.participant_id] for v in allocation.accepted]
    waitlist = [by_id[v.participant_id] for v in allocation.waitlist]
    for participant in accepted:
        participant.status = ParticipantStatus.accepted
    for position, participant in enumerate(waitlist, start=1):
        participant.status = ParticipantStatus.waitlist
        participant.waitlist_position = position

    event.status = EventStatus.finalized
    event.finalized_slot_id = slot.id
    event.finalized_host_id = host_id
    event.location = (location or "").strip() or None

    attendee_names = [p.name for p in accepted]
    waitlist_names = [p.name for p in waitlist]
    webhook_ids = _queue(db, event, webhook_service.FINALIZED, {
        "link": links.event_url(sync.base_url, event.slug),
        "finalizedSlot": _slot_payload(slot),
        "attendees": attendee_names,
        "waitlist": waitlist_names,
        "location": event.location,
    })
    db.commit()
    db.refresh(event)
    logger.info(
        "Finalized event %s on slot %s: %d accepted, %d waitlisted",
        event.slug, slot.id, len(accepted), len(waitlist),
    )

    _hand_off(schedule, webhook_ids)
    for participant in accepted:
        _side_effect("accepted DM", event, sync.notify_participant, participant, messages.accepted_dm(event, sync.base_url))
    for participant in waitlist:
        _side_effect("waitlist DM", event, sync.notify_participant, participant, messages.waitlisted_dm(event))
    _side_effect("finalize announcement", event, sync.announce_finalized, event, attendee_names, waitlist_names)
    _save_message_ids(db, event)
    return event


def cancel_event(db: Session, sync: DashboardSync, slug: str, schedule: Schedule = None) -> Event:
    event = _get_event(db, slug)
    if event.status == EventStatus.cancelled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Event is already cancelled")

    was_finalized = event.status == EventStatus.finalized
    event.status = EventStatus.cancelled
    event.finalized_slot_id = None
    event.finalized_host_id = None
    webhook_ids = _queue(db, event, webhook_service.CANCELLED, {"wasFinalized": was_finalized})
    db.commit()
    db.refresh(event)
    logger.info("Cancelled event %s (was finalized: %s)", event.slug, was_finalized)

    _hand_off(schedule, webhook_ids)
    _side_effect("cancel announcement", event, sync.announce_cancelled, event, was_finalized)
    _save_message_ids(db, event)
    return event


def delete_event(db: Session, sync: DashboardSync, slug: str, schedule: Schedule = None) -> None:
    """Remove the event and everything it owns; the webhook outbox row survives."""
    event = _get_event(db, slug)
    _side_effect("removal notice", event, sync.announce_deleted, event)

    webhook_ids = _queue(db, event, webhook_service.DELETED)
    db.flush()
    webhook_service.detach_outbox(db, event.id)
    db.delete(event)
    db.commit()
    logger.info("Deleted event %s", slug)
    _hand_off(schedule, webhook_ids)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def update_location(db: Session, sync: DashboardSync, slug: str, location: Optional[str], schedule: Schedule = None) -> Event:
    event = _get_event(db, slug)
    if event.status != EventStatus.finalized:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Location can only be set on a finalized event")

    event.location = (location or "").strip() or None
    webhook_ids = _queue(db, event, webhook_service.LOCATION_UPDATED, {"location": event.location})
    db.commit()
    db.refresh(event)
    logger.info("Location of event %s set to %r", event.slug, event.location)

    _hand_off(schedule, webhook_ids)
    _side_effect("announcement refresh", event, sync.refresh_announcement, event)
    _save_message_ids(db, event)
    return event


def update_reminder_settings(
    db: Session,
    slug: str,
    enabled: bool,
    reminder_time: Optional[str] = None,
    reminder_days: Optional[list[int]] = None,
) -> Event:
    """Reminder schedule. Quorum notification flags are left exactly as they are."""
    event = _get_event(db, slug)
    if reminder_time is not None and not REMINDER_TIME_RE.match(reminder_time):
        raise HTTPException(status_code=400, detail="Reminder time must be HH:MM (24h)")
    days = sorted(set(reminder_days or []))
    if any(day < 0 or day > 6 for day in days):
        raise HTTPException(status_code=400, detail="Reminder days must be between 0 (Sunday) and 6 (Saturday)")
    if enabled and (not reminder_time or not days):
        raise HTTPException(status_code=400, detail="Enabled reminders need a time and at least one day")

    event.reminder_enabled = enabled
    event.reminder_time = reminder_time
    event.reminder_days = ",".join(str(day) for day in days) or None
    db.commit()
    db.refresh(event)
    logger.info("Reminders for %s: enabled=%s time=%s days=%s", slug, enabled, reminder_time, event.reminder_days)
    return event


def update_manager_handle(db: Session, slug: str, handle: str) -> Event:
    event = _get_event(db, slug)
    if len(identity_service.normalize_handle(handle)) < 2:
        raise HTTPException(status_code=400, detail="Handle must be at least 2 characters")

    stored = identity_service.format_handle(handle)
    if stored != event.manager_telegram:
        event.manager_telegram = stored
        event.manager_chat_id = identity_service.known_chat_id(db, stored)
    db.commit()
    db.refresh(event)
    logger.info("Manager handle for %s set to %s", slug, stored)
    return event


def update_telegram_invite_link(db: Session, slug: str, link: Optional[str]) -> Event:
    event = _get_event(db, slug)
    link = (link or "").strip()
    if link and not link.startswith(TELEGRAM_INVITE_PREFIX):
        raise HTTPException(status_code=400, detail=f"Invite link must start with {TELEGRAM_INVITE_PREFIX}")
    event.telegram_link = link or None
    db.commit()
    db.refresh(event)
    return event


def connect_discord_channel(db: Session, sync: DashboardSync, slug: str, guild_id: str, channel_id: str) -> Event:
    event = _get_event(db, slug)
    if event.status == EventStatus.cancelled:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Event has been cancelled")
    if "discord" not in sync.surfaces:
        raise HTTPException(status_code=503, detail="Discord bot is not configured")

    sync.connect_discord(event, guild_id, channel_id)
    db.commit()
    db.refresh(event)
    logger.info("Connected event %s to Discord channel %s", slug, channel_id)
    return event


def validate_slugs(db: Session, slugs: list[str]) -> list[str]:
    """Which of ``slugs`` still exist (clients prune their local history with this)."""
    wanted = [s for s in dict.fromkeys(slugs) if s]
    if not wanted:
        return []
    found = {row.slug for row in db.query(Event.slug).filter(Event.slug.in_(wanted)).all()}
    return [s for s in wanted if s in found]


# ---------------------------------------------------------------------------
# Views
# ---------------------------------------------------------------------------

def build_event_view(event: Event) -> dict[str, Any]:
    total = len(event.participants)
    attendees, waitlist = roster(event)
    slots = []
    for slot in event.time_slots:
        quorum = check_slot_quorum(slot.votes, event.min_players, total)
        slots.append({
            "id": slot.id,
            "start_time": ensure_utc(slot.start_time),
            "end_time": ensure_utc(slot.end_time),
            "yes_count": sum(1 for v in slot.votes if v.preference == VotePreference.yes),
            "maybe_count": sum(1 for v in slot.votes if v.preference == VotePreference.maybe),
            "no_count": sum(1 for v in slot.votes if v.preference == VotePreference.no),
            "viable": quorum.viable,
            "perfect": quorum.perfect,
        })
    return {
        "id": event.id,
        "slug": event.slug,
        "title": event.title,
        "description": event.description,
        "timezone": event.timezone,
        "status": event.status.value,
        "min_players": event.min_players,
        "max_players": event.max_players,
        "location": event.location,
        "finalized_slot_id": event.finalized_slot_id,
        "finalized_host_id": event.finalized_host_id,
        "telegram_link": event.telegram_link,
        "telegram_connected": bool(event.telegram_chat_id),
        "discord_connected": bool(event.discord_channel_id),
        "created_at": ensure_utc(event.created_at),
        "time_slots": slots,
        "participants": event.participants,
        "attendees": attendees,
        "waitlist": waitlist,
    }
