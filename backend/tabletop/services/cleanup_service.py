"""Retention cleanup for expired events, login tokens and delivered webhooks.

Retention per status:
- FINALIZED: N days after the finalized slot starts
- CANCELLED: N days after the last update
- DRAFT: N days after the last slot ends (or after creation when there are no slots)
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tabletop.clock import ensure_utc, utcnow
from tabletop.config import settings
from tabletop.models.event import Event, EventStatus
from tabletop.models.login_token import LoginToken
from tabletop.models.webhook_event import WebhookEvent, WebhookStatus
from tabletop.services import webhook_service

logger = logging.getLogger(__name__)


def _expired(event: Event, now: datetime) -> bool:
    if event.status == EventStatus.finalized:
        slot = event.finalized_slot
        if slot is None:
            return False
        cutoff = now - timedelta(days=settings.CLEANUP_RETENTION_DAYS_FINALIZED)
        return ensure_utc(slot.start_time) < cutoff

    if event.status == EventStatus.cancelled:
        cutoff = now - timedelta(days=settings.CLEANUP_RETENTION_DAYS_CANCELLED)
        return ensure_utc(event.updated_at) < cutoff

    cutoff = now - timedelta(days=settings.CLEANUP_RETENTION_DAYS_DRAFT)
    if not event.time_slots:
        return ensure_utc(event.created_at) < cutoff
    last_end = max(ensure_utc(slot.end_time) for slot in event.time_slots)
    return last_end < cutoff


def cleanup_expired(db: Session, sync, now: Optional[datetime] = None) -> dict[str, int]:
    now = ensure_utc(now) if now else utcnow()
    events = db.query(Event).all()
    deleted = errors = 0

    for event in events:
        if not _expired(event, now):
            continue
        slug = event.slug
        try:
            sync.unpin_all(event)
            webhook_service.detach_outbox(db, event.id)
            db.delete(event)
            db.commit()
            deleted += 1
            logger.info("Deleted expired event %s", slug)
        except SQLAlchemyError:
            db.rollback()
            errors += 1
            logger.exception("Failed to delete expired event %s", slug)

    tokens_purged = (
        db.query(LoginToken)
        .filter(LoginToken.expires_at < now)
        .delete(synchronize_session=False)
    )
    longest = max(
        settings.CLEANUP_RETENTION_DAYS_FINALIZED,
        settings.CLEANUP_RETENTION_DAYS_DRAFT,
        settings.CLEANUP_RETENTION_DAYS_CANCELLED,
    )
    webhooks_purged = (
        db.query(WebhookEvent)
        .filter(WebhookEvent.status == WebhookStatus.sent, WebhookEvent.created_at < now - timedelta(days=longest))
        .delete(synchronize_session=False)
    )
    db.commit()

    summary = {
        "scanned": len(events),
        "deleted": deleted,
        "errors": errors,
        "tokens_purged": tokens_purged,
        "webhooks_purged": webhooks_purged,
    }
    logger.info("Cleanup finished: %s", summary)
    return summary
