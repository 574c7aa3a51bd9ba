"""Webhook outbox: durable, retrying delivery to the subscriber that created an event.

Rows are added inside the transaction that changes the event, so the intent
to notify commits (or rolls back) with the change itself. Delivery runs after
commit, either as a request background task or from the cron sweep.

Delivery policy:
- 2xx → SENT
- anything else → attempts + 1, next attempt after base * 2^(attempts-1)
  seconds (capped); FAILED once the attempt budget is spent
- SENT and FAILED rows are never sent again
"""
import hashlib
import hmac
import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional

import httpx
from fastapi import BackgroundTasks, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tabletop.clock import ensure_utc, utcnow
from tabletop.config import settings
from tabletop.database import get_session_factory
from tabletop.models.webhook_event import WebhookEvent, WebhookStatus

logger = logging.getLogger(__name__)

CREATED = "CREATED"
FINALIZED = "FINALIZED"
CANCELLED = "CANCELLED"
DELETED = "DELETED"
LOCATION_UPDATED = "LOCATION_UPDATED"

SIGNATURE_HEADER = "X-Tabletop-Signature"


def enqueue_webhook(db: Session, event, event_type: str, extra: Optional[dict[str, Any]] = None) -> Optional[WebhookEvent]:
    """Add a PENDING delivery for ``event`` to the current transaction (no commit)."""
    if not event.from_url:
        return None

    payload = {
        "type": event_type,
        "eventId": event.id,
        "fromUrlId": event.from_url_id,
        "slug": event.slug,
        "title": event.title,
        "timestamp": utcnow().isoformat(),
    }
    payload.update(extra or {})

    row = WebhookEvent(
        id=str(uuid.uuid4()),
        event_id=event.id,
        url=event.from_url,
        payload=json.dumps(payload),
        status=WebhookStatus.pending,
        attempts=0,
        next_attempt=utcnow(),
    )
    db.add(row)
    logger.info("Queued %s webhook %s for event %s", event_type, row.id, event.slug)
    return row


def backoff_seconds(attempts: int) -> int:
    delay = settings.WEBHOOK_BASE_DELAY_SECONDS * (2 ** max(attempts - 1, 0))
    return min(delay, settings.WEBHOOK_MAX_BACKOFF_SECONDS)


def sign_payload(body: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def _headers(row: WebhookEvent) -> dict[str, str]:
    try:
        event_id = json.loads(row.payload).get("eventId")
    except ValueError:
        event_id = row.event_id
    headers = {
        "Content-Type": "application/json",
        "X-Tabletop-Event-Id": str(event_id if event_id is not None else ""),
        "X-Webhook-Id": row.id,
    }
    if settings.WEBHOOK_SIGNING_SECRET:
        headers[SIGNATURE_HEADER] = sign_payload(row.payload, settings.WEBHOOK_SIGNING_SECRET)
    return headers


def deliver_webhook(db: Session, webhook_id: str, client: httpx.Client) -> Optional[WebhookStatus]:
    """Attempt one delivery and record the outcome. Returns the resulting status."""
    row = db.get(WebhookEvent, webhook_id)
    if row is None:
        logger.warning("Webhook %s not found", webhook_id)
        return None
    if row.status != WebhookStatus.pending:
        logger.debug("Webhook %s already %s; skipping", row.id, row.status.value)
        return row.status

    # Claim the attempt: a concurrent sweep or background task that read the same
    # attempt count matches no row here and leaves the delivery alone
    attempt = row.attempts + 1
    claimed = (
        db.query(WebhookEvent)
        .filter(
            WebhookEvent.id == row.id,
            WebhookEvent.status == WebhookStatus.pending,
            WebhookEvent.attempts == row.attempts,
        )
        .update({WebhookEvent.attempts: attempt}, synchronize_session=False)
    )
    db.commit()
    if not claimed:
        logger.info("Webhook %s is being delivered elsewhere; skipping", webhook_id)
        return None

    db.refresh(row)
    logger.info("Delivering webhook %s to %s (attempt %d)", row.id, row.url, attempt)
    error = None
    try:
        resp = client.post(row.url, content=row.payload, headers=_headers(row), timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
        if not resp.is_success:
            error = f"HTTP {resp.status_code}"
    except httpx.HTTPError as exc:
        error = f"{exc.__class__.__name__}: {exc}"

    if error is None:
        row.status = WebhookStatus.sent
        row.last_error = None
        logger.info("Webhook %s delivered", row.id)
    else:
        row.last_error = error[:500]
        if row.attempts >= settings.WEBHOOK_MAX_ATTEMPTS:
            row.status = WebhookStatus.failed
            logger.error("Webhook %s failed permanently after %d attempts: %s", row.id, row.attempts, error)
        else:
            row.next_attempt = utcnow() + timedelta(seconds=backoff_seconds(row.attempts))
            logger.warning("Webhook %s attempt %d failed (%s); retry at %s", row.id, row.attempts, error, row.next_attempt)
    db.commit()
    return row.status


def _deliver_each(db: Session, webhook_ids: Iterable[str], client: httpx.Client) -> list[Optional[WebhookStatus]]:
    results = []
    for webhook_id in webhook_ids:
        try:
            results.append(deliver_webhook(db, webhook_id, client))
        except SQLAlchemyError:
            logger.exception("Could not record delivery of webhook %s", webhook_id)
            db.rollback()
            results.append(None)
    return results


def deliver_after_commit(session_factory: Callable[[], Session], webhook_ids: list[str], client: Optional[httpx.Client] = None) -> None:
    """Background-task entry point: deliver freshly committed rows with a fresh session."""
    db = session_factory()
    try:
        if client is None:
            with httpx.Client(timeout=settings.WEBHOOK_TIMEOUT_SECONDS) as own_client:
                _deliver_each(db, webhook_ids, own_client)
        else:
            _deliver_each(db, webhook_ids, client)
    finally:
        db.close()


def process_pending(db: Session, client: httpx.Client, limit: int = 50, now=None) -> dict[str, int]:
    """Cron sweep: retry PENDING rows whose next attempt is due."""
    now = ensure_utc(now) if now else utcnow()
    due = (
        db.query(WebhookEvent)
        .filter(WebhookEvent.status == WebhookStatus.pending, WebhookEvent.next_attempt <= now)
        .order_by(WebhookEvent.next_attempt.asc())
        .limit(limit)
        .all()
    )
    summary = {"processed": len(due), "delivered": 0, "retrying": 0, "failed": 0}
    for status in _deliver_each(db, [row.id for row in due], client):
        if status == WebhookStatus.sent:
            summary["delivered"] += 1
        elif status == WebhookStatus.failed:
            summary["failed"] += 1
        elif status == WebhookStatus.pending:
            summary["retrying"] += 1
    logger.info("Webhook sweep: %s", summary)
    return summary


class WebhookScheduler:
    """Hands committed webhook ids to the response's background tasks."""

    def __init__(self, background_tasks: BackgroundTasks, session_factory: Callable[[], Session], client: Optional[httpx.Client] = None):
        self.background_tasks = background_tasks
        self.session_factory = session_factory
        self.client = client

    def __call__(self, webhook_ids: list[str]) -> None:
        if webhook_ids:
            self.background_tasks.add_task(deliver_after_commit, self.session_factory, list(webhook_ids), self.client)


def get_webhook_client() -> Optional[httpx.Client]:
    """None: each delivery batch opens its own client."""
    return None


def get_webhook_scheduler(
    background_tasks: BackgroundTasks,
    session_factory=Depends(get_session_factory),
    client: Optional[httpx.Client] = Depends(get_webhook_client),
) -> WebhookScheduler:
    return WebhookScheduler(background_tasks, session_factory, client)


def detach_outbox(db: Session, event_id: int) -> None:
    """Keep an event's outbox rows when the event itself is deleted."""
    db.query(WebhookEvent).filter(WebhookEvent.event_id == event_id).update(
        {WebhookEvent.event_id: None}, synchronize_session=False
    )
