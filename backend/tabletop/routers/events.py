"""Event API routes: delegates to event_service for all state changes."""
import logging

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from tabletop.database import get_db
from tabletop.models.event import Event
from tabletop.routers.deps import current_identity, require_admin
from tabletop.schemas.common import ActionResult
from tabletop.schemas.event import (
    EventCreate,
    EventCreated,
    EventOut,
    FinalizeRequest,
    LocationUpdate,
    ManagerHandleUpdate,
    ReminderSettings,
    TelegramLinkUpdate,
    ValidateRequest,
    ValidateResponse,
)
from tabletop.schemas.vote import VoteResult, VoteSubmit
from tabletop.services import event_service, identity_service, links
from tabletop.services.dashboard_service import DashboardSync, get_dashboard_sync
from tabletop.services.webhook_service import WebhookScheduler, get_webhook_scheduler

logger = logging.getLogger(__name__)
router = APIRouter()

ADMIN_COOKIE_MAX_AGE = 60 * 60 * 24 * 365


def _view(event: Event) -> EventOut:
    return EventOut.model_validate(event_service.build_event_view(event))


@router.post("/events", response_model=EventCreated, status_code=status.HTTP_201_CREATED)
def create_event(
    payload: EventCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    schedule: WebhookScheduler = Depends(get_webhook_scheduler),
):
    """Create a poll with its time slots; the admin token is only ever shown here."""
    event, admin_token = event_service.create_event(
        db=db,
        title=payload.title,
        slots=[(slot.start_time, slot.end_time) for slot in payload.time_slots],
        min_players=payload.min_players,
        max_players=payload.max_players,
        description=payload.description,
        timezone=payload.timezone,
        manager_telegram=payload.manager_telegram,
        manager_discord_username=payload.manager_discord_username,
        from_url=payload.from_url,
        from_url_id=payload.from_url_id,
        schedule=schedule,
    )
    base_url = links.resolve_base_url(request.headers)
    response.set_cookie(
        identity_service.admin_cookie_name(event.slug), admin_token,
        max_age=ADMIN_COOKIE_MAX_AGE, httponly=True, samesite="lax",
    )
    return EventCreated(
        id=event.id,
        slug=event.slug,
        admin_token=admin_token,
        link=links.event_url(base_url, event.slug),
        manage_link=links.admin_auth_url(base_url, event.slug, admin_token),
    )


@router.post("/events/validate", response_model=ValidateResponse)
def validate_events(payload: ValidateRequest, db: Session = Depends(get_db)):
    """Which locally remembered slugs still exist."""
    return ValidateResponse(valid_slugs=event_service.validate_slugs(db, payload.slugs))


@router.get("/event/{slug}", response_model=EventOut)
def get_event(slug: str, db: Session = Depends(get_db)):
    return _view(identity_service.get_event_or_404(db, slug))


@router.post("/event/{event_id}/vote", response_model=VoteResult)
def submit_vote(
    event_id: int,
    payload: VoteSubmit,
    request: Request,
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
):
    """Create or update a participant and replace their votes."""
    participant = event_service.submit_vote(
        db,
        sync,
        event_id,
        name=payload.name,
        votes=[vote.model_dump() for vote in payload.votes],
        participant_id=payload.participant_id,
        telegram_id=payload.telegram_id,
        verified_discord_id=identity_service.verified_discord_id(current_identity(request), payload.discord_username),
        discord_username=payload.discord_username,
    )
    return VoteResult(participant_id=participant.id)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@router.post("/event/{slug}/finalize", response_model=EventOut)
def finalize_event(
    slug: str,
    payload: FinalizeRequest,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
    schedule: WebhookScheduler = Depends(get_webhook_scheduler),
):
    """Lock in a slot: seats are allocated and every surface is told."""
    event = event_service.finalize_event(
        db, sync, slug, payload.slot_id,
        host_id=payload.host_id, location=payload.location, schedule=schedule,
    )
    return _view(event)


@router.post("/event/{slug}/cancel", response_model=EventOut)
def cancel_event(
    slug: str,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
    schedule: WebhookScheduler = Depends(get_webhook_scheduler),
):
    return _view(event_service.cancel_event(db, sync, slug, schedule=schedule))


@router.delete("/event/{slug}", response_model=ActionResult)
def delete_event(
    slug: str,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
    schedule: WebhookScheduler = Depends(get_webhook_scheduler),
):
    event_service.delete_event(db, sync, slug, schedule=schedule)
    return ActionResult(success=True)


@router.post("/event/{slug}/location", response_model=EventOut)
def update_location(
    slug: str,
    payload: LocationUpdate,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
    schedule: WebhookScheduler = Depends(get_webhook_scheduler),
):
    return _view(event_service.update_location(db, sync, slug, payload.location, schedule=schedule))


@router.put("/event/{slug}/reminders", response_model=EventOut)
def update_reminders(
    slug: str,
    payload: ReminderSettings,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event = event_service.update_reminder_settings(
        db, slug, payload.enabled,
        reminder_time=payload.reminder_time, reminder_days=payload.reminder_days,
    )
    return _view(event)


@router.put("/event/{slug}/manager", response_model=EventOut)
def update_manager(
    slug: str,
    payload: ManagerHandleUpdate,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _view(event_service.update_manager_handle(db, slug, payload.handle))


@router.put("/event/{slug}/telegram-link", response_model=EventOut)
def update_telegram_link(
    slug: str,
    payload: TelegramLinkUpdate,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _view(event_service.update_telegram_invite_link(db, slug, payload.link))
