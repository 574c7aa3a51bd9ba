"""Magic-link sessions, manager recovery and global login routes."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from tabletop.database import get_db
from tabletop.models.event import Event
from tabletop.routers.deps import require_admin
from tabletop.schemas.auth import MagicLinkRequest, ManagerStatus, RecoverRequest, RecoveryTokenOut
from tabletop.schemas.common import ActionResult
from tabletop.services import identity_service, links
from tabletop.services.dashboard_service import DashboardSync, get_dashboard_sync

logger = logging.getLogger(__name__)
router = APIRouter()

ADMIN_COOKIE_MAX_AGE = 60 * 60 * 24 * 365
IDENTITY_COOKIE_MAX_AGE = 60 * 60 * 24 * 30


@router.get("/api/event/{slug}/auth")
def admin_magic_link(
    slug: str,
    request: Request,
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Exchange an admin magic link for the per-event admin cookie."""
    base_url = links.resolve_base_url(request.headers)
    if not token:
        return RedirectResponse(links.event_url(base_url, slug), status_code=303)

    event = db.query(Event).filter(Event.slug == slug).first()
    if event is None or not identity_service.is_event_admin(event, admin_token=token):
        logger.warning("Invalid admin magic link for event %s", slug)
        return RedirectResponse(f"{links.event_url(base_url, slug)}?error=invalid_token", status_code=303)

    response = RedirectResponse(links.manage_url(base_url, slug), status_code=303)
    response.set_cookie(
        identity_service.admin_cookie_name(slug), token,
        max_age=ADMIN_COOKIE_MAX_AGE, httponly=True, samesite="lax",
    )
    logger.info("Admin magic link accepted for event %s", slug)
    return response


@router.get("/auth/login")
def global_login(request: Request, token: Optional[str] = Query(None), db: Session = Depends(get_db)):
    """Exchange a login token for the signed identity cookie."""
    base_url = links.resolve_base_url(request.headers)
    identity = identity_service.redeem_login_token(db, token)
    if identity is None:
        return RedirectResponse(f"{base_url}/login?error=invalid_token", status_code=303)

    response = RedirectResponse(f"{base_url}/profile", status_code=303)
    response.set_cookie(
        identity_service.IDENTITY_COOKIE, identity_service.sign_identity(identity),
        max_age=IDENTITY_COOKIE_MAX_AGE, httponly=True, samesite="lax",
    )
    return response


@router.post("/api/event/{slug}/recover", response_model=ActionResult, response_model_exclude_none=True)
def recover_manager(
    slug: str,
    payload: RecoverRequest,
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
):
    """DM a fresh admin link to the verified manager matching the given handle."""
    if payload.handle:
        return identity_service.recover_manager_link(db, slug, payload.handle, sync)
    if payload.discord_username:
        return identity_service.recover_discord_manager_link(db, slug, payload.discord_username, sync)
    raise HTTPException(status_code=400, detail="A Telegram handle or Discord username is required")


@router.post("/api/event/{slug}/recovery-token", response_model=RecoveryTokenOut)
def create_recovery_token(slug: str, event: Event = Depends(require_admin), db: Session = Depends(get_db)):
    return identity_service.generate_recovery_token(db, slug)


@router.post("/api/event/{slug}/dm-link", response_model=ActionResult, response_model_exclude_none=True)
def dm_manager_link(slug: str, db: Session = Depends(get_db), sync: DashboardSync = Depends(get_dashboard_sync)):
    return identity_service.dm_manager_link(db, slug, sync)


@router.post("/api/auth/magic-link", response_model=ActionResult, response_model_exclude_none=True)
def request_magic_link(
    payload: MagicLinkRequest,
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
):
    if payload.handle:
        return identity_service.send_global_magic_link(db, payload.handle, sync)
    if payload.discord_username:
        return identity_service.send_discord_magic_login(db, payload.discord_username, sync)
    raise HTTPException(status_code=400, detail="A Telegram handle or Discord username is required")


@router.get("/api/event/{slug}/manager-status", response_model=ManagerStatus)
def manager_status(slug: str, db: Session = Depends(get_db)):
    event = identity_service.get_event_or_404(db, slug)
    return ManagerStatus(
        has_manager_chat_id=bool(event.manager_chat_id),
        has_manager_discord_id=bool(event.manager_discord_id),
        handle=event.manager_telegram,
        discord_username=event.manager_discord_username,
        telegram_connected=bool(event.telegram_chat_id),
        discord_connected=bool(event.discord_channel_id),
    )
