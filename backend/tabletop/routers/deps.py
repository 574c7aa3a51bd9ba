"""Request-level auth dependencies shared by the routers."""
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from tabletop.config import settings
from tabletop.database import get_db
from tabletop.models.event import Event
from tabletop.services import identity_service

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"127.0.0.1", "::1", "localhost"}


def current_identity(request: Request) -> Optional[dict]:
    return identity_service.read_identity(request.cookies.get(identity_service.IDENTITY_COOKIE))


def require_admin(
    slug: str,
    request: Request,
    x_admin_token: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Event:
    """Admin token (header or per-event cookie) or a matching global identity."""
    token = x_admin_token or request.cookies.get(identity_service.admin_cookie_name(slug))
    return identity_service.verify_event_admin(db, slug, token, current_identity(request))


def require_cron(request: Request, authorization: Optional[str] = Header(None)) -> None:
    if settings.CRON_SECRET and authorization and hmac.compare_digest(authorization, f"Bearer {settings.CRON_SECRET}"):
        return
    host = request.client.host if request.client else None
    if host in LOOPBACK_HOSTS:
        return
    logger.warning("Rejected scheduled-job call from %s", host)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
