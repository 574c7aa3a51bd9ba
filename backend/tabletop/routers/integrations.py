"""Chat platform routes: Telegram webhook ingress and Discord channel wiring."""
import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from tabletop.bot.handlers import BotHandler
from tabletop.config import settings
from tabletop.database import get_db
from tabletop.integrations.chat_surface import SurfaceError
from tabletop.models.event import Event
from tabletop.routers.deps import require_admin, require_cron
from tabletop.schemas.common import ActionResult
from tabletop.schemas.event import DiscordConnect, EventOut
from tabletop.services import event_service
from tabletop.services.dashboard_service import DashboardSync, get_dashboard_sync

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/telegram/webhook")
def telegram_webhook(
    update: dict[str, Any] = Body(...),
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
):
    """Webhook-mode ingress. Processed updates always get a 200 so Telegram does not redeliver them."""
    secret = settings.TELEGRAM_WEBHOOK_SECRET
    if secret and not hmac.compare_digest(x_telegram_bot_api_secret_token or "", secret):
        logger.warning("Telegram webhook call with a bad secret token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    BotHandler(sync).handle_update(db, update)
    return {"ok": True}


@router.post("/telegram/setup", response_model=ActionResult, response_model_exclude_none=True)
def telegram_setup(_: None = Depends(require_cron), sync: DashboardSync = Depends(get_dashboard_sync)):
    """Point the bot's webhook at this deployment."""
    surface = sync.surfaces.get("telegram")
    if surface is None:
        raise HTTPException(status_code=503, detail="Telegram bot is not configured")
    url = f"{sync.base_url}/api/telegram/webhook"
    try:
        surface.set_webhook(url, settings.TELEGRAM_WEBHOOK_SECRET or None)
    except SurfaceError as exc:
        logger.error("Telegram webhook setup failed: %s", exc)
        raise HTTPException(status_code=502, detail="Telegram rejected the webhook setup") from exc
    return ActionResult(success=True, message=f"Webhook configured for {url}")


@router.post("/event/{slug}/discord", response_model=EventOut)
def connect_discord(
    slug: str,
    payload: DiscordConnect,
    event: Event = Depends(require_admin),
    db: Session = Depends(get_db),
    sync: DashboardSync = Depends(get_dashboard_sync),
):
    """Attach the event to a Discord channel and post its dashboard there."""
    event = event_service.connect_discord_channel(db, sync, slug, payload.guild_id, payload.channel_id)
    return EventOut.model_validate(event_service.build_event_view(event))


@router.get("/discord/guilds/{guild_id}/channels")
def list_discord_channels(guild_id: str, sync: DashboardSync = Depends(get_dashboard_sync)):
    """Text channels the bot can see in a guild, in display order."""
    surface = sync.surfaces.get("discord")
    if surface is None:
        raise HTTPException(status_code=503, detail="Discord bot is not configured")
    try:
        return surface.list_text_channels(guild_id)
    except SurfaceError as exc:
        logger.warning("Listing channels of guild %s failed: %s", guild_id, exc)
        raise HTTPException(status_code=502, detail="Could not list Discord channels") from exc
