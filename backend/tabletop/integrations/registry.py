"""Builds the configured chat surfaces from settings."""
import logging
from typing import Optional

import httpx

from tabletop.config import settings
from tabletop.integrations.chat_surface import ChatSurface
from tabletop.integrations.discord import DiscordSurface
from tabletop.integrations.telegram import TelegramSurface

logger = logging.getLogger(__name__)

_http_client: Optional[httpx.Client] = None


def shared_http_client() -> httpx.Client:
    global _http_client
    if _http_client is None:
        _http_client = httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)
    return _http_client


def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        _http_client.close()
        _http_client = None


def build_surfaces(client: Optional[httpx.Client] = None) -> dict[str, ChatSurface]:
    """Return the surfaces whose bot token is configured, keyed by platform."""
    client = client or shared_http_client()
    surfaces: dict[str, ChatSurface] = {}
    if settings.TELEGRAM_BOT_TOKEN:
        surfaces["telegram"] = TelegramSurface(settings.TELEGRAM_BOT_TOKEN, client)
    if settings.DISCORD_BOT_TOKEN:
        surfaces["discord"] = DiscordSurface(settings.DISCORD_BOT_TOKEN, client)
    if not surfaces:
        logger.debug("No chat bot tokens configured; dashboard sync disabled")
    return surfaces
