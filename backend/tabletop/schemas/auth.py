"""Pydantic schemas for manager recovery and login."""
from datetime import datetime
from typing import Optional

from tabletop.schemas.common import CamelModel


class RecoverRequest(CamelModel):
    handle: Optional[str] = None
    discord_username: Optional[str] = None


class MagicLinkRequest(CamelModel):
    handle: Optional[str] = None
    discord_username: Optional[str] = None


class RecoveryTokenOut(CamelModel):
    token: str
    expires_at: datetime
    recovery_link: str
    setup_link: str


class ManagerStatus(CamelModel):
    has_manager_chat_id: bool
    has_manager_discord_id: bool
    handle: Optional[str] = None
    discord_username: Optional[str] = None
    telegram_connected: bool
    discord_connected: bool
