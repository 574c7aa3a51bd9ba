"""Pydantic schemas for Events."""
from __future__ import annotations
from datetime import datetime
from typing import Optional

from pydantic import Field, field_validator

from tabletop.clock import ensure_utc
from tabletop.models.participant import ParticipantStatus
from tabletop.schemas.common import CamelModel
from tabletop.schemas.vote import VoteOut


class SlotIn(CamelModel):
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class EventCreate(CamelModel):
    title: str
    description: Optional[str] = None
    timezone: str = "UTC"
    min_players: int = 1
    max_players: Optional[int] = None
    time_slots: list[SlotIn] = Field(min_length=1)
    manager_telegram: Optional[str] = None
    manager_discord_username: Optional[str] = None
    from_url: Optional[str] = None
    from_url_id: Optional[str] = None


class EventCreated(CamelModel):
    id: int
    slug: str
    admin_token: str
    link: str
    manage_link: str


class SlotOut(CamelModel):
    id: int
    start_time: datetime
    end_time: datetime
    yes_count: int
    maybe_count: int
    no_count: int
    viable: bool
    perfect: bool


class ParticipantOut(CamelModel):
    id: int
    name: str
    status: ParticipantStatus
    waitlist_position: Optional[int] = None
    votes: list[VoteOut] = []


class EventOut(CamelModel):
    id: int
    slug: str
    title: str
    description: Optional[str] = None
    timezone: str
    status: str
    min_players: int
    max_players: Optional[int] = None
    location: Optional[str] = None
    finalized_slot_id: Optional[int] = None
    finalized_host_id: Optional[int] = None
    telegram_link: Optional[str] = None
    telegram_connected: bool
    discord_connected: bool
    created_at: datetime
    time_slots: list[SlotOut] = []
    participants: list[ParticipantOut] = []
    attendees: list[str] = []
    waitlist: list[str] = []


class FinalizeRequest(CamelModel):
    slot_id: int
    host_id: Optional[int] = None
    location: Optional[str] = None


class LocationUpdate(CamelModel):
    location: Optional[str] = None


class ReminderSettings(CamelModel):
    enabled: bool
    reminder_time: Optional[str] = None  # "HH:MM", event-local
    reminder_days: list[int] = []  # 0 = Sunday


class ManagerHandleUpdate(CamelModel):
    handle: str


class TelegramLinkUpdate(CamelModel):
    link: Optional[str] = None


class DiscordConnect(CamelModel):
    guild_id: str
    channel_id: str


class ValidateRequest(CamelModel):
    slugs: list[str] = []


class ValidateResponse(CamelModel):
    valid_slugs: list[str]
