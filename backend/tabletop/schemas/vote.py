"""Pydantic schemas for Votes."""
from typing import Optional

from pydantic import Field

from tabletop.models.vote import VotePreference
from tabletop.schemas.common import CamelModel


class VoteIn(CamelModel):
    slot_id: int
    preference: VotePreference
    can_host: bool = False


class VoteSubmit(CamelModel):
    name: str = Field(min_length=1, max_length=100)
    votes: list[VoteIn] = []
    participant_id: Optional[int] = None
    telegram_id: Optional[str] = None
    discord_username: Optional[str] = None


class VoteOut(CamelModel):
    time_slot_id: int
    preference: VotePreference
    can_host: bool


class VoteResult(CamelModel):
    participant_id: int
