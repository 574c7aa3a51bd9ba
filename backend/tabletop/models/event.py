"""Event ORM model: aggregate root for slots, participants and the webhook outbox."""
import enum
from sqlalchemy import Column, String, DateTime, Integer, Boolean, Text, Enum as SAEnum
from sqlalchemy.orm import relationship

from tabletop.clock import utcnow
from tabletop.database import Base


class EventStatus(str, enum.Enum):
    draft = "DRAFT"
    finalized = "FINALIZED"
    cancelled = "CANCELLED"


class Event(Base):
    __tablename__ = "events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slug = Column(String(32), nullable=False, unique=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")
    status = Column(SAEnum(EventStatus), nullable=False, default=EventStatus.draft)
    min_players = Column(Integer, nullable=False, default=1)
    max_players = Column(Integer, nullable=True)

    # Plain ids: slots and participants already point back at events
    finalized_slot_id = Column(Integer, nullable=True)
    finalized_host_id = Column(Integer, nullable=True)
    location = Column(String(500), nullable=True)

    # Telegram surface
    telegram_chat_id = Column(String(64), nullable=True)
    telegram_message_id = Column(String(64), nullable=True)
    telegram_announcement_id = Column(String(64), nullable=True)
    telegram_link = Column(String(255), nullable=True)

    # Discord surface
    discord_guild_id = Column(String(64), nullable=True)
    discord_channel_id = Column(String(64), nullable=True)
    discord_message_id = Column(String(64), nullable=True)
    discord_announcement_id = Column(String(64), nullable=True)

    # Manager identity: declared handle + platform-verified id
    manager_telegram = Column(String(100), nullable=True)
    manager_chat_id = Column(String(64), nullable=True)
    manager_discord_username = Column(String(100), nullable=True)
    manager_discord_id = Column(String(64), nullable=True)

    admin_token_hash = Column(String(64), nullable=False)
    recovery_token_hash = Column(String(64), nullable=True, unique=True)
    recovery_token_expires = Column(DateTime(timezone=True), nullable=True)

    # Monotonic: set once, never cleared
    quorum_viable_notified = Column(Boolean, nullable=False, default=False)
    quorum_perfect_notified = Column(Boolean, nullable=False, default=False)

    reminder_enabled = Column(Boolean, nullable=False, default=False)
    reminder_time = Column(String(8), nullable=True)
    reminder_days = Column(String(32), nullable=True)
    last_reminder_sent = Column(DateTime(timezone=True), nullable=True)

    from_url = Column(String(1000), nullable=True)
    from_url_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    time_slots = relationship(
        "TimeSlot", back_populates="event", cascade="all, delete-orphan", order_by="TimeSlot.start_time"
    )
    participants = relationship(
        "Participant", back_populates="event", cascade="all, delete-orphan", order_by="Participant.id"
    )
    finalized_slot = relationship(
        "TimeSlot", primaryjoin="foreign(Event.finalized_slot_id) == TimeSlot.id", viewonly=True
    )
    finalized_host = relationship(
        "Participant", primaryjoin="foreign(Event.finalized_host_id) == Participant.id", viewonly=True
    )

    def slot_by_id(self, slot_id):
        for slot in self.time_slots:
            if slot.id == slot_id:
                return slot
        return None
