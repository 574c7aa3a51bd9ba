"""Participant ORM model."""
import enum
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import relationship

from tabletop.clock import utcnow
from tabletop.database import Base


class ParticipantStatus(str, enum.Enum):
    pending = "PENDING"
    accepted = "ACCEPTED"
    waitlist = "WAITLIST"


class Participant(Base):
    __tablename__ = "participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(Integer, ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    telegram_id = Column(String(100), nullable=True)  # declared handle
    chat_id = Column(String(64), nullable=True)  # verified Telegram user id
    discord_username = Column(String(100), nullable=True)
    discord_id = Column(String(64), nullable=True)
    status = Column(SAEnum(ParticipantStatus), nullable=False, default=ParticipantStatus.pending)
    waitlist_position = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    event = relationship("Event", back_populates="participants")
    votes = relationship("Vote", back_populates="participant", cascade="all, delete-orphan")
