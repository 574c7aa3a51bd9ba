"""Vote ORM model: created_at is the first-come tie-break clock."""
import enum
from sqlalchemy import Column, Boolean, DateTime, Integer, ForeignKey, UniqueConstraint, Enum as SAEnum
from sqlalchemy.orm import relationship

from tabletop.clock import utcnow
from tabletop.database import Base


class VotePreference(str, enum.Enum):
    yes = "YES"
    maybe = "MAYBE"
    no = "NO"


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (UniqueConstraint("participant_id", "time_slot_id", name="uq_vote_participant_slot"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    participant_id = Column(Integer, ForeignKey("participants.id", ondelete="CASCADE"), nullable=False, index=True)
    time_slot_id = Column(Integer, ForeignKey("time_slots.id", ondelete="CASCADE"), nullable=False, index=True)
    preference = Column(SAEnum(VotePreference), nullable=False)
    can_host = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    participant = relationship("Participant", back_populates="votes")
    time_slot = relationship("TimeSlot", back_populates="votes")
