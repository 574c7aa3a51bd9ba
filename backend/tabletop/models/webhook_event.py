"""WebhookEvent ORM model: durable outbox row for subscriber notifications."""
import uuid
import enum
from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, Enum as SAEnum

from tabletop.clock import utcnow
from tabletop.database import Base


class WebhookStatus(str, enum.Enum):
    pending = "PENDING"
    sent = "SENT"
    failed = "FAILED"


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # Kept after event deletion so DELETED notifications can still go out
    event_id = Column(Integer, ForeignKey("events.id", ondelete="SET NULL"), nullable=True, index=True)
    url = Column(String(1000), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(SAEnum(WebhookStatus), nullable=False, default=WebhookStatus.pending, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_error = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
