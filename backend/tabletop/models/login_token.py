"""LoginToken ORM model: magic-link credential keyed by platform identity."""
from sqlalchemy import Column, String, DateTime, Integer

from tabletop.clock import utcnow
from tabletop.database import Base


class LoginToken(Base):
    __tablename__ = "login_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_hash = Column(String(64), nullable=False, unique=True)
    chat_id = Column(String(64), nullable=True, index=True)
    discord_id = Column(String(64), nullable=True, index=True)
    discord_username = Column(String(100), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
