"""Chat surface interface: the operations the dashboard needs from a chat platform.

One implementation per platform (Telegram, Discord). Message and chat ids are
kept as strings so both platforms fit the same columns.
"""
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx

from tabletop.config import settings

logger = logging.getLogger(__name__)

# A 429 asking us to wait longer than this is surfaced instead of retried inline
MAX_INLINE_RETRY_SECONDS = 5.0


class SurfaceError(Exception):
    """The chat platform rejected or failed a call."""


class MessageNotFound(SurfaceError):
    """The referenced message no longer exists."""


class MissingPermission(SurfaceError):
    """The bot lacks the right to perform the call (e.g. pin) in this chat."""


class RateLimited(SurfaceError):
    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class ChatSurface(ABC):
    """Base class for platform clients.

    Subclasses must implement every raw call; ``retires_by_delete`` tells the
    dashboard whether a superseded status message is deleted (True) or only
    unpinned (False).
    """

    platform = ""
    retires_by_delete = False

    def __init__(self, token: str, client: Optional[httpx.Client] = None, sleep: Callable[[float], None] = time.sleep):
        self.token = token
        self._client = client or httpx.Client(timeout=settings.HTTP_TIMEOUT_SECONDS)
        self._sleep = sleep

    @property
    def configured(self) -> bool:
        return bool(self.token)

    def render(self, html: str) -> str:
        return html

    @abstractmethod
    def send(self, chat_id: str, text: str) -> str:
        ...

    @abstractmethod
    def edit(self, chat_id: str, message_id: str, text: str) -> None:
        ...

    @abstractmethod
    def delete(self, chat_id: str, message_id: str) -> None:
        ...

    @abstractmethod
    def pin(self, chat_id: str, message_id: str) -> None:
        ...

    @abstractmethod
    def unpin(self, chat_id: str, message_id: str) -> None:
        ...

    @abstractmethod
    def open_dm(self, user_id: str) -> str:
        ...

    def _retrying(self, call: Callable, *args):
        """Run a platform call, retrying once on a short rate limit."""
        try:
            return call(*args)
        except RateLimited as exc:
            if exc.retry_after > MAX_INLINE_RETRY_SECONDS:
                raise
            logger.warning("%s rate limited, retrying in %.1fs", self.platform, exc.retry_after)
            self._sleep(exc.retry_after)
            return call(*args)
