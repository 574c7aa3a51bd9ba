"""Telegram long-polling worker.

One poller per bot token per process. The app lifespan starts it when
TELEGRAM_POLLING is on and stops it on shutdown; the stop handle also
interrupts any backoff wait.
"""
import logging
import random
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from tabletop.bot.handlers import BotHandler
from tabletop.integrations.chat_surface import SurfaceError
from tabletop.integrations.telegram import TelegramConflict, TelegramSurface

logger = logging.getLogger(__name__)

POLL_TIMEOUT_SECONDS = 25
ERROR_BACKOFF_SECONDS = 5.0
WEBHOOK_CLEAR_WAIT_SECONDS = 5.0


class TelegramPoller:
    def __init__(
        self,
        surface: TelegramSurface,
        handler: BotHandler,
        session_factory: Callable[[], Session],
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.surface = surface
        self.handler = handler
        self.session_factory = session_factory
        self.offset: Optional[int] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sleep = sleep or self._wait

    def _wait(self, seconds: float) -> None:
        self._stop.wait(seconds)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.debug("Telegram poller already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="telegram-poller", daemon=True)
        self._thread.start()
        logger.info("Telegram poller started")

    def stop(self, timeout: float = POLL_TIMEOUT_SECONDS + 15) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Telegram poller stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()

    def poll_once(self) -> int:
        """One getUpdates round trip. Returns how many updates were handled."""
        try:
            updates = self.surface.get_updates(self.offset, timeout=POLL_TIMEOUT_SECONDS)
        except TelegramConflict as exc:
            self._handle_conflict(str(exc))
            return 0
        except SurfaceError as exc:
            logger.error("Polling error (retrying in %.0fs): %s", ERROR_BACKOFF_SECONDS, exc)
            self._sleep(ERROR_BACKOFF_SECONDS)
            return 0

        for update in updates:
            update_id = update.get("update_id")
            if update_id is not None:
                self.offset = max(self.offset or 0, update_id + 1)
            self._process(update)
        return len(updates)

    def _process(self, update: dict) -> None:
        db = self.session_factory()
        try:
            self.handler.handle_update(db, update)
        finally:
            db.close()

    def _handle_conflict(self, description: str) -> None:
        lowered = description.lower()
        if "terminated by other getupdates" in lowered:
            # Another process is polling (usually a deploy overlap); back off with jitter
            delay = random.uniform(1, 3)
            logger.warning("getUpdates conflict with another poller; waiting %.1fs", delay)
            self._sleep(delay)
        elif "webhook is active" in lowered:
            logger.warning("A Telegram webhook is active; deleting it to resume polling")
            try:
                self.surface.delete_webhook()
            except SurfaceError as exc:
                logger.error("Could not delete Telegram webhook: %s", exc)
            self._sleep(WEBHOOK_CLEAR_WAIT_SECONDS)
        else:
            logger.error("getUpdates conflict (retrying in %.0fs): %s", ERROR_BACKOFF_SECONDS, description)
            self._sleep(ERROR_BACKOFF_SECONDS)
