"""Telegram Bot API client.

Messages are sent with ``parse_mode=HTML``. Superseded dashboards are
deleted rather than unpinned, since Telegram lets bots delete their own
messages in groups.
"""
import logging
from typing import Any, Optional

import httpx

from tabletop.integrations.chat_surface import (
    ChatSurface,
    MessageNotFound,
    MissingPermission,
    RateLimited,
    SurfaceError,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"

_NOT_FOUND_MARKERS = ("message to edit not found", "message to delete not found", "message not found")
_PERMISSION_MARKERS = ("not enough rights", "have no rights", "bot was kicked", "bot is not a member")


class TelegramConflict(SurfaceError):
    """409 from getUpdates: another poller or an active webhook owns the updates."""


class TelegramSurface(ChatSurface):
    platform = "telegram"
    retires_by_delete = True

    def _call(self, method: str, payload: Optional[dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        url = f"{API_BASE}/bot{self.token}/{method}"
        try:
            if timeout is None:
                resp = self._client.post(url, json=payload or {})
            else:
                resp = self._client.post(url, json=payload or {}, timeout=timeout)
        except httpx.HTTPError as exc:
            raise SurfaceError(f"telegram {method} failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.is_success and data.get("ok"):
            return data.get("result")

        description = str(data.get("description") or resp.text[:200])
        code = data.get("error_code") or resp.status_code
        lowered = description.lower()
        if code == 429:
            retry_after = float((data.get("parameters") or {}).get("retry_after", 1))
            raise RateLimited(f"telegram {method}: {description}", retry_after)
        if code == 409:
            raise TelegramConflict(description)
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            raise MessageNotFound(f"telegram {method}: {description}")
        if code == 403 or any(marker in lowered for marker in _PERMISSION_MARKERS):
            raise MissingPermission(f"telegram {method}: {description}")
        raise SurfaceError(f"telegram {method} ({code}): {description}")

    def send(self, chat_id: str, text: str) -> str:
        result = self._retrying(self._call, "sendMessage", {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        })
        logger.debug("Telegram message %s sent to %s", result.get("message_id"), chat_id)
        return str(result["message_id"])

    def edit(self, chat_id: str, message_id: str, text: str) -> None:
        try:
            self._retrying(self._call, "editMessageText", {
                "chat_id": chat_id,
                "message_id": int(message_id),
                "text": text,
                "parse_mode": "HTML",
                "disable_web_page_preview": True,
            })
        except SurfaceError as exc:
            # Same text as before: the message is already up to date
            if "message is not modified" in str(exc).lower():
                return
            raise

    def delete(self, chat_id: str, message_id: str) -> None:
        self._retrying(self._call, "deleteMessage", {"chat_id": chat_id, "message_id": int(message_id)})

    def pin(self, chat_id: str, message_id: str) -> None:
        self._retrying(self._call, "pinChatMessage", {
            "chat_id": chat_id,
            "message_id": int(message_id),
            "disable_notification": True,
        })

    def unpin(self, chat_id: str, message_id: str) -> None:
        self._retrying(self._call, "unpinChatMessage", {"chat_id": chat_id, "message_id": int(message_id)})

    def open_dm(self, user_id: str) -> str:
        # A private chat with a user shares the user's id
        return str(user_id)

    # -- ingress ---------------------------------------------------------

    def get_updates(self, offset: Optional[int], timeout: int = 25) -> list[dict]:
        payload: dict[str, Any] = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        return self._call("getUpdates", payload, timeout=timeout + 10) or []

    def delete_webhook(self) -> None:
        self._call("deleteWebhook", {"drop_pending_updates": False})
        logger.info("Telegram webhook deleted")

    def set_webhook(self, url: str, secret_token: Optional[str] = None) -> None:
        payload: dict[str, Any] = {"url": url, "allowed_updates": ["message"]}
        if secret_token:
            payload["secret_token"] = secret_token
        self._call("setWebhook", payload)
        logger.info("Telegram webhook set to %s", url)
