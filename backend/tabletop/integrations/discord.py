"""Discord REST client (bot token, API v10).

Discord has no HTML formatting, so messages built for Telegram are rendered
to Markdown before sending. Superseded dashboards are unpinned, not deleted.
"""
import html
import logging
import re
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

API_BASE = "https://discord.com/api/v10"
MAX_CONTENT_LENGTH = 2000

# JSON error codes: unknown channel/message, missing access/permissions
_NOT_FOUND_CODES = {10003, 10008}
_PERMISSION_CODES = {50001, 50013}

TEXT_CHANNEL = 0

_LINK_RE = re.compile(r'<a href="([^"]*)">(.*?)</a>', re.DOTALL)
_BOLD_RE = re.compile(r"</?b>")
_ITALIC_RE = re.compile(r"</?i>")
_CODE_RE = re.compile(r"</?code>")
_TAG_RE = re.compile(r"<[^>]+>")


class DiscordSurface(ChatSurface):
    platform = "discord"
    retires_by_delete = False

    def render(self, text: str) -> str:
        text = _LINK_RE.sub(lambda m: f"[{m.group(2)}]({m.group(1)})", text)
        text = _BOLD_RE.sub("**", text)
        text = _ITALIC_RE.sub("_", text)
        text = _CODE_RE.sub("`", text)
        text = _TAG_RE.sub("", text)
        text = html.unescape(text)
        if len(text) > MAX_CONTENT_LENGTH:
            text = text[: MAX_CONTENT_LENGTH - 1] + "…"
        return text

    def _request(self, method: str, path: str, body: Optional[dict[str, Any]] = None) -> Any:
        headers = {"Authorization": f"Bot {self.token}"}
        try:
            resp = self._client.request(method, f"{API_BASE}{path}", json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise SurfaceError(f"discord {method} {path} failed: {exc}") from exc

        if resp.is_success:
            return resp.json() if resp.content else None

        try:
            data = resp.json()
        except ValueError:
            data = {}
        message = str(data.get("message") or resp.text[:200])
        code = data.get("code")
        if resp.status_code == 429:
            raise RateLimited(f"discord {path}: {message}", float(data.get("retry_after", 1)))
        if resp.status_code == 404 or code in _NOT_FOUND_CODES:
            raise MessageNotFound(f"discord {path}: {message}")
        if resp.status_code == 403 or code in _PERMISSION_CODES:
            raise MissingPermission(f"discord {path}: {message}")
        raise SurfaceError(f"discord {method} {path} ({resp.status_code}): {message}")

    def send(self, chat_id: str, text: str) -> str:
        data = self._retrying(self._request, "POST", f"/channels/{chat_id}/messages", {"content": text})
        logger.debug("Discord message %s sent to channel %s", data.get("id"), chat_id)
        return str(data["id"])

    def edit(self, chat_id: str, message_id: str, text: str) -> None:
        self._retrying(self._request, "PATCH", f"/channels/{chat_id}/messages/{message_id}", {"content": text})

    def delete(self, chat_id: str, message_id: str) -> None:
        self._retrying(self._request, "DELETE", f"/channels/{chat_id}/messages/{message_id}")

    def pin(self, chat_id: str, message_id: str) -> None:
        self._retrying(self._request, "PUT", f"/channels/{chat_id}/pins/{message_id}")

    def unpin(self, chat_id: str, message_id: str) -> None:
        self._retrying(self._request, "DELETE", f"/channels/{chat_id}/pins/{message_id}")

    def open_dm(self, user_id: str) -> str:
        data = self._retrying(self._request, "POST", "/users/@me/channels", {"recipient_id": str(user_id)})
        return str(data["id"])

    def list_text_channels(self, guild_id: str) -> list[dict]:
        channels = self._retrying(self._request, "GET", f"/guilds/{guild_id}/channels") or []
        text_channels = [
            {"id": str(c["id"]), "name": c.get("name", ""), "position": c.get("position", 0)}
            for c in channels
            if c.get("type") == TEXT_CHANNEL
        ]
        return sorted(text_channels, key=lambda c: c["position"])
