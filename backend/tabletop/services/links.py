"""Public URL and bot deep-link builders."""
from typing import Mapping, Optional
from urllib.parse import quote

from tabletop.config import settings

DEFAULT_BASE_URL = "http://localhost:3000"


def default_base_url() -> str:
    return (settings.BASE_URL or DEFAULT_BASE_URL).rstrip("/")


def resolve_base_url(headers: Optional[Mapping[str, str]] = None) -> str:
    """BASE_URL override, then proxy/host headers, then localhost."""
    if settings.BASE_URL:
        return settings.BASE_URL.rstrip("/")
    if headers:
        host = headers.get("x-forwarded-host") or headers.get("host")
        if host:
            proto = headers.get("x-forwarded-proto")
            if not proto:
                proto = "http" if host.startswith(("localhost", "127.0.0.1")) else "https"
            return f"{proto}://{host}"
    return DEFAULT_BASE_URL


def event_url(base_url: str, slug: str) -> str:
    return f"{base_url}/e/{slug}"


def manage_url(base_url: str, slug: str) -> str:
    return f"{base_url}/e/{slug}/manage"


def admin_auth_url(base_url: str, slug: str, token: str) -> str:
    return f"{base_url}/api/event/{slug}/auth?token={quote(token)}"


def login_url(base_url: str, token: str) -> str:
    return f"{base_url}/auth/login?token={quote(token)}"


def bot_deep_link(payload: str) -> str:
    return f"https://t.me/{settings.TELEGRAM_BOT_USERNAME}?start={payload}"
