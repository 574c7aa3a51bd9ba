"""Parses Telegram message text into bot commands.

Recognised forms:
- ``/connect <slug>`` or ``/connect@BotName <slug>``
- any text containing an event link ``<origin>/e/<slug>``
- ``/start setup_recovery_<slug>_<token>``, ``/start rec_<token>``
- ``/start login``, ``/start recover_handle``
- ``/start <slug>``
"""
import re
from dataclasses import dataclass
from typing import Optional

CONNECT = "connect"
CONNECT_USAGE = "connect_usage"
RECOVER_SETUP = "recover_setup"
RECOVER_SHORT = "recover_short"
RECOVERY_INVALID = "recovery_invalid"
LOGIN = "login"
WELCOME = "welcome"
IGNORE = "ignore"

_EVENT_URL_RE = re.compile(r"(https?://[^\s/]+)/e/([a-zA-Z0-9]+)")
_EVENT_PATH_RE = re.compile(r"/e/([a-zA-Z0-9]+)")
_SLUG_RE = re.compile(r"^[a-zA-Z0-9]+$")

_SETUP_PREFIX = "setup_recovery_"
_SHORT_PREFIX = "rec_"


@dataclass
class Command:
    kind: str
    slug: Optional[str] = None
    token: Optional[str] = None
    origin: Optional[str] = None


def _command_name(word: str) -> str:
    # "/connect@MyBot" -> "/connect"
    return word.split("@", 1)[0].lower()


def _parse_start(payload: str) -> Command:
    if not payload:
        return Command(WELCOME)
    if payload.startswith(_SETUP_PREFIX):
        rest = payload[len(_SETUP_PREFIX):]
        if "_" not in rest:
            return Command(RECOVERY_INVALID)
        slug, token = rest.rsplit("_", 1)
        if not slug or not token:
            return Command(RECOVERY_INVALID)
        return Command(RECOVER_SETUP, slug=slug, token=token)
    if payload.startswith(_SHORT_PREFIX):
        token = payload[len(_SHORT_PREFIX):]
        return Command(RECOVER_SHORT, token=token) if token else Command(RECOVERY_INVALID)
    if payload in ("login", "recover_handle"):
        return Command(LOGIN)
    if _SLUG_RE.match(payload):
        return Command(CONNECT, slug=payload)
    return Command(IGNORE)


def parse_command(text: Optional[str]) -> Command:
    text = (text or "").strip()
    if not text:
        return Command(IGNORE)

    words = text.split()
    name = _command_name(words[0])

    if name == "/connect":
        if len(words) < 2:
            return Command(CONNECT_USAGE)
        arg = words[1]
        match = _EVENT_URL_RE.search(arg)
        if match:
            return Command(CONNECT, slug=match.group(2), origin=match.group(1))
        match = _EVENT_PATH_RE.search(arg)
        if match:
            return Command(CONNECT, slug=match.group(1))
        if _SLUG_RE.match(arg):
            return Command(CONNECT, slug=arg)
        return Command(CONNECT_USAGE)

    if name == "/start":
        return _parse_start(words[1] if len(words) > 1 else "")

    match = _EVENT_URL_RE.search(text)
    if match:
        return Command(CONNECT, slug=match.group(2), origin=match.group(1))
    return Command(IGNORE)
