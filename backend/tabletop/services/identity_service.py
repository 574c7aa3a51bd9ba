"""Identity & recovery: tokens, manager verification and passive identity capture.

Credential shapes:
- long token (UUID4): admin magic links and global login links, stored hashed
- short token (4 random bytes, hex): typed or deep-linked recovery codes,
  stored hashed on the event with a 15 minute expiry, single use

Identity mismatches fail closed and are logged with both identities.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from tabletop.clock import ensure_utc, utcnow
from tabletop.config import settings
from tabletop.models.event import Event
from tabletop.models.login_token import LoginToken
from tabletop.models.participant import Participant
from tabletop.services import links, messages

logger = logging.getLogger(__name__)

ADMIN_COOKIE_PREFIX = "tabletop_admin_"
IDENTITY_COOKIE = "tabletop_identity"

RECOVERY_TOKEN_TTL = timedelta(minutes=15)
LOGIN_TOKEN_TTL = timedelta(minutes=15)
LOGIN_TOKEN_MIN_REMAINING = timedelta(minutes=2)

TELEGRAM = "telegram"
DISCORD = "discord"


@dataclass
class PlatformUser:
    platform: str
    user_id: str
    handle: Optional[str] = None


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def new_long_token() -> str:
    return str(uuid.uuid4())


def new_short_token() -> str:
    return secrets.token_hex(4)


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def normalize_handle(handle: Optional[str]) -> str:
    return (handle or "").strip().replace(" ", "").lstrip("@").lower()


def format_handle(handle: Optional[str]) -> Optional[str]:
    """Canonical stored form of a Telegram handle: ``@lowercase``."""
    clean = normalize_handle(handle)
    return f"@{clean}" if clean else None


def admin_cookie_name(slug: str) -> str:
    return f"{ADMIN_COOKIE_PREFIX}{slug}"


def _signature(body: str) -> str:
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_identity(identity: dict) -> str:
    body = base64.urlsafe_b64encode(json.dumps(identity, sort_keys=True).encode("utf-8")).decode("ascii")
    return f"{body}.{_signature(body)}"


def read_identity(cookie: Optional[str]) -> Optional[dict]:
    """Verify and decode the global identity cookie; None when absent or tampered."""
    if not cookie or "." not in cookie:
        return None
    body, signature = cookie.rsplit(".", 1)
    if not hmac.compare_digest(signature, _signature(body)):
        logger.warning("Rejected identity cookie with a bad signature")
        return None
    try:
        return json.loads(base64.urlsafe_b64decode(body.encode("ascii")))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Admin sessions
# ---------------------------------------------------------------------------

def get_event_or_404(db: Session, slug: str) -> Event:
    event = db.query(Event).filter(Event.slug == slug).first()
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return event


def is_event_admin(event: Event, admin_token: Optional[str] = None, identity: Optional[dict] = None) -> bool:
    if admin_token and hmac.compare_digest(hash_token(admin_token), event.admin_token_hash):
        return True
    if identity:
        chat_id = identity.get("chat_id")
        discord_id = identity.get("discord_id")
        if chat_id and event.manager_chat_id and str(chat_id) == event.manager_chat_id:
            return True
        if discord_id and event.manager_discord_id and str(discord_id) == event.manager_discord_id:
            return True
    return False


def verify_event_admin(db: Session, slug: str, admin_token: Optional[str] = None, identity: Optional[dict] = None) -> Event:
    event = get_event_or_404(db, slug)
    if not is_event_admin(event, admin_token, identity):
        logger.warning(
            "Admin access denied for event %s (token supplied: %s, identity: %s)",
            slug, bool(admin_token), identity,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return event


def issue_admin_link(db: Session, event: Event, base_url: str) -> str:
    """Rotate the admin token and return the magic link. Caller commits."""
    token = new_long_token()
    event.admin_token_hash = hash_token(token)
    return links.admin_auth_url(base_url, event.slug, token)


# ---------------------------------------------------------------------------
# Short recovery tokens
# ---------------------------------------------------------------------------

def generate_recovery_token(db: Session, slug: str) -> dict:
    event = get_event_or_404(db, slug)
    token = new_short_token()
    event.recovery_token_hash = hash_token(token)
    event.recovery_token_expires = utcnow() + RECOVERY_TOKEN_TTL
    db.commit()
    logger.info("Issued recovery token for event %s", slug)
    return {
        "token": token,
        "expires_at": event.recovery_token_expires,
        "recovery_link": links.bot_deep_link(f"rec_{token}"),
        "setup_link": links.bot_deep_link(f"setup_recovery_{slug}_{token}"),
    }


def consume_recovery_token(db: Session, token: str, slug: Optional[str] = None) -> Optional[Event]:
    """Single-use: the token is cleared the moment it is matched, expired or not."""
    query = db.query(Event).filter(Event.recovery_token_hash == hash_token(token or ""))
    if slug:
        query = query.filter(Event.slug == slug)
    event = query.first()
    if event is None:
        logger.warning("Recovery token rejected: unknown or already used (slug=%s)", slug)
        return None

    expires = ensure_utc(event.recovery_token_expires)
    event.recovery_token_hash = None
    event.recovery_token_expires = None
    db.commit()

    if expires is None or expires < utcnow():
        logger.warning("Recovery token rejected: expired for event %s", event.slug)
        return None
    logger.info("Recovery token accepted for event %s", event.slug)
    return event


# ---------------------------------------------------------------------------
# Manager claim / verification
# ---------------------------------------------------------------------------

def claim_or_verify_manager(db: Session, event: Event, user: PlatformUser) -> bool:
    """Link ``user`` as the event manager if allowed. Caller commits.

    No stored handle: the sender becomes the manager. Matching handle (or an
    already verified id): the verified id is refreshed. Anything else fails
    closed and nothing is re-linked.
    """
    if user.platform == DISCORD:
        handle_attr, id_attr = "manager_discord_username", "manager_discord_id"
        stored_form = normalize_handle(user.handle) or None
    else:
        handle_attr, id_attr = "manager_telegram", "manager_chat_id"
        stored_form = format_handle(user.handle)

    stored_handle = getattr(event, handle_attr)
    stored_id = getattr(event, id_attr)
    user_id = str(user.user_id)

    if not stored_handle and not stored_id:
        if stored_form:
            setattr(event, handle_attr, stored_form)
        setattr(event, id_attr, user_id)
        logger.info("Manager claimed for event %s by %s user %s (%s)", event.slug, user.platform, user_id, user.handle)
        return True

    if stored_id and stored_id == user_id:
        return True

    if stored_handle and user.handle and normalize_handle(stored_handle) == normalize_handle(user.handle):
        setattr(event, id_attr, user_id)
        logger.info("Manager verified for event %s: %s user %s", event.slug, user.platform, user_id)
        return True

    logger.warning(
        "Manager identity mismatch for event %s: stored %s/%s, sender %s/%s on %s",
        event.slug, stored_handle, stored_id, user.handle, user_id, user.platform,
    )
    return False


# ---------------------------------------------------------------------------
# Handle-based recovery
# ---------------------------------------------------------------------------

def recover_manager_link(db: Session, slug: str, handle: str, sync) -> dict:
    """DM a fresh admin link to the verified Telegram manager of ``slug``."""
    event = get_event_or_404(db, slug)
    if not event.manager_telegram:
        raise HTTPException(status_code=404, detail="No manager linked to this event.")

    if normalize_handle(event.manager_telegram) != normalize_handle(handle):
        logger.warning("Manager recovery failed for %s: handle %r does not match", slug, handle)
        raise HTTPException(status_code=403, detail="Telegram handle does not match our records.")

    if not event.manager_chat_id:
        return {
            "success": False,
            "error": "UNLINKED",
            "message": "Handle matched, but the bot hasn't connected with you yet. Please open the bot and click 'Start' first.",
            "deep_link": links.bot_deep_link("recover_handle"),
        }

    link = issue_admin_link(db, event, sync.base_url)
    db.commit()
    sync.direct_message(TELEGRAM, event.manager_chat_id, messages.admin_link_dm(event, link))
    logger.info("Manager recovery DM sent for event %s to chat %s", slug, event.manager_chat_id)
    return {"success": True, "message": "Recovery link sent to your Telegram DMs!"}


def recover_discord_manager_link(db: Session, slug: str, username: str, sync) -> dict:
    event = get_event_or_404(db, slug)
    if not event.manager_discord_username:
        raise HTTPException(status_code=404, detail="No Discord manager linked to this event.")

    if normalize_handle(event.manager_discord_username) != normalize_handle(username):
        logger.warning("Discord manager recovery failed for %s: username %r does not match", slug, username)
        raise HTTPException(status_code=403, detail="Discord username does not match our records.")

    if not event.manager_discord_id:
        return {
            "success": False,
            "error": "UNLINKED",
            "message": "Username matched, but we have no verified Discord account for it yet.",
        }

    link = issue_admin_link(db, event, sync.base_url)
    db.commit()
    sync.direct_message(DISCORD, event.manager_discord_id, messages.admin_link_dm(event, link))
    logger.info("Manager recovery DM sent for event %s to Discord user %s", slug, event.manager_discord_id)
    return {"success": True, "message": "Recovery link sent to your Discord DMs!"}


def dm_manager_link(db: Session, slug: str, sync) -> dict:
    """Send the admin link straight to whichever manager account is verified."""
    event = get_event_or_404(db, slug)
    if not event.manager_chat_id and not event.manager_discord_id:
        raise HTTPException(status_code=409, detail="Bot doesn't know you yet. Please start the bot first!")

    link = issue_admin_link(db, event, sync.base_url)
    db.commit()
    html = messages.admin_link_dm(event, link)
    sent = False
    if event.manager_chat_id:
        sent = sync.direct_message(TELEGRAM, event.manager_chat_id, html)
    if not sent and event.manager_discord_id:
        sent = sync.direct_message(DISCORD, event.manager_discord_id, html)
    logger.info("Manager link DM for event %s delivered: %s", slug, sent)
    return {"success": sent}


# ---------------------------------------------------------------------------
# Global login links
# ---------------------------------------------------------------------------

def known_chat_id(db: Session, handle: Optional[str]) -> Optional[str]:
    """Verified Telegram id already on file for ``handle`` (participants first, then managers)."""
    stored = format_handle(handle)
    if not stored:
        return None
    participant = (
        db.query(Participant)
        .filter(Participant.telegram_id == stored, Participant.chat_id.isnot(None))
        .first()
    )
    if participant:
        return participant.chat_id
    event = db.query(Event).filter(Event.manager_telegram == stored, Event.manager_chat_id.isnot(None)).first()
    return event.manager_chat_id if event else None


def known_discord_id(db: Session, username: Optional[str]) -> Optional[str]:
    clean = normalize_handle(username)
    if not clean:
        return None
    participant = (
        db.query(Participant)
        .filter(Participant.discord_username == clean, Participant.discord_id.isnot(None))
        .first()
    )
    if participant:
        return participant.discord_id
    event = (
        db.query(Event)
        .filter(Event.manager_discord_username == clean, Event.manager_discord_id.isnot(None))
        .first()
    )
    return event.manager_discord_id if event else None


def verified_discord_id(identity: Optional[dict], username: Optional[str]) -> Optional[str]:
    """Discord id from the signed login identity, only for the username it was issued to."""
    if not identity or not identity.get("discord_id"):
        return None
    clean = normalize_handle(username)
    if not clean or normalize_handle(identity.get("discord_username")) != clean:
        return None
    return str(identity["discord_id"])


def issue_login_token(
    db: Session,
    chat_id: Optional[str] = None,
    discord_id: Optional[str] = None,
    discord_username: Optional[str] = None,
) -> str:
    """Return a raw login token for the identity. Caller commits.

    An unexpired token with enough time left is reused (keeping its expiry)
    but rotated, since only its hash is stored.
    """
    now = utcnow()
    query = db.query(LoginToken)
    if chat_id:
        query = query.filter(LoginToken.chat_id == str(chat_id))
    else:
        query = query.filter(LoginToken.discord_id == str(discord_id))
    candidates = query.order_by(LoginToken.expires_at.desc()).all()

    raw = new_long_token()
    for existing in candidates:
        if ensure_utc(existing.expires_at) - now > LOGIN_TOKEN_MIN_REMAINING:
            existing.token_hash = hash_token(raw)
            return raw

    db.add(LoginToken(
        token_hash=hash_token(raw),
        chat_id=str(chat_id) if chat_id else None,
        discord_id=str(discord_id) if discord_id else None,
        discord_username=discord_username,
        expires_at=now + LOGIN_TOKEN_TTL,
    ))
    return raw


def redeem_login_token(db: Session, raw: Optional[str]) -> Optional[dict]:
    """Identity for a valid login token. Not consumed: link previews may fetch it first."""
    if not raw:
        return None
    token = db.query(LoginToken).filter(LoginToken.token_hash == hash_token(raw)).first()
    if token is None or ensure_utc(token.expires_at) < utcnow():
        logger.warning("Login token rejected (unknown or expired)")
        return None
    identity = {}
    if token.chat_id:
        identity["chat_id"] = token.chat_id
    if token.discord_id:
        identity["discord_id"] = token.discord_id
        identity["discord_username"] = token.discord_username
    logger.info("Login token redeemed for %s", identity)
    return identity


def _handle_on_file(db: Session, handle: str) -> bool:
    stored = format_handle(handle)
    return (
        db.query(Participant).filter(Participant.telegram_id == stored).first() is not None
        or db.query(Event).filter(Event.manager_telegram == stored).first() is not None
    )


def send_global_magic_link(db: Session, handle: str, sync) -> dict:
    if len(normalize_handle(handle)) < 2:
        raise HTTPException(status_code=400, detail="Please enter a valid Telegram handle.")

    chat_id = known_chat_id(db, handle)
    if chat_id:
        raw = issue_login_token(db, chat_id=chat_id)
        db.commit()
        sync.direct_message(TELEGRAM, chat_id, messages.login_dm(links.login_url(sync.base_url, raw)))
        logger.info("Magic login link sent to chat %s", chat_id)
        return {"success": True, "message": "Magic Link sent to your Telegram DMs!"}

    if _handle_on_file(db, handle):
        return {
            "success": False,
            "error": "UNLINKED",
            "message": "We found your events, but the bot hasn't verified you yet.",
            "deep_link": links.bot_deep_link("recover_handle"),
        }
    raise HTTPException(status_code=404, detail="No events found for this handle.")


def send_discord_magic_login(db: Session, username: str, sync) -> dict:
    clean = normalize_handle(username)
    if len(clean) < 2:
        raise HTTPException(status_code=400, detail="Please enter a valid Discord username.")

    discord_id = known_discord_id(db, clean)
    if not discord_id:
        raise HTTPException(status_code=404, detail="No verified Discord account found for this username.")

    raw = issue_login_token(db, discord_id=discord_id, discord_username=clean)
    db.commit()
    sent = sync.direct_message(DISCORD, discord_id, messages.login_dm(links.login_url(sync.base_url, raw)))
    if not sent:
        return {"success": False, "error": "DM_FAILED", "message": "We couldn't DM you. Check your Discord privacy settings."}
    return {"success": True, "message": "Magic Link sent to your Discord DMs!"}


# ---------------------------------------------------------------------------
# Passive capture
# ---------------------------------------------------------------------------

def capture_identity(db: Session, platform: str, user_id: str, handle: Optional[str]) -> dict[str, int]:
    """Attach a newly observed platform id to records declared with the same handle."""
    counts = {"participants": 0, "managers": 0}
    if not handle or not user_id:
        return counts
    user_id = str(user_id)

    if platform == DISCORD:
        clean = normalize_handle(handle)
        counts["participants"] = (
            db.query(Participant)
            .filter(Participant.discord_username == clean, Participant.discord_id.is_(None))
            .update({Participant.discord_id: user_id}, synchronize_session=False)
        )
        counts["managers"] = (
            db.query(Event)
            .filter(Event.manager_discord_username == clean, Event.manager_discord_id.is_(None))
            .update({Event.manager_discord_id: user_id}, synchronize_session=False)
        )
    else:
        stored = format_handle(handle)
        counts["participants"] = (
            db.query(Participant)
            .filter(Participant.telegram_id == stored, Participant.chat_id.is_(None))
            .update({Participant.chat_id: user_id}, synchronize_session=False)
        )
        counts["managers"] = (
            db.query(Event)
            .filter(Event.manager_telegram == stored, Event.manager_chat_id.is_(None))
            .update({Event.manager_chat_id: user_id}, synchronize_session=False)
        )

    if counts["participants"] or counts["managers"]:
        db.commit()
        logger.info("Passive capture linked %s user %s (%s): %s", platform, user_id, handle, counts)
    return counts
