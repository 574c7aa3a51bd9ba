"""Telegram update handling shared by the long-poller and the webhook route."""
import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tabletop.bot import commands
from tabletop.bot.commands import Command, parse_command
from tabletop.models.event import Event
from tabletop.services import identity_service, links, messages
from tabletop.services.dashboard_service import DashboardSync
from tabletop.services.identity_service import PlatformUser

logger = logging.getLogger(__name__)

TELEGRAM = identity_service.TELEGRAM


class BotHandler:
    """Routes one Telegram update to the identity and dashboard services."""

    def __init__(self, sync: DashboardSync):
        self.sync = sync

    def reply(self, chat_id, html: str) -> None:
        self.sync.post(TELEGRAM, str(chat_id), html)

    def handle_update(self, db: Session, update: dict[str, Any]) -> None:
        message = update.get("message") or {}
        text = message.get("text")
        chat = message.get("chat") or {}
        if not text or "id" not in chat:
            return

        sender = message.get("from") or {}
        user = None
        if sender.get("id") is not None:
            user = PlatformUser(TELEGRAM, str(sender["id"]), sender.get("username"))
        chat_id = str(chat["id"])

        try:
            if user is not None and user.handle:
                identity_service.capture_identity(db, TELEGRAM, user.user_id, user.handle)

            command = parse_command(text)
            logger.debug("Update %s in chat %s parsed as %s", update.get("update_id"), chat_id, command.kind)
            self.dispatch(db, command, chat_id, chat.get("type"), user)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Database error while handling update %s", update.get("update_id"))
        except Exception:
            logger.exception("Error processing update %s", update.get("update_id"))

    def dispatch(self, db: Session, command: Command, chat_id: str, chat_type: Optional[str], user: Optional[PlatformUser]) -> None:
        if command.kind == commands.CONNECT:
            self.connect(db, command, chat_id, user)
        elif command.kind == commands.CONNECT_USAGE:
            self.reply(chat_id, messages.connect_usage())
        elif command.kind == commands.RECOVER_SETUP:
            self.recover(db, chat_id, user, command.token, slug=command.slug)
        elif command.kind == commands.RECOVER_SHORT:
            self.recover(db, chat_id, user, command.token)
        elif command.kind == commands.RECOVERY_INVALID:
            self.reply(chat_id, messages.recovery_invalid())
        elif command.kind == commands.LOGIN:
            self.login(db, chat_id, user)
        elif command.kind == commands.WELCOME and chat_type == "private":
            # Plain /start in a group stays silent
            self.reply(chat_id, messages.welcome())

    def connect(self, db: Session, command: Command, chat_id: str, user: Optional[PlatformUser]) -> None:
        event = db.query(Event).filter(Event.slug == command.slug).first()
        if event is None:
            logger.info("Connect for unknown event %s from chat %s", command.slug, chat_id)
            self.reply(chat_id, messages.event_not_found())
            return

        # The connection stands even when the sender is not the manager
        if user is not None:
            identity_service.claim_or_verify_manager(db, event, user)
        sync = DashboardSync(self.sync.surfaces, command.origin) if command.origin else self.sync
        sync.connect_telegram(event, chat_id)
        db.commit()
        logger.info("Connected event %s to Telegram chat %s", event.slug, chat_id)

    def recover(self, db: Session, chat_id: str, user: Optional[PlatformUser], token: str, slug: Optional[str] = None) -> None:
        if user is None or not user.handle:
            self.reply(chat_id, messages.username_required())
            return

        event = identity_service.consume_recovery_token(db, token, slug=slug)
        if event is None:
            self.reply(chat_id, messages.recovery_invalid())
            return

        if not identity_service.claim_or_verify_manager(db, event, user):
            db.rollback()
            self.reply(chat_id, messages.manager_mismatch())
            return

        link = identity_service.issue_admin_link(db, event, self.sync.base_url)
        db.commit()
        logger.info("Manager of %s recovered via Telegram user %s", event.slug, user.user_id)
        self.sync.direct_message(TELEGRAM, user.user_id, messages.recovery_confirmed(event, link))

    def login(self, db: Session, chat_id: str, user: Optional[PlatformUser]) -> None:
        if user is None:
            self.reply(chat_id, messages.login_unavailable())
            return
        raw = identity_service.issue_login_token(db, chat_id=user.user_id)
        db.commit()
        self.sync.direct_message(TELEGRAM, user.user_id, messages.login_dm(links.login_url(self.sync.base_url, raw)))
        logger.info("Login link sent to Telegram user %s", user.user_id)
