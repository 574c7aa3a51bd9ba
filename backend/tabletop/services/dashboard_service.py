"""Dashboard synchronization: one pinned, edited-in-place message per chat surface.

Lifecycle per connected surface:
- no stored dashboard id → send, store, pin
- stored id → edit in place; if the platform says the message is gone, send
  again, pin again and store the new id
- finalize → retire the dashboard (delete or unpin, per platform) and pin a
  finalized announcement, which later location edits update in place

Stored message ids are written onto the Event instance; callers commit them.
Surface failures are logged and swallowed: chat delivery never fails the
action that triggered it.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from fastapi import Request

from tabletop.integrations.chat_surface import ChatSurface, MessageNotFound, MissingPermission, SurfaceError
from tabletop.integrations.registry import build_surfaces
from tabletop.models.participant import ParticipantStatus
from tabletop.services import links, messages
from tabletop.services.resolution import waitlist_order

logger = logging.getLogger(__name__)

# platform -> (chat column, dashboard id column, announcement id column)
SURFACE_COLUMNS = {
    "telegram": ("telegram_chat_id", "telegram_message_id", "telegram_announcement_id"),
    "discord": ("discord_channel_id", "discord_message_id", "discord_announcement_id"),
}


@dataclass
class SurfaceTarget:
    surface: ChatSurface
    chat_id: str
    dashboard_attr: str
    announcement_attr: str

    @property
    def platform(self) -> str:
        return self.surface.platform


def roster(event) -> tuple[list[str], list[str]]:
    """Accepted and waitlisted participant names, waitlist in promotion order."""
    accepted = [p.name for p in event.participants if p.status == ParticipantStatus.accepted]
    waiting = sorted(
        (p for p in event.participants if p.status == ParticipantStatus.waitlist),
        key=waitlist_order,
    )
    return accepted, [p.name for p in waiting]


class DashboardSync:
    def __init__(self, surfaces: dict[str, ChatSurface], base_url: Optional[str] = None):
        self.surfaces = surfaces
        self.base_url = base_url or links.default_base_url()

    def targets(self, event, platforms: Optional[Iterable[str]] = None) -> list[SurfaceTarget]:
        found = []
        for platform, (chat_attr, dashboard_attr, announcement_attr) in SURFACE_COLUMNS.items():
            if platforms is not None and platform not in platforms:
                continue
            surface = self.surfaces.get(platform)
            chat_id = getattr(event, chat_attr)
            if surface is None or not chat_id:
                continue
            found.append(SurfaceTarget(surface, str(chat_id), dashboard_attr, announcement_attr))
        return found

    def _guarded(self, target: SurfaceTarget, action: str, fn: Callable, *args):
        try:
            return fn(*args)
        except SurfaceError as exc:
            logger.warning("%s failed on %s chat %s: %s", action, target.platform, target.chat_id, exc)
            return None

    def _pin(self, target: SurfaceTarget, message_id: str) -> None:
        try:
            target.surface.pin(target.chat_id, message_id)
        except MissingPermission as exc:
            logger.warning("Cannot pin on %s chat %s: %s", target.platform, target.chat_id, exc)
            self._guarded(
                target, "pin warning", target.surface.send,
                target.chat_id, target.surface.render(messages.pin_permission_warning()),
            )
        except SurfaceError as exc:
            logger.warning("Pin failed on %s chat %s: %s", target.platform, target.chat_id, exc)

    def _send_and_pin(self, target: SurfaceTarget, text: str) -> str:
        message_id = target.surface.send(target.chat_id, text)
        self._pin(target, message_id)
        return message_id

    def _quiet(self, call: Callable, *args) -> None:
        """Cleanup call where a vanished message is already the desired state."""
        try:
            call(*args)
        except MessageNotFound:
            pass

    # -- status dashboard --------------------------------------------------

    def sync_status(self, event) -> None:
        html = messages.status_dashboard(event, self.base_url)
        for target in self.targets(event):
            self._guarded(target, "status sync", self._sync_status_on, target, event, html)

    def _sync_status_on(self, target: SurfaceTarget, event, html: str) -> None:
        text = target.surface.render(html)
        message_id = getattr(event, target.dashboard_attr)
        if message_id:
            try:
                target.surface.edit(target.chat_id, message_id, text)
                return
            except MessageNotFound:
                logger.info(
                    "Dashboard %s for event %s vanished on %s; sending a new one",
                    message_id, event.slug, target.platform,
                )
        setattr(event, target.dashboard_attr, self._send_and_pin(target, text))

    # -- finalized announcement --------------------------------------------

    def announce_finalized(self, event, attendees: Optional[list[str]] = None, waitlist: Optional[list[str]] = None) -> None:
        if attendees is None or waitlist is None:
            attendees, waitlist = roster(event)
        html = messages.finalized_announcement(event, event.finalized_slot, self.base_url, attendees, waitlist)
        for target in self.targets(event):
            self._guarded(target, "finalize announcement", self._announce_finalized_on, target, event, html)

    def _announce_finalized_on(self, target: SurfaceTarget, event, html: str) -> None:
        dashboard_id = getattr(event, target.dashboard_attr)
        if dashboard_id:
            retire = target.surface.delete if target.surface.retires_by_delete else target.surface.unpin
            self._guarded(target, "dashboard retirement", self._quiet, retire, target.chat_id, dashboard_id)
            setattr(event, target.dashboard_attr, None)
        setattr(event, target.announcement_attr, self._send_and_pin(target, target.surface.render(html)))

    def refresh_announcement(self, event) -> None:
        """Re-render the finalized announcement in place (roster or location changed)."""
        attendees, waitlist = roster(event)
        html = messages.finalized_announcement(event, event.finalized_slot, self.base_url, attendees, waitlist)
        for target in self.targets(event):
            self._guarded(target, "announcement refresh", self._refresh_announcement_on, target, event, html)

    def _refresh_announcement_on(self, target: SurfaceTarget, event, html: str) -> None:
        text = target.surface.render(html)
        message_id = getattr(event, target.announcement_attr)
        if message_id:
            try:
                target.surface.edit(target.chat_id, message_id, text)
                return
            except MessageNotFound:
                logger.info("Announcement %s for event %s vanished on %s", message_id, event.slug, target.platform)
        setattr(event, target.announcement_attr, self._send_and_pin(target, text))

    # -- cancel / delete ---------------------------------------------------

    def announce_cancelled(self, event, was_finalized: bool) -> None:
        pinned_html = messages.cancelled_pinned(event, was_finalized)
        notice_html = messages.cancelled_notice(event)
        for target in self.targets(event):
            pinned_id = getattr(event, target.announcement_attr) or getattr(event, target.dashboard_attr)
            if pinned_id:
                # Edits are silent, so the plain notice below is what alerts members
                self._guarded(
                    target, "cancel edit", self._quiet, target.surface.edit,
                    target.chat_id, pinned_id, target.surface.render(pinned_html),
                )
            self._guarded(target, "cancel notice", target.surface.send, target.chat_id, target.surface.render(notice_html))

    def announce_deleted(self, event) -> None:
        html = messages.deleted_notice(event)
        for target in self.targets(event):
            self._unpin_target(target, event)
            self._guarded(target, "removal notice", target.surface.send, target.chat_id, target.surface.render(html))

    def unpin_all(self, event) -> None:
        """Silently release every pinned message of the event (retention cleanup)."""
        for target in self.targets(event):
            self._unpin_target(target, event)

    def _unpin_target(self, target: SurfaceTarget, event) -> None:
        for attr in (target.dashboard_attr, target.announcement_attr):
            message_id = getattr(event, attr)
            if message_id:
                self._guarded(target, "unpin", self._quiet, target.surface.unpin, target.chat_id, message_id)

    # -- one-shot messages -------------------------------------------------

    def broadcast(self, event, html: str, platforms: Optional[Iterable[str]] = None) -> int:
        """Plain unpinned message to every connected surface; returns how many went out."""
        sent = 0
        for target in self.targets(event, platforms):
            if self._guarded(target, "broadcast", target.surface.send, target.chat_id, target.surface.render(html)):
                sent += 1
        return sent

    def post(self, platform: str, chat_id: str, html: str) -> Optional[str]:
        """Send into a chat that is not (yet) stored on an event."""
        surface = self.surfaces.get(platform)
        if surface is None:
            return None
        try:
            return surface.send(chat_id, surface.render(html))
        except SurfaceError as exc:
            logger.warning("Message to %s chat %s failed: %s", platform, chat_id, exc)
            return None

    def direct_message(self, platform: str, user_id: Optional[str], html: str) -> bool:
        surface = self.surfaces.get(platform)
        if surface is None or not user_id:
            return False
        try:
            dm_chat = surface.open_dm(str(user_id))
            surface.send(dm_chat, surface.render(html))
        except SurfaceError as exc:
            logger.warning("DM to %s user %s failed: %s", platform, user_id, exc)
            return False
        return True

    def notify_participant(self, participant, html: str) -> bool:
        """DM a participant on whichever platform has a verified id for them."""
        if participant.chat_id and self.direct_message("telegram", participant.chat_id, html):
            return True
        if participant.discord_id and self.direct_message("discord", participant.discord_id, html):
            return True
        return False

    # -- connect flows -----------------------------------------------------

    def connect_telegram(self, event, chat_id: str) -> None:
        chat_id = str(chat_id)
        if event.telegram_chat_id and event.telegram_chat_id != chat_id:
            self._forget_surface(event, "telegram")
        event.telegram_chat_id = chat_id
        self.publish(event)

    def connect_discord(self, event, guild_id: str, channel_id: str) -> None:
        channel_id = str(channel_id)
        if event.discord_channel_id and event.discord_channel_id != channel_id:
            self._forget_surface(event, "discord")
        event.discord_guild_id = str(guild_id)
        event.discord_channel_id = channel_id
        self.post("discord", channel_id, messages.planning_announcement(event, self.base_url))
        self.publish(event)

    def publish(self, event) -> None:
        """Bring every surface up to date with the event's current state."""
        if event.finalized_slot_id is not None:
            self.refresh_announcement(event)
        else:
            self.sync_status(event)

    def _forget_surface(self, event, platform: str) -> None:
        # Moving to another chat: unpin in the old one, start fresh in the new one
        for target in self.targets(event, [platform]):
            self._unpin_target(target, event)
        _, dashboard_attr, announcement_attr = SURFACE_COLUMNS[platform]
        setattr(event, dashboard_attr, None)
        setattr(event, announcement_attr, None)


def get_dashboard_sync(request: Request) -> DashboardSync:
    return DashboardSync(build_surfaces(), links.resolve_base_url(request.headers))
