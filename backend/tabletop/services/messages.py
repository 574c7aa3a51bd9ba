"""Chat message builders.

Every builder returns Telegram-flavoured HTML; Discord renders it to
Markdown at send time. User-supplied text is escaped here.
"""
from datetime import datetime
from html import escape
from typing import Optional

import pytz

from tabletop.clock import ensure_utc
from tabletop.models.vote import VotePreference
from tabletop.services import links
from tabletop.services.resolution import check_slot_quorum


def _tz(name: Optional[str]):
    try:
        return pytz.timezone(name or "UTC")
    except pytz.UnknownTimeZoneError:
        return pytz.utc


def format_date(value: datetime, tz_name: Optional[str]) -> str:
    local = ensure_utc(value).astimezone(_tz(tz_name))
    return f"{local:%a, %b} {local.day}"


def format_time(value: datetime, tz_name: Optional[str]) -> str:
    local = ensure_utc(value).astimezone(_tz(tz_name))
    return local.strftime("%I:%M %p %Z")


def status_dashboard(event, base_url: str) -> str:
    """Live per-slot summary; a star marks slots that are a perfect match."""
    total = len(event.participants)
    lines = [
        f"📊 <b>{escape(event.title)}</b>",
        "",
        f"👥 <b>Participants:</b> {total}",
        "",
        "<b>Current Votes:</b>",
    ]
    for slot in event.time_slots:
        yes = sum(1 for v in slot.votes if v.preference == VotePreference.yes)
        maybe = sum(1 for v in slot.votes if v.preference == VotePreference.maybe)
        prefix = "🌟 " if check_slot_quorum(slot.votes, event.min_players, total).perfect else "▫️ "
        when = f"{format_date(slot.start_time, event.timezone)} @ {format_time(slot.start_time, event.timezone)}"
        lines.append(f"{prefix}<b>{when}</b>")
        lines.append(f"   ✅ {yes}  ⚠️ {maybe}")
    lines.append("")
    lines.append(f'<a href="{links.event_url(base_url, event.slug)}">🔗 Vote Here</a>')
    return "\n".join(lines)


def planning_announcement(event, base_url: str) -> str:
    text = f"📅 <b>New event:</b> {escape(event.title)}"
    if event.description:
        text += f"\n\n{escape(event.description)}"
    text += f'\n\n<a href="{links.event_url(base_url, event.slug)}">🗳️ Vote on a time</a>'
    return text


def finalized_announcement(event, slot, base_url: str, attendees: list[str], waitlist: list[str]) -> str:
    host = event.finalized_host
    parts = [
        "🎉 <b>Event Finalized!</b>",
        "",
        f"<b>{escape(event.title)}</b> is happening on:",
        f"📅 {format_date(slot.start_time, event.timezone)}",
        f"⏰ {format_time(slot.start_time, event.timezone)}",
    ]
    if host is not None:
        parts.append(f"🏠 Hosted by <b>{escape(host.name)}</b>")
    if event.location:
        parts.append(f"📍 {escape(event.location)}")
    text = "\n".join(parts)

    # Rosters only matter once someone is left out
    if waitlist:
        text += "\n\n👥 <b>Attendees:</b>\n" + "\n".join(f"- {escape(name)}" for name in attendees)
        text += "\n\n⚠️ <b>Waitlist (Next Up):</b>\n" + "\n".join(f"- {escape(name)}" for name in waitlist)

    text += f'\n\n<a href="{links.event_url(base_url, event.slug)}">🔗 View Event Details</a>\n\nSee you there!'
    return text


def cancelled_pinned(event, was_finalized: bool) -> str:
    previous = "Finalized" if was_finalized else "Planned"
    return (
        f"🚫 <b>Event Cancelled</b> (was: {previous})\n\n"
        f'The event "<b>{escape(event.title)}</b>" has been cancelled by the host.'
    )


def cancelled_notice(event) -> str:
    return f'🚫 <b>Event Cancelled</b>\n\nThe event "{escape(event.title)}" has been cancelled by the organizer.'


def deleted_notice(event) -> str:
    return f'🗑️ <b>Event Removed</b>\n\nThe event "{escape(event.title)}" has been removed by the organizer.'


def activity_notice(event, voter_name: str) -> str:
    return f"🚀 <b>{escape(voter_name)}</b> just updated their availability for <b>{escape(event.title)}</b>!"


def reminder(event, base_url: str) -> str:
    return (
        f"🔔 <b>Reminder</b>\n\nPlease cast your votes for <b>{escape(event.title)}</b>!\n\n"
        f'👉 <a href="{links.event_url(base_url, event.slug)}">Vote Here</a>'
    )


def quorum_perfect_alert(event, base_url: str) -> str:
    return (
        f"🌟 <b>Perfect Match Found</b> for <b>{escape(event.title)}</b>!\n\n"
        "Everyone can make it and you have a host!\n\n"
        f'👉 <a href="{links.manage_url(base_url, event.slug)}">Finalize Now</a>'
    )


def quorum_viable_alert(event, base_url: str) -> str:
    return (
        f"🎉 <b>Viable Quorum Reached</b> for <b>{escape(event.title)}</b>!\n\n"
        "You have enough players for a game.\n\n"
        f'👉 <a href="{links.manage_url(base_url, event.slug)}">Manage Event</a>'
    )


def accepted_dm(event, base_url: str) -> str:
    return (
        f"🎟️ <b>You made the cut!</b>\n\nYou are confirmed for <b>{escape(event.title)}</b>.\n"
        f'<a href="{links.event_url(base_url, event.slug)}">View Details</a>'
    )


def waitlisted_dm(event) -> str:
    return (
        f"⚠️ <b>Event Full</b>\n\nYou are on the <b>Waitlist</b> for <b>{escape(event.title)}</b>.\n"
        "We'll let you know if a spot opens up!"
    )


def promoted_dm(event, base_url: str) -> str:
    return (
        f"🎟️ <b>A spot opened up!</b>\n\nYou moved off the waitlist and are now confirmed for "
        f'<b>{escape(event.title)}</b>.\n<a href="{links.event_url(base_url, event.slug)}">View Details</a>'
    )


def admin_link_dm(event, link: str) -> str:
    return f"🔑 <b>Manager Link Recovery</b>\n\nClick here to manage <b>{escape(event.title)}</b>:\n{link}"


def login_dm(link: str) -> str:
    return (
        "🔐 <b>Magic Login Requested</b>\n\n"
        "Someone (hopefully you) requested a link to view all your events.\n\n"
        f'👉 <a href="{link}">Click here to Login</a>\n\n(Valid for 15 minutes)'
    )


def pin_permission_warning() -> str:
    return (
        "⚠️ I tried to pin the message above, but I don't have permission. "
        "Please give me the <b>Pin Messages</b> (Manage Messages) right!"
    )


def connected_confirmation(event) -> str:
    return f"✅ Connected <b>{escape(event.title)}</b> to this chat. I'll keep the status pinned here."


def connect_usage() -> str:
    return "Usage: <code>/connect &lt;event-code&gt;</code> or paste the event link."


def event_not_found() -> str:
    return "❌ I couldn't find that event. Double-check the link or code."


def manager_mismatch() -> str:
    return "⛔ This event is managed by someone else. Only the organizer can connect or recover it."


def recovery_confirmed(event, link: str) -> str:
    return (
        f"✅ <b>Identity verified</b> for <b>{escape(event.title)}</b>.\n\n"
        f'👉 <a href="{link}">Open the manager dashboard</a>'
    )


def recovery_invalid() -> str:
    return "❌ This recovery code is invalid or has expired. Generate a new one from the event page."


def login_unavailable() -> str:
    return "I couldn't tell who sent that. Open a private chat with me and press <b>Start</b> again."


def username_required() -> str:
    return "⚠️ Could not verify identity. Please set a Telegram username and try the link again."


def welcome() -> str:
    return (
        "👋 Hi! Add me to a group and send <code>/connect &lt;event-code&gt;</code> "
        "to post a live voting dashboard there."
    )
