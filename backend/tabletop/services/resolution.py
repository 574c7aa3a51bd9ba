"""Resolution engine: quorum detection, seat allocation and waitlist promotion.

Pure functions over votes and participants; nothing here touches the
session or the network. Callers pass ORM rows (or any object with the same
attributes) and persist the outcome themselves.

Rules:
- Viable: YES + MAYBE >= min_players
- Perfect: everyone voted YES, someone can host, and there are enough people
- Seats go to YES voters first-come; MAYBE voters only fill up to min_players
- Waitlist order is YES before MAYBE, then first-come
"""
from dataclasses import dataclass, field
from typing import Iterable, Optional

from tabletop.clock import ensure_utc
from tabletop.models.participant import ParticipantStatus
from tabletop.models.vote import VotePreference

ALERT_PERFECT = "perfect"
ALERT_VIABLE = "viable"


@dataclass(frozen=True)
class QuorumResult:
    viable: bool
    perfect: bool


@dataclass
class Allocation:
    accepted: list = field(default_factory=list)
    waitlist: list = field(default_factory=list)


def _first_come(vote):
    return (ensure_utc(vote.created_at), vote.participant_id)


def check_slot_quorum(votes: Iterable, min_players: int, total_participants: int) -> QuorumResult:
    votes = list(votes)
    yes = sum(1 for v in votes if v.preference == VotePreference.yes)
    maybe = sum(1 for v in votes if v.preference == VotePreference.maybe)
    has_host = any(v.can_host for v in votes)

    viable = yes + maybe >= min_players
    perfect = yes == total_participants and has_host and total_participants >= min_players
    return QuorumResult(viable=viable, perfect=perfect)


def check_event_quorum(slots: Iterable, min_players: int, total_participants: int) -> QuorumResult:
    """Best case across all slots of an event."""
    viable = perfect = False
    for slot in slots:
        result = check_slot_quorum(slot.votes, min_players, total_participants)
        viable = viable or result.viable
        perfect = perfect or result.perfect
    return QuorumResult(viable=viable, perfect=perfect)


def quorum_alert(quorum: QuorumResult, viable_notified: bool, perfect_notified: bool) -> Optional[str]:
    """Decide which one-time manager alert (if any) a quorum change should fire.

    A perfect alert also counts as the viable alert, so a later drop from
    perfect to viable stays silent.
    """
    if quorum.perfect and not perfect_notified:
        return ALERT_PERFECT
    if quorum.viable and not quorum.perfect and not viable_notified and not perfect_notified:
        return ALERT_VIABLE
    return None


def allocate_seats(votes: Iterable, min_players: int, max_players: Optional[int]) -> Allocation:
    """Split the votes of the chosen slot into accepted and waitlisted voters."""
    votes = list(votes)
    yes = sorted((v for v in votes if v.preference == VotePreference.yes), key=_first_come)
    maybe = sorted((v for v in votes if v.preference == VotePreference.maybe), key=_first_come)

    accepted = list(yes) if max_players is None else yes[:max_players]
    spare_yes = yes[len(accepted):]

    # MAYBE voters are backup only: they never fill seats once min is met
    needed = min_players - len(accepted)
    taken_maybe = maybe[:needed] if needed > 0 else []
    accepted.extend(taken_maybe)

    waitlist = spare_yes + maybe[len(taken_maybe):]
    return Allocation(accepted=accepted, waitlist=waitlist)


def triage_vote(current_status, accepted_count: int, max_players: Optional[int]) -> ParticipantStatus:
    """Admission for a vote cast after the event was finalized.

    Acceptance is sticky: an already-accepted participant is never bumped.
    """
    if current_status == ParticipantStatus.accepted:
        return ParticipantStatus.accepted
    if max_players is None or accepted_count < max_players:
        return ParticipantStatus.accepted
    return ParticipantStatus.waitlist


def order_waitlist(participants: Iterable, slot_id) -> list:
    """Waitlist priority on the finalized slot: YES before MAYBE, then first-come."""
    def key(participant):
        vote = next((v for v in participant.votes if v.time_slot_id == slot_id), None)
        if vote is None:
            return (2, 0, participant.id)
        rank = 0 if vote.preference == VotePreference.yes else 1
        return (rank, ensure_utc(vote.created_at).timestamp(), participant.id)

    return sorted(participants, key=key)


def waitlist_order(participant):
    position = participant.waitlist_position
    return (position is None, position if position is not None else 0, participant.id)


def select_promotions(waitlist: Iterable, freed_seats: int) -> list:
    """First-come promotion in stored waitlist order."""
    if freed_seats <= 0:
        return []
    ordered = sorted(waitlist, key=waitlist_order)
    return ordered[:freed_seats]
