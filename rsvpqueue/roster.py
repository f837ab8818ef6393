"""In-memory roster model shared by the engine, projector and sweep."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, Sequence

from .utils import normalize_email, normalize_identity, normalize_phone


class InviteeStatus(str, Enum):
    PENDING = "pending"
    INVITED = "invited"
    ACCEPTED = "accepted"
    DECLINED = "declined"

    @property
    def is_terminal(self) -> bool:
        return self in (InviteeStatus.ACCEPTED, InviteeStatus.DECLINED)


class InviteMode(str, Enum):
    PRIORITY = "priority"
    FIRST_COME_FIRST_SERVE = "first-come-first-serve"


class RsvpAction(str, Enum):
    CONFIRM = "confirm"
    DECLINE = "decline"


@dataclass(frozen=True)
class Invitee:
    name: str
    priority: int
    status: InviteeStatus = InviteeStatus.PENDING
    email: str | None = None
    phone: str | None = None
    invited_at: datetime | None = None
    responded_at: datetime | None = None
    id: str | None = None

    @property
    def identity(self) -> str:
        """Primary identity used in outbound links: email when present, else phone."""
        identity = normalize_email(self.email) or normalize_phone(self.phone)
        if identity is None:
            raise ValueError(f"Invitee {self.name!r} has neither email nor phone")
        return identity

    def matches(self, identity: str | None) -> bool:
        target = normalize_identity(identity)
        if target is None:
            return False
        return target in (normalize_email(self.email), normalize_phone(self.phone))


@dataclass(frozen=True)
class EventSnapshot:
    """A point-in-time read of one event and its roster.

    ``version`` is the persisted roster version observed at read time; writes
    derived from this snapshot must be conditional on it.
    """

    event_id: str
    invite_mode: InviteMode
    spots: int
    auto_promote_after_minutes: int
    scheduled_at: datetime
    invitees: tuple[Invitee, ...] = field(default_factory=tuple)
    version: int = 0

    def find(self, identity: str) -> Invitee | None:
        return find_invitee(self.invitees, identity)


def find_invitee(roster: Iterable[Invitee], identity: str | None) -> Invitee | None:
    for invitee in roster:
        if invitee.matches(identity):
            return invitee
    return None


def count_with_status(roster: Iterable[Invitee], status: InviteeStatus) -> int:
    return sum(1 for invitee in roster if invitee.status is status)


def next_pending(
    roster: Iterable[Invitee], *, after_priority: int | None = None
) -> Invitee | None:
    """Return the pending invitee with the smallest priority.

    With ``after_priority`` only priorities strictly greater than it qualify.
    """
    candidates = [
        invitee
        for invitee in roster
        if invitee.status is InviteeStatus.PENDING
        and (after_priority is None or invitee.priority > after_priority)
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda invitee: invitee.priority)


def validate_event_settings(
    *,
    spots: int,
    auto_promote_after_minutes: int,
    min_minutes: int,
    max_minutes: int,
) -> None:
    if spots < 1:
        raise ValueError("spots must be at least 1")
    if not min_minutes <= auto_promote_after_minutes <= max_minutes:
        raise ValueError(
            f"auto_promote_after_minutes must be between {min_minutes} and {max_minutes}"
        )


def build_initial_roster(
    invitees: Sequence[Invitee], invite_mode: InviteMode, *, now: datetime
) -> list[Invitee]:
    """Assign starting statuses for a freshly created event.

    Everyone starts ``invited`` in first-come-first-serve mode; in priority
    mode only the lowest priority is ``invited`` and the rest wait as
    ``pending``.
    """
    if not invitees:
        return []
    seen_priorities: set[int] = set()
    seen_identities: set[str] = set()
    for invitee in invitees:
        if not (normalize_email(invitee.email) or normalize_phone(invitee.phone)):
            raise ValueError(f"Invitee {invitee.name!r} needs an email or a phone number")
        if invitee.priority in seen_priorities:
            raise ValueError(f"Duplicate priority {invitee.priority}")
        seen_priorities.add(invitee.priority)
        for key in (normalize_email(invitee.email), normalize_phone(invitee.phone)):
            if key is None:
                continue
            if key in seen_identities:
                raise ValueError(f"Duplicate invitee {key}")
            seen_identities.add(key)

    ordered = sorted(invitees, key=lambda invitee: invitee.priority)
    if invite_mode is InviteMode.FIRST_COME_FIRST_SERVE:
        return [
            replace(invitee, status=InviteeStatus.INVITED, invited_at=now, responded_at=None)
            for invitee in ordered
        ]
    first, rest = ordered[0], ordered[1:]
    return [
        replace(first, status=InviteeStatus.INVITED, invited_at=now, responded_at=None)
    ] + [
        replace(invitee, status=InviteeStatus.PENDING, invited_at=None, responded_at=None)
        for invitee in rest
    ]
