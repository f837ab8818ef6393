"""RSVP decision engine.

Pure functions only: given a roster snapshot and an action, work out whether
the action is legal and what the roster should look like afterwards. Nothing
here touches the database or sends notifications.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Sequence

from .roster import (
    InviteMode,
    Invitee,
    InviteeStatus,
    RsvpAction,
    find_invitee,
    next_pending,
)


class RsvpErrorKind(str, Enum):
    NOT_FOUND = "not-found"
    ALREADY_ACCEPTED = "already-accepted"
    ALREADY_DECLINED = "already-declined"
    EVENT_FULL = "event-full"

    @property
    def is_informational(self) -> bool:
        """Duplicate responses and capacity rejections are outcomes, not faults."""
        return self is not RsvpErrorKind.NOT_FOUND


@dataclass(frozen=True)
class Verdict:
    success: bool
    action: RsvpAction
    target: Invitee | None = None
    new_status: InviteeStatus | None = None
    error: RsvpErrorKind | None = None
    message: str | None = None
    should_promote_next: bool = False
    promoted_invitee: Invitee | None = None
    is_event_full: bool | None = None
    spots_remaining: int | None = None

    def as_dict(self) -> dict:
        payload: dict = {"success": self.success, "action": self.action.value}
        if self.success:
            payload["new_status"] = self.new_status.value if self.new_status else None
        else:
            payload["error"] = self.error.value if self.error else None
            payload["message"] = self.message
        if self.action is RsvpAction.CONFIRM:
            payload["is_event_full"] = self.is_event_full
            payload["spots_remaining"] = self.spots_remaining
        elif self.success:
            payload["should_promote_next"] = self.should_promote_next
            payload["promoted_invitee"] = (
                self.promoted_invitee.name if self.promoted_invitee else None
            )
        return payload


@dataclass(frozen=True)
class InviteeChange:
    before: Invitee
    after: Invitee


@dataclass(frozen=True)
class RosterDelta:
    """Transitions to persist after a decision or a sweep pass."""

    changes: tuple[InviteeChange, ...] = field(default_factory=tuple)

    @property
    def newly_invited(self) -> list[Invitee]:
        return [
            change.after
            for change in self.changes
            if change.after.status is InviteeStatus.INVITED
            and change.before.status is not InviteeStatus.INVITED
        ]

    @property
    def newly_accepted(self) -> list[Invitee]:
        return [
            change.after
            for change in self.changes
            if change.after.status is InviteeStatus.ACCEPTED
        ]

    def __bool__(self) -> bool:
        return bool(self.changes)


def _fail(action: RsvpAction, kind: RsvpErrorKind, message: str, **extra) -> Verdict:
    return Verdict(success=False, action=action, error=kind, message=message, **extra)


def _confirm(roster: Sequence[Invitee], target: Invitee, spots: int) -> Verdict:
    action = RsvpAction.CONFIRM
    accepted_count = sum(
        1
        for invitee in roster
        if invitee.status is InviteeStatus.ACCEPTED and invitee is not target
    )
    if accepted_count >= spots:
        if spots == 1:
            message = "This event has already been confirmed by another invitee"
        else:
            message = f"This event is full ({spots} spots filled)"
        return _fail(
            action,
            RsvpErrorKind.EVENT_FULL,
            message,
            target=target,
            is_event_full=True,
            spots_remaining=0,
        )
    if target.status is InviteeStatus.ACCEPTED:
        return _fail(
            action,
            RsvpErrorKind.ALREADY_ACCEPTED,
            "You have already accepted this invitation",
            target=target,
        )
    if target.status is InviteeStatus.DECLINED:
        return _fail(
            action,
            RsvpErrorKind.ALREADY_DECLINED,
            "You have already declined this invitation",
            target=target,
        )
    # Pending invitees may confirm too, in either mode.
    return Verdict(
        success=True,
        action=action,
        target=target,
        new_status=InviteeStatus.ACCEPTED,
        is_event_full=accepted_count + 1 >= spots,
        spots_remaining=spots - accepted_count - 1,
    )


def _decline(roster: Sequence[Invitee], target: Invitee, invite_mode: InviteMode) -> Verdict:
    action = RsvpAction.DECLINE
    if target.status is InviteeStatus.DECLINED:
        return _fail(
            action,
            RsvpErrorKind.ALREADY_DECLINED,
            "You have already declined this invitation",
            target=target,
        )
    if target.status is InviteeStatus.ACCEPTED:
        return _fail(
            action,
            RsvpErrorKind.ALREADY_ACCEPTED,
            "You have already accepted this invitation. Contact the organizer to cancel.",
            target=target,
        )
    if invite_mode is InviteMode.FIRST_COME_FIRST_SERVE:
        return Verdict(
            success=True,
            action=action,
            target=target,
            new_status=InviteeStatus.DECLINED,
            should_promote_next=False,
        )
    candidate = next_pending(roster, after_priority=target.priority)
    return Verdict(
        success=True,
        action=action,
        target=target,
        new_status=InviteeStatus.DECLINED,
        should_promote_next=candidate is not None,
        promoted_invitee=candidate,
    )


def decide(
    roster: Sequence[Invitee],
    target_identity: str,
    action: RsvpAction | str,
    invite_mode: InviteMode | str,
    spots: int,
) -> Verdict:
    """Decide the outcome of ``action`` by ``target_identity`` against ``roster``."""
    action = RsvpAction(action)
    invite_mode = InviteMode(invite_mode)
    target = find_invitee(roster, target_identity)
    if target is None:
        return _fail(action, RsvpErrorKind.NOT_FOUND, "Invitee not found")
    if action is RsvpAction.CONFIRM:
        return _confirm(roster, target, spots)
    return _decline(roster, target, invite_mode)


def apply_verdict(verdict: Verdict, *, now: datetime) -> RosterDelta:
    """Translate a successful verdict into the roster transitions to persist.

    The target moves to its new status with ``responded_at`` stamped; a
    promotion candidate moves to ``invited`` with a fresh ``invited_at``.
    Failed verdicts produce an empty delta.
    """
    if not verdict.success or verdict.target is None or verdict.new_status is None:
        return RosterDelta()
    target = verdict.target
    changes = [
        InviteeChange(
            before=target,
            after=replace(target, status=verdict.new_status, responded_at=now),
        )
    ]
    promoted = verdict.promoted_invitee
    if verdict.should_promote_next and promoted is not None:
        changes.append(
            InviteeChange(
                before=promoted,
                after=replace(promoted, status=InviteeStatus.INVITED, invited_at=now),
            )
        )
    return RosterDelta(changes=tuple(changes))
