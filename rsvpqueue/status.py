"""Derive the dashboard badges for an event from its roster and the clock."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable

from .roster import Invitee, InviteeStatus
from .utils import ensure_aware, utcnow

APPROACHING_WINDOW = timedelta(hours=24)


class ConfirmationStatus(str, Enum):
    SCHEDULED = "scheduled"
    DECLINED = "declined"
    INVITED = "invited"
    NO_SHOW = "no-show"


class TimeStatus(str, Enum):
    APPROACHING = "approaching"
    UPCOMING = "upcoming"
    COMPLETED = "completed"


@dataclass(frozen=True)
class EventStatuses:
    confirmation_status: ConfirmationStatus
    time_status: TimeStatus

    def as_dict(self) -> dict[str, str]:
        return {
            "confirmation_status": self.confirmation_status.value,
            "time_status": self.time_status.value,
        }


def project(
    invitees: Iterable[Invitee],
    event_datetime: datetime,
    now: datetime | None = None,
) -> EventStatuses:
    """Return the confirmation and time badges for an event.

    Naive datetimes are treated as UTC.
    """
    statuses = [invitee.status for invitee in invitees]
    event_at = ensure_aware(event_datetime)
    current = ensure_aware(now or utcnow())

    has_accepted = InviteeStatus.ACCEPTED in statuses
    all_declined = bool(statuses) and all(
        status is InviteeStatus.DECLINED for status in statuses
    )
    has_open = any(
        status in (InviteeStatus.INVITED, InviteeStatus.PENDING) for status in statuses
    )

    if has_accepted:
        confirmation = ConfirmationStatus.SCHEDULED
    elif all_declined:
        confirmation = ConfirmationStatus.DECLINED
    elif has_open:
        confirmation = ConfirmationStatus.INVITED
    else:
        confirmation = ConfirmationStatus.NO_SHOW

    has_passed = current >= event_at
    if has_passed and not has_accepted and not all_declined:
        confirmation = ConfirmationStatus.NO_SHOW

    if has_passed:
        time_status = TimeStatus.COMPLETED
    elif event_at - current <= APPROACHING_WINDOW:
        time_status = TimeStatus.APPROACHING
    else:
        time_status = TimeStatus.UPCOMING

    return EventStatuses(confirmation_status=confirmation, time_status=time_status)
