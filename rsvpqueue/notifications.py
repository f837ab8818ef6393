"""Outbound notification seam and inbound SMS reply parsing.

Delivery channels live outside this package. The engine only hands over a
:class:`Notification` describing who to contact and which RSVP links to
embed; the default dispatcher just logs it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from .engine import RosterDelta
from .roster import Invitee, RsvpAction
from .tokens import RsvpTokenSigner

logger = logging.getLogger("uvicorn.error")

CONFIRM_REPLIES = frozenset(
    {"Y", "YES", "YEP", "YA", "YEAH", "YUP", "CONFIRM", "OK", "OKAY", "SURE"}
)
DECLINE_REPLIES = frozenset(
    {"N", "NO", "NOPE", "NAH", "DECLINE", "CANCEL", "CANT", "CAN'T", "CANNOT"}
)


class NotificationKind(str, Enum):
    INVITATION = "invitation"
    CONFIRMATION = "confirmation"


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    event_id: str
    invitee_name: str
    email: str | None = None
    phone: str | None = None
    links: dict[str, str] = field(default_factory=dict)


class Dispatcher(Protocol):
    def send(self, notification: Notification) -> None: ...


class LoggingDispatcher:
    """Default dispatcher: records and logs notifications without delivering them."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            "Notification %s for event %s to %s (email=%s, phone=%s)",
            notification.kind.value,
            notification.event_id,
            notification.invitee_name,
            notification.email or "-",
            notification.phone or "-",
        )


_dispatcher: Dispatcher = LoggingDispatcher()


def get_dispatcher() -> Dispatcher:
    return _dispatcher


def set_dispatcher(dispatcher: Dispatcher) -> Dispatcher:
    """Install ``dispatcher`` and return the previous one."""
    global _dispatcher
    previous = _dispatcher
    _dispatcher = dispatcher
    return previous


def rsvp_link(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/rsvp/{token}"


def build_invitation(
    event_id: str,
    invitee: Invitee,
    *,
    signer: RsvpTokenSigner,
    base_url: str,
    now: datetime | None = None,
) -> Notification:
    tokens = signer.issue_pair(event_id, invitee.identity, now=now)
    return Notification(
        kind=NotificationKind.INVITATION,
        event_id=event_id,
        invitee_name=invitee.name,
        email=invitee.email,
        phone=invitee.phone,
        links={action.value: rsvp_link(base_url, token) for action, token in tokens.items()},
    )


def build_confirmation(event_id: str, invitee: Invitee) -> Notification:
    return Notification(
        kind=NotificationKind.CONFIRMATION,
        event_id=event_id,
        invitee_name=invitee.name,
        email=invitee.email,
        phone=invitee.phone,
    )


def notifications_for_delta(
    event_id: str,
    delta: RosterDelta,
    *,
    signer: RsvpTokenSigner,
    base_url: str,
    now: datetime | None = None,
) -> list[Notification]:
    notifications = [
        build_invitation(event_id, invitee, signer=signer, base_url=base_url, now=now)
        for invitee in delta.newly_invited
    ]
    notifications.extend(
        build_confirmation(event_id, invitee) for invitee in delta.newly_accepted
    )
    return notifications


def dispatch_all(notifications: list[Notification], dispatcher: Dispatcher | None = None) -> int:
    """Send each notification; a failed delivery is logged and does not stop the rest.

    Returns the number of notifications handed off successfully.
    """
    target = dispatcher or get_dispatcher()
    delivered = 0
    for notification in notifications:
        try:
            target.send(notification)
        except Exception:
            logger.exception(
                "Failed to dispatch %s for event %s to %s",
                notification.kind.value,
                notification.event_id,
                notification.invitee_name,
            )
            continue
        delivered += 1
    return delivered


def parse_reply_status(message: str | None) -> RsvpAction | None:
    """Map a free-text SMS reply to an action, or ``None`` when unrecognised."""
    normalized = (message or "").strip().upper()
    if normalized in CONFIRM_REPLIES:
        return RsvpAction.CONFIRM
    if normalized in DECLINE_REPLIES:
        return RsvpAction.DECLINE
    return None
