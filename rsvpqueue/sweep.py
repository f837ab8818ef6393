"""Auto-promote sweep: time out silent invitees and invite the next in line."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from .config import settings
from .crud import (
    EventNotFoundError,
    RosterConflictError,
    StaleRosterError,
    apply_roster_delta,
    list_event_ids,
    load_snapshot,
)
from .database import get_session
from .engine import InviteeChange, RosterDelta
from .notifications import Dispatcher, dispatch_all, notifications_for_delta
from .roster import EventSnapshot, Invitee, InviteMode, InviteeStatus, next_pending
from .storage import build_token_signer
from .tokens import RsvpTokenSigner
from .utils import ensure_aware, to_naive_utc, utcnow

# Use uvicorn's error logger so sweep messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class SweepPlan:
    event_id: str
    expired: tuple[Invitee, ...]
    promoted: Invitee
    delta: RosterDelta


def _is_stale(invitee: Invitee, cutoff: datetime) -> bool:
    return (
        invitee.status is InviteeStatus.INVITED
        and invitee.invited_at is not None
        and ensure_aware(invitee.invited_at) <= cutoff
    )


def plan_auto_promotion(snapshot: EventSnapshot, *, now: datetime) -> SweepPlan | None:
    """Work out the timeout transitions for one event, or ``None`` if there are none."""
    # TODO: decide whether events with spots > 1 and open seats should keep
    # promoting after the first acceptance; for now any acceptance stops the sweep.
    if any(invitee.status is InviteeStatus.ACCEPTED for invitee in snapshot.invitees):
        return None
    if snapshot.invite_mode is not InviteMode.PRIORITY:
        return None
    current = ensure_aware(now)
    cutoff = current - timedelta(minutes=snapshot.auto_promote_after_minutes)
    stale = tuple(invitee for invitee in snapshot.invitees if _is_stale(invitee, cutoff))
    if not stale:
        return None
    candidate = next_pending(snapshot.invitees)
    if candidate is None:
        return None

    stamp = to_naive_utc(current)
    changes = [
        InviteeChange(
            before=invitee,
            after=replace(invitee, status=InviteeStatus.DECLINED, responded_at=stamp),
        )
        for invitee in stale
    ]
    promoted = replace(candidate, status=InviteeStatus.INVITED, invited_at=stamp)
    changes.append(InviteeChange(before=candidate, after=promoted))
    return SweepPlan(
        event_id=snapshot.event_id,
        expired=stale,
        promoted=promoted,
        delta=RosterDelta(changes=tuple(changes)),
    )


def _sweep_event(event_id: str, *, now: datetime, max_retries: int) -> SweepPlan | None:
    for attempt in range(max_retries + 1):
        try:
            with get_session() as session:
                try:
                    snapshot = load_snapshot(session, event_id)
                except EventNotFoundError:
                    return None
                plan = plan_auto_promotion(snapshot, now=now)
                if plan is None:
                    return None
                apply_roster_delta(session, snapshot, plan.delta)
            return plan
        except StaleRosterError:
            logger.info(
                "Roster for event %s changed during sweep (attempt %d); re-reading",
                event_id,
                attempt + 1,
            )
    raise RosterConflictError(
        f"Sweep could not update event {event_id} after {max_retries + 1} attempts"
    )


def run_auto_promote_sweep(
    *,
    now: datetime | None = None,
    dispatcher: Dispatcher | None = None,
    signer: RsvpTokenSigner | None = None,
) -> dict:
    """Expire stale invitations across all events and promote the next pending invitee.

    Each event is read, planned and written on its own; a failure on one event
    is logged and the sweep moves on.
    """
    stats = {
        "events_scanned": 0,
        "events_failed": 0,
        "expired_count": 0,
        "promoted_count": 0,
        "notifications_sent": 0,
    }
    current = now or utcnow()
    max_retries = settings.cas_max_retries
    logger.info("Auto-promote sweep started at %s", ensure_aware(current).isoformat())

    with get_session() as session:
        event_ids = list_event_ids(session)

    for event_id in event_ids:
        stats["events_scanned"] += 1
        try:
            plan = _sweep_event(event_id, now=current, max_retries=max_retries)
        except (SQLAlchemyError, RosterConflictError):
            logger.exception("Auto-promote sweep failed for event %s; continuing", event_id)
            stats["events_failed"] += 1
            continue
        if plan is None:
            continue

        stats["expired_count"] += len(plan.expired)
        stats["promoted_count"] += 1
        logger.debug(
            "Event %s: expired %s, promoted %s (priority %d)",
            event_id,
            ", ".join(invitee.name for invitee in plan.expired),
            plan.promoted.name,
            plan.promoted.priority,
        )

        if signer is None:
            signer = build_token_signer()
        notifications = notifications_for_delta(
            event_id,
            plan.delta,
            signer=signer,
            base_url=settings.public_base_url,
            now=current,
        )
        stats["notifications_sent"] += dispatch_all(notifications, dispatcher)

    logger.info(
        "Auto-promote sweep finished: scanned=%d, promoted=%d, expired=%d, failed=%d",
        stats["events_scanned"],
        stats["promoted_count"],
        stats["expired_count"],
        stats["events_failed"],
    )
    return stats
