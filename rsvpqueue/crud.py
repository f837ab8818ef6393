"""Persistence helpers: snapshot reads and version-checked roster writes.

Every roster mutation follows the same pipeline: read an
:class:`~rsvpqueue.roster.EventSnapshot`, decide with the pure engine, then
write with :func:`apply_roster_delta`, which only succeeds if the event's
``version`` is still the one the snapshot saw.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .config import settings
from .engine import RosterDelta, Verdict, apply_verdict, decide
from .models import Event, Invitee
from .roster import (
    EventSnapshot,
    InviteMode,
    Invitee as RosterInvitee,
    InviteeStatus,
    RsvpAction,
    build_initial_roster,
    validate_event_settings,
)
from .utils import normalize_email, normalize_phone, to_naive_utc, utcnow

logger = logging.getLogger("uvicorn.error")


class EventNotFoundError(LookupError):
    """Raised when an event id does not exist."""


class StaleRosterError(Exception):
    """Raised when a conditional roster write finds the roster changed since it was read."""


class RosterConflictError(Exception):
    """Raised when a roster write keeps losing races after all retries."""


@dataclass(frozen=True)
class RsvpOutcome:
    verdict: Verdict
    delta: RosterDelta
    snapshot: EventSnapshot


def _now() -> datetime:
    return utcnow()


def to_roster_invitee(row: Invitee) -> RosterInvitee:
    return RosterInvitee(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        priority=row.priority,
        status=InviteeStatus(row.status),
        invited_at=row.invited_at,
        responded_at=row.responded_at,
    )


def snapshot_event(event: Event) -> EventSnapshot:
    return EventSnapshot(
        event_id=event.id,
        invite_mode=InviteMode(event.invite_mode),
        spots=event.spots,
        auto_promote_after_minutes=event.auto_promote_after_minutes,
        scheduled_at=event.scheduled_at,
        invitees=tuple(
            to_roster_invitee(row) for row in sorted(event.invitees, key=lambda r: r.priority)
        ),
        version=event.version,
    )


def get_event(session: Session, event_id: str) -> Event | None:
    return session.get(Event, event_id)


def load_snapshot(session: Session, event_id: str) -> EventSnapshot:
    """Read the current committed state of one event, bypassing cached instances."""
    event = session.scalars(
        select(Event)
        .where(Event.id == event_id)
        .execution_options(populate_existing=True)
    ).first()
    if event is None:
        raise EventNotFoundError(event_id)
    rows = session.scalars(
        select(Invitee)
        .where(Invitee.event_id == event_id)
        .order_by(Invitee.priority)
        .execution_options(populate_existing=True)
    ).all()
    return replace(
        snapshot_event(event), invitees=tuple(to_roster_invitee(row) for row in rows)
    )


def list_event_ids(session: Session) -> list[str]:
    return list(session.scalars(select(Event.id).order_by(Event.created_at, Event.id)))


def create_event(
    session: Session,
    *,
    title: str,
    scheduled_at: datetime,
    invitees: Sequence[RosterInvitee],
    invite_mode: InviteMode | str = InviteMode.PRIORITY,
    spots: int | None = None,
    auto_promote_after_minutes: int | None = None,
    timezone: str = "UTC",
    description: str | None = None,
    location: str | None = None,
    organizer_name: str | None = None,
    now: datetime | None = None,
) -> Event:
    """Create an event and its roster with starting statuses assigned."""
    mode = InviteMode(invite_mode)
    spots = settings.default_spots if spots is None else spots
    auto_promote_after_minutes = (
        settings.default_auto_promote_minutes
        if auto_promote_after_minutes is None
        else auto_promote_after_minutes
    )
    validate_event_settings(
        spots=spots,
        auto_promote_after_minutes=auto_promote_after_minutes,
        min_minutes=settings.min_auto_promote_minutes,
        max_minutes=settings.max_auto_promote_minutes,
    )
    if not (title or "").strip():
        raise ValueError("title is required")
    created_at = now or _now()
    roster = build_initial_roster(invitees, mode, now=created_at)

    event = Event(
        admin_token=secrets.token_urlsafe(32),
        title=title.strip(),
        description=description,
        location=location,
        organizer_name=organizer_name,
        scheduled_at=to_naive_utc(scheduled_at),
        timezone=timezone or "UTC",
        invite_mode=mode.value,
        spots=spots,
        auto_promote_after_minutes=auto_promote_after_minutes,
        version=0,
        created_at=created_at,
        last_modified=created_at,
    )
    for member in roster:
        event.invitees.append(
            Invitee(
                name=member.name.strip() or member.identity,
                email=normalize_email(member.email),
                phone=normalize_phone(member.phone),
                priority=member.priority,
                status=member.status.value,
                invited_at=member.invited_at,
                responded_at=None,
                created_at=created_at,
                last_modified=created_at,
            )
        )
    session.add(event)
    session.flush()
    return event


def _bump_version(session: Session, event_id: str, expected_version: int) -> None:
    result = session.execute(
        update(Event)
        .where(Event.id == event_id, Event.version == expected_version)
        .values(version=expected_version + 1, last_modified=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleRosterError(
            f"Event {event_id} changed since version {expected_version} was read"
        )


def apply_roster_delta(
    session: Session, snapshot: EventSnapshot, delta: RosterDelta
) -> None:
    """Persist ``delta`` only if the roster is unchanged since ``snapshot`` was read."""
    if not delta:
        return
    _bump_version(session, snapshot.event_id, snapshot.version)
    for change in delta.changes:
        before, after = change.before, change.after
        result = session.execute(
            update(Invitee)
            .where(
                Invitee.id == before.id,
                Invitee.event_id == snapshot.event_id,
                Invitee.status == before.status.value,
            )
            .values(
                status=after.status.value,
                invited_at=after.invited_at,
                responded_at=after.responded_at,
                last_modified=_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleRosterError(
                f"Invitee {before.id} is no longer {before.status.value}"
            )
    session.flush()


def respond(
    session: Session,
    event_id: str,
    identity: str,
    action: RsvpAction | str,
    *,
    now: datetime | None = None,
    max_retries: int | None = None,
) -> RsvpOutcome:
    """Run one confirm/decline through the read, decide, conditional-write loop.

    The write is flushed, not committed; the caller owns the transaction.
    """
    retries = settings.cas_max_retries if max_retries is None else max_retries
    for attempt in range(retries + 1):
        snapshot = load_snapshot(session, event_id)
        verdict = decide(
            snapshot.invitees, identity, action, snapshot.invite_mode, snapshot.spots
        )
        delta = apply_verdict(verdict, now=now or _now())
        try:
            apply_roster_delta(session, snapshot, delta)
        except StaleRosterError:
            session.rollback()
            logger.warning(
                "Roster for event %s changed during %s by %s (attempt %d); retrying",
                event_id,
                RsvpAction(action).value,
                identity,
                attempt + 1,
            )
            continue
        return RsvpOutcome(verdict=verdict, delta=delta, snapshot=snapshot)
    raise RosterConflictError(
        f"Could not record {RsvpAction(action).value} for event {event_id} "
        f"after {retries + 1} attempts"
    )


def reorder_invitees(
    session: Session,
    event_id: str,
    ordered_invitee_ids: Sequence[str],
    *,
    now: datetime | None = None,
) -> EventSnapshot:
    """Reassign queue order among pending invitees before the event starts.

    The pending invitees' existing priority values are redistributed in the
    requested order, so invited or responded invitees keep their places.
    """
    snapshot = load_snapshot(session, event_id)
    current = now or _now()
    if to_naive_utc(current) >= to_naive_utc(snapshot.scheduled_at):
        raise ValueError("Invitees can only be reordered before the event starts")
    pending = {
        invitee.id: invitee
        for invitee in snapshot.invitees
        if invitee.status is InviteeStatus.PENDING
    }
    requested = list(ordered_invitee_ids)
    if len(set(requested)) != len(requested) or set(requested) != set(pending):
        raise ValueError("Reordering must list every pending invitee exactly once")
    slots = sorted(invitee.priority for invitee in pending.values())
    # Park below every priority in the event so the unique (event, priority) index holds.
    floor = min((invitee.priority for invitee in snapshot.invitees), default=0)

    _bump_version(session, event_id, snapshot.version)
    for offset, invitee_id in enumerate(requested, start=1):
        session.execute(
            update(Invitee)
            .where(Invitee.id == invitee_id, Invitee.status == InviteeStatus.PENDING.value)
            .values(priority=floor - offset)
            .execution_options(synchronize_session=False)
        )
    for offset, (invitee_id, priority) in enumerate(zip(requested, slots), start=1):
        result = session.execute(
            update(Invitee)
            .where(Invitee.id == invitee_id, Invitee.priority == floor - offset)
            .values(priority=priority, last_modified=_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleRosterError(f"Invitee {invitee_id} changed while reordering")
    session.flush()
    return load_snapshot(session, event_id)


def find_open_invitation_by_phone(session: Session, phone: str) -> Invitee | None:
    """Return the sender's most recently issued open invitation, if any."""
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    stmt = (
        select(Invitee)
        .where(
            Invitee.phone == normalized,
            Invitee.status == InviteeStatus.INVITED.value,
        )
        .order_by(Invitee.invited_at.desc(), Invitee.created_at.desc())
        .limit(1)
    )
    return session.scalars(stmt).first()
