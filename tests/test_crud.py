from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import update

from rsvpqueue import crud, database
from rsvpqueue.crud import (
    EventNotFoundError,
    RosterConflictError,
    StaleRosterError,
    apply_roster_delta,
    create_event,
    find_open_invitation_by_phone,
    load_snapshot,
    reorder_invitees,
    respond,
)
from rsvpqueue.engine import RsvpErrorKind, apply_verdict, decide
from rsvpqueue.models import Event
from rsvpqueue.roster import InviteMode, Invitee, InviteeStatus, RsvpAction
from rsvpqueue.utils import utcnow


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _make_event(session, *, mode=InviteMode.PRIORITY, spots=1, guests=3, **kwargs):
    event = create_event(
        session,
        title="Dinner",
        scheduled_at=utcnow() + timedelta(days=2),
        invitees=[
            Invitee(
                name=f"Guest {index}",
                email=f"Guest{index}@Example.com",
                phone=f"+1 555 010 000{index}",
                priority=index * 10,
            )
            for index in range(guests)
        ],
        invite_mode=mode,
        spots=spots,
        **kwargs,
    )
    session.commit()
    return event


def _statuses(session, event_id):
    return [i.status.value for i in load_snapshot(session, event_id).invitees]


def test_create_event_assigns_starting_statuses(session):
    event = _make_event(session)
    snapshot = load_snapshot(session, event.id)
    assert snapshot.version == 0
    assert snapshot.auto_promote_after_minutes == 30
    assert [i.status for i in snapshot.invitees] == [
        InviteeStatus.INVITED,
        InviteeStatus.PENDING,
        InviteeStatus.PENDING,
    ]
    first = snapshot.invitees[0]
    assert first.email == "guest0@example.com"
    assert first.phone == "+15550100000"
    assert first.invited_at is not None
    assert event.admin_token


def test_create_event_in_fcfs_mode_invites_everyone(session):
    event = _make_event(session, mode="first-come-first-serve", spots=2)
    assert _statuses(session, event.id) == ["invited", "invited", "invited"]


def test_create_event_validates_settings(session):
    with pytest.raises(ValueError, match="between"):
        _make_event(session, auto_promote_after_minutes=1)
    session.rollback()
    with pytest.raises(ValueError, match="spots"):
        _make_event(session, spots=0)
    session.rollback()
    with pytest.raises(ValueError):
        _make_event(session, mode="lottery")


def test_decline_promotes_next_pending_and_bumps_version(session):
    event = _make_event(session)
    outcome = respond(session, event.id, "guest0@example.com", RsvpAction.DECLINE)
    session.commit()

    assert outcome.verdict.success
    assert [i.name for i in outcome.delta.newly_invited] == ["Guest 1"]
    snapshot = load_snapshot(session, event.id)
    assert snapshot.version == 1
    assert [i.status.value for i in snapshot.invitees] == ["declined", "invited", "pending"]
    assert snapshot.invitees[0].responded_at is not None
    assert snapshot.invitees[1].invited_at is not None


def test_second_confirm_on_single_spot_is_event_full(session):
    event = _make_event(session, mode=InviteMode.FIRST_COME_FIRST_SERVE)
    first = respond(session, event.id, "guest0@example.com", "confirm")
    session.commit()
    second = respond(session, event.id, "guest1@example.com", "confirm")
    session.commit()

    assert first.verdict.success
    assert second.verdict.error is RsvpErrorKind.EVENT_FULL
    assert not second.delta
    assert load_snapshot(session, event.id).version == 1
    assert _statuses(session, event.id) == ["accepted", "invited", "invited"]


def test_unknown_event_raises(session):
    with pytest.raises(EventNotFoundError):
        respond(session, "missing", "guest0@example.com", "confirm")


def test_stale_snapshot_write_is_rejected(session):
    event = _make_event(session)
    stale = load_snapshot(session, event.id)
    respond(session, event.id, "guest0@example.com", "decline")
    session.commit()

    verdict = decide(stale.invitees, "guest0@example.com", "confirm", stale.invite_mode, 1)
    with pytest.raises(StaleRosterError):
        apply_roster_delta(session, stale, apply_verdict(verdict, now=utcnow()))
    session.rollback()
    assert _statuses(session, event.id) == ["declined", "invited", "pending"]


def _racing_loader(monkeypatch, *, races: int):
    """Bump the event version behind the caller's back after each of the first reads."""
    original = crud.load_snapshot
    calls = []

    def racing(session, event_id):
        snapshot = original(session, event_id)
        calls.append(snapshot.version)
        if len(calls) <= races:
            session.execute(
                update(Event).where(Event.id == event_id).values(version=Event.version + 1)
            )
            session.commit()
        return snapshot

    monkeypatch.setattr(crud, "load_snapshot", racing)
    return calls


def test_respond_rereads_after_losing_a_race(session, monkeypatch):
    event = _make_event(session)
    calls = _racing_loader(monkeypatch, races=1)

    outcome = respond(session, event.id, "guest0@example.com", "confirm")
    session.commit()

    assert calls == [0, 1]
    assert outcome.verdict.success
    assert _statuses(session, event.id) == ["accepted", "pending", "pending"]


def test_respond_gives_up_after_max_retries(session, monkeypatch):
    event = _make_event(session)
    calls = _racing_loader(monkeypatch, races=10)

    with pytest.raises(RosterConflictError):
        respond(session, event.id, "guest0@example.com", "confirm", max_retries=2)
    assert len(calls) == 3


def test_reorder_pending_invitees(session):
    event = _make_event(session, guests=4)
    snapshot = load_snapshot(session, event.id)
    pending_ids = [i.id for i in snapshot.invitees if i.status is InviteeStatus.PENDING]

    reordered = reorder_invitees(session, event.id, list(reversed(pending_ids)))
    session.commit()

    assert reordered.version == snapshot.version + 1
    assert [i.name for i in reordered.invitees] == ["Guest 0", "Guest 3", "Guest 2", "Guest 1"]
    assert [i.priority for i in reordered.invitees] == [0, 10, 20, 30]

    outcome = respond(session, event.id, "guest0@example.com", "decline")
    assert outcome.verdict.promoted_invitee.name == "Guest 3"


def test_reorder_with_negative_priorities_in_the_event(session):
    event = create_event(
        session,
        title="Squash",
        scheduled_at=utcnow() + timedelta(days=2),
        invitees=[
            Invitee(name="A", email="a@example.com", priority=-1),
            Invitee(name="B", email="b@example.com", priority=1),
            Invitee(name="C", email="c@example.com", priority=2),
        ],
    )
    session.commit()
    by_name = {i.name: i.id for i in load_snapshot(session, event.id).invitees}

    reordered = reorder_invitees(session, event.id, [by_name["C"], by_name["B"]])
    session.commit()

    assert [i.name for i in reordered.invitees] == ["A", "C", "B"]
    assert [i.priority for i in reordered.invitees] == [-1, 1, 2]
    assert [i.status.value for i in reordered.invitees] == ["invited", "pending", "pending"]


def test_reorder_rejects_partial_lists_and_started_events(session):
    event = _make_event(session)
    snapshot = load_snapshot(session, event.id)
    pending_ids = [i.id for i in snapshot.invitees if i.status is InviteeStatus.PENDING]

    with pytest.raises(ValueError, match="every pending invitee"):
        reorder_invitees(session, event.id, pending_ids[:1])
    with pytest.raises(ValueError, match="every pending invitee"):
        reorder_invitees(session, event.id, [snapshot.invitees[0].id, *pending_ids])
    with pytest.raises(ValueError, match="before the event starts"):
        reorder_invitees(
            session, event.id, pending_ids, now=snapshot.scheduled_at + timedelta(minutes=1)
        )


def test_find_open_invitation_by_phone(session):
    event = _make_event(session)
    match = find_open_invitation_by_phone(session, "(+1) 555-010-0000")
    assert match is not None
    assert match.event_id == event.id
    assert match.name == "Guest 0"
    assert find_open_invitation_by_phone(session, "+15550100001") is None
    assert find_open_invitation_by_phone(session, "") is None
