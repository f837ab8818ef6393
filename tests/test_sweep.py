from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from conftest import make_roster
from rsvpqueue import database, sweep
from rsvpqueue.crud import create_event, load_snapshot
from rsvpqueue.notifications import NotificationKind
from rsvpqueue.roster import EventSnapshot, InviteMode, Invitee, InviteeStatus
from rsvpqueue.sweep import plan_auto_promotion, run_auto_promote_sweep


def _snapshot(roster, *, mode=InviteMode.PRIORITY, minutes=30, now=None):
    return EventSnapshot(
        event_id="evt-1",
        invite_mode=mode,
        spots=1,
        auto_promote_after_minutes=minutes,
        scheduled_at=now + timedelta(days=1),
        invitees=roster,
    )


def _invited_minutes_ago(roster, index, minutes, now):
    updated = list(roster)
    updated[index] = replace(updated[index], invited_at=now - timedelta(minutes=minutes))
    return tuple(updated)


def test_stale_invitee_is_declined_and_next_pending_invited(now):
    roster = _invited_minutes_ago(make_roster("invited", "pending", "pending"), 0, 40, now)
    plan = plan_auto_promotion(_snapshot(roster, now=now), now=now)

    assert plan is not None
    assert [i.name for i in plan.expired] == ["Guest 0"]
    assert plan.promoted.name == "Guest 1"
    assert plan.promoted.status is InviteeStatus.INVITED
    assert plan.promoted.invited_at == now
    expired_after = plan.delta.changes[0].after
    assert expired_after.status is InviteeStatus.DECLINED
    assert expired_after.responded_at == now


def test_threshold_boundary_counts_as_stale(now):
    roster = _invited_minutes_ago(make_roster("invited", "pending"), 0, 30, now)
    assert plan_auto_promotion(_snapshot(roster, now=now), now=now) is not None

    fresh = _invited_minutes_ago(make_roster("invited", "pending"), 0, 29, now)
    assert plan_auto_promotion(_snapshot(fresh, now=now), now=now) is None


def test_sweep_skips_events_with_an_acceptance(now):
    roster = _invited_minutes_ago(make_roster("invited", "accepted", "pending"), 0, 90, now)
    assert plan_auto_promotion(_snapshot(roster, now=now), now=now) is None


def test_sweep_skips_fcfs_events(now):
    roster = _invited_minutes_ago(make_roster("invited", "pending"), 0, 90, now)
    snapshot = _snapshot(roster, mode=InviteMode.FIRST_COME_FIRST_SERVE, now=now)
    assert plan_auto_promotion(snapshot, now=now) is None


def test_sweep_skips_when_nobody_is_left_to_promote(now):
    roster = _invited_minutes_ago(make_roster("declined", "invited"), 1, 90, now)
    assert plan_auto_promotion(_snapshot(roster, now=now), now=now) is None


def test_missing_invited_at_is_never_stale(now):
    assert plan_auto_promotion(_snapshot(make_roster("invited", "pending"), now=now), now=now) is None


def _persist_event(title, *, invited_minutes_ago, now, mode=InviteMode.PRIORITY, guests=2):
    with database.get_session() as session:
        event = create_event(
            session,
            title=title,
            scheduled_at=now + timedelta(days=1),
            invitees=[
                Invitee(name=f"{title} {index}", email=f"{title.lower()}{index}@example.com", priority=index)
                for index in range(guests)
            ],
            invite_mode=mode,
            now=now - timedelta(minutes=invited_minutes_ago),
        )
        return event.id


def test_run_sweep_promotes_and_notifies(now, signer, dispatcher):
    stale_id = _persist_event("Stale", invited_minutes_ago=40, now=now)
    fresh_id = _persist_event("Fresh", invited_minutes_ago=10, now=now)
    fcfs_id = _persist_event(
        "Open", invited_minutes_ago=90, now=now, mode=InviteMode.FIRST_COME_FIRST_SERVE
    )

    stats = run_auto_promote_sweep(now=now, signer=signer)

    assert stats["events_scanned"] == 3
    assert stats["promoted_count"] == 1
    assert stats["expired_count"] == 1
    assert stats["events_failed"] == 0
    assert stats["notifications_sent"] == 1

    with database.get_session() as session:
        stale = load_snapshot(session, stale_id)
        assert [i.status for i in stale.invitees] == [
            InviteeStatus.DECLINED,
            InviteeStatus.INVITED,
        ]
        assert stale.invitees[1].invited_at == now
        assert stale.version == 1
        assert load_snapshot(session, fresh_id).version == 0
        assert load_snapshot(session, fcfs_id).version == 0

    [notification] = dispatcher.sent
    assert notification.kind is NotificationKind.INVITATION
    assert notification.invitee_name == "Stale 1"
    assert set(notification.links) == {"confirm", "decline"}


def test_run_sweep_twice_is_idempotent(now, signer, dispatcher):
    _persist_event("Once", invited_minutes_ago=40, now=now)
    assert run_auto_promote_sweep(now=now, signer=signer)["promoted_count"] == 1
    assert run_auto_promote_sweep(now=now, signer=signer)["promoted_count"] == 0


def test_run_sweep_isolates_failing_events(now, signer, dispatcher, monkeypatch):
    broken_id = _persist_event("Broken", invited_minutes_ago=40, now=now)
    healthy_id = _persist_event("Healthy", invited_minutes_ago=40, now=now)
    original = sweep.load_snapshot

    def flaky(session, event_id):
        if event_id == broken_id:
            raise OperationalError("select", {}, Exception("database is locked"))
        return original(session, event_id)

    monkeypatch.setattr(sweep, "load_snapshot", flaky)

    stats = run_auto_promote_sweep(now=now, signer=signer)

    assert stats["events_failed"] == 1
    assert stats["promoted_count"] == 1
    with database.get_session() as session:
        assert load_snapshot(session, healthy_id).invitees[1].status is InviteeStatus.INVITED


def test_run_sweep_retries_then_reports_conflicts(now, signer, dispatcher, monkeypatch):
    _persist_event("Contested", invited_minutes_ago=40, now=now)

    def always_stale(session, snapshot, delta):
        raise sweep.StaleRosterError("lost the race")

    monkeypatch.setattr(sweep, "apply_roster_delta", always_stale)

    stats = run_auto_promote_sweep(now=now, signer=signer)

    assert stats["events_failed"] == 1
    assert stats["promoted_count"] == 0
    assert dispatcher.sent == []

