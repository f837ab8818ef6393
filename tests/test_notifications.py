from __future__ import annotations

from conftest import make_roster
from rsvpqueue.engine import apply_verdict, decide
from rsvpqueue.notifications import (
    LoggingDispatcher,
    NotificationKind,
    build_invitation,
    dispatch_all,
    notifications_for_delta,
    parse_reply_status,
)
from rsvpqueue.roster import InviteMode, RsvpAction


def test_parse_reply_status_accepts_common_answers():
    assert parse_reply_status(" yes ") is RsvpAction.CONFIRM
    assert parse_reply_status("Y") is RsvpAction.CONFIRM
    assert parse_reply_status("ok") is RsvpAction.CONFIRM
    assert parse_reply_status("nope") is RsvpAction.DECLINE
    assert parse_reply_status("Can't") is RsvpAction.DECLINE
    assert parse_reply_status("maybe later") is None
    assert parse_reply_status(None) is None


def test_invitation_links_verify_to_their_actions(signer, now):
    invitee = make_roster("invited")[0]
    notification = build_invitation(
        "evt-1", invitee, signer=signer, base_url="https://rsvp.example.com/", now=now
    )
    assert notification.kind is NotificationKind.INVITATION
    assert notification.email == "guest0@example.com"
    assert set(notification.links) == {"confirm", "decline"}
    for action, link in notification.links.items():
        assert link.startswith("https://rsvp.example.com/rsvp/")
        token = link.rsplit("/", 1)[1]
        payload = signer.verify(token, now=now)
        assert payload.action.value == action
        assert payload.invitee_identity == "guest0@example.com"


def test_delta_notifies_promoted_and_accepted_invitees(signer, now):
    roster = make_roster("invited", "pending")
    decline = apply_verdict(
        decide(roster, "guest0@example.com", "decline", InviteMode.PRIORITY, 1), now=now
    )
    [invitation] = notifications_for_delta(
        "evt-1", decline, signer=signer, base_url="http://localhost", now=now
    )
    assert invitation.kind is NotificationKind.INVITATION
    assert invitation.invitee_name == "Guest 1"

    confirm = apply_verdict(
        decide(roster, "guest0@example.com", "confirm", InviteMode.PRIORITY, 1), now=now
    )
    [confirmation] = notifications_for_delta(
        "evt-1", confirm, signer=signer, base_url="http://localhost", now=now
    )
    assert confirmation.kind is NotificationKind.CONFIRMATION
    assert confirmation.links == {}


def test_dispatch_all_keeps_going_after_a_failure(signer, now):
    roster = make_roster("invited", "invited")
    notifications = [
        build_invitation("evt-1", invitee, signer=signer, base_url="http://x", now=now)
        for invitee in roster
    ]

    class FlakyDispatcher(LoggingDispatcher):
        def send(self, notification):
            if notification.invitee_name == "Guest 0":
                raise RuntimeError("smtp down")
            super().send(notification)

    flaky = FlakyDispatcher()
    assert dispatch_all(notifications, flaky) == 1
    assert [n.invitee_name for n in flaky.sent] == ["Guest 1"]
