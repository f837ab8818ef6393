"""Signed, self-contained RSVP link tokens.

A token is ``<payload>.<signature>`` where ``payload`` is base64url encoded
compact JSON and ``signature`` is base64url(HMAC-SHA256(secret, payload)).
Verification needs only the secret, never a database lookup.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .roster import RsvpAction
from .utils import ensure_aware, normalize_identity, utcnow

logger = logging.getLogger("uvicorn.error")

DEFAULT_TTL = timedelta(days=7)
INVALID_LINK_MESSAGE = "This RSVP link is no longer valid."


class InvalidRsvpToken(Exception):
    """Raised for any token that fails verification.

    The message never says which check failed.
    """

    def __init__(self) -> None:
        super().__init__(INVALID_LINK_MESSAGE)


@dataclass(frozen=True)
class RsvpTokenPayload:
    event_id: str
    invitee_identity: str
    action: RsvpAction
    expires_at: datetime

    def to_claims(self) -> dict:
        return {
            "e": self.event_id,
            "i": self.invitee_identity,
            "a": self.action.value,
            "x": int(ensure_aware(self.expires_at).timestamp()),
        }

    @classmethod
    def from_claims(cls, claims: dict) -> "RsvpTokenPayload":
        return cls(
            event_id=str(claims["e"]),
            invitee_identity=str(claims["i"]),
            action=RsvpAction(claims["a"]),
            expires_at=datetime.fromtimestamp(int(claims["x"]), tz=timezone.utc),
        )


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class RsvpTokenSigner:
    def __init__(self, secret: str | bytes, *, ttl: timedelta = DEFAULT_TTL):
        if not secret:
            raise ValueError("An RSVP token secret is required")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.ttl = ttl

    def _sign(self, encoded_payload: str) -> str:
        digest = hmac.new(
            self._secret, encoded_payload.encode("ascii"), hashlib.sha256
        ).digest()
        return _b64encode(digest)

    def issue(
        self,
        event_id: str,
        invitee_identity: str,
        action: RsvpAction | str,
        ttl: timedelta | None = None,
        *,
        now: datetime | None = None,
    ) -> str:
        identity = normalize_identity(invitee_identity)
        if not identity:
            raise ValueError("An invitee identity is required")
        issued_at = ensure_aware(now or utcnow())
        payload = RsvpTokenPayload(
            event_id=str(event_id),
            invitee_identity=identity,
            action=RsvpAction(action),
            expires_at=issued_at + (ttl if ttl is not None else self.ttl),
        )
        raw = json.dumps(payload.to_claims(), separators=(",", ":"), sort_keys=True)
        encoded = _b64encode(raw.encode("utf-8"))
        return f"{encoded}.{self._sign(encoded)}"

    def issue_pair(
        self, event_id: str, invitee_identity: str, *, now: datetime | None = None
    ) -> dict[RsvpAction, str]:
        """Mint the confirm and decline tokens sent with every invitation."""
        return {
            action: self.issue(event_id, invitee_identity, action, now=now)
            for action in RsvpAction
        }

    def verify(self, token: str, *, now: datetime | None = None) -> RsvpTokenPayload:
        raw_token = (token or "").strip()
        encoded, separator, signature = raw_token.partition(".")
        if not (separator and encoded and signature) or not raw_token.isascii():
            logger.debug("Rejected RSVP token: malformed")
            raise InvalidRsvpToken()
        expected = self._sign(encoded)
        if not hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii")):
            logger.debug("Rejected RSVP token: bad signature")
            raise InvalidRsvpToken()
        try:
            claims = json.loads(_b64decode(encoded))
            payload = RsvpTokenPayload.from_claims(claims)
        except (binascii.Error, ValueError, KeyError, TypeError, OverflowError) as exc:
            logger.debug("Rejected RSVP token: undecodable payload (%s)", exc)
            raise InvalidRsvpToken() from None
        if ensure_aware(now or utcnow()) > payload.expires_at:
            logger.debug("Rejected RSVP token: expired at %s", payload.expires_at.isoformat())
            raise InvalidRsvpToken()
        return payload
