"""Utility helpers for rsvpqueue."""

from __future__ import annotations

import re
from datetime import UTC, datetime, timezone

_phone_noise = re.compile(r"[^0-9+]")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def ensure_aware(dt: datetime) -> datetime:
    """Return a timezone aware datetime (UTC) for arithmetic operations."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return ensure_aware(value).replace(tzinfo=None)


def normalize_email(value: str | None) -> str | None:
    cleaned = (value or "").strip().lower()
    return cleaned or None


def normalize_phone(value: str | None) -> str | None:
    """Strip formatting from a phone number, keeping digits and a leading ``+``."""
    cleaned = _phone_noise.sub("", (value or "").strip())
    if not cleaned:
        return None
    head, tail = cleaned[0], cleaned[1:].replace("+", "")
    cleaned = head + tail
    return cleaned if cleaned.strip("+") else None


def normalize_identity(value: str | None) -> str | None:
    """Normalise an email address or phone number for case-insensitive matching."""
    raw = (value or "").strip()
    if "@" in raw:
        return normalize_email(raw)
    return normalize_phone(raw)
