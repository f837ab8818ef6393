"""SQLAlchemy models for rsvpqueue."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("spots >= 1", name="ck_events_spots_positive"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    admin_token = Column(String(128), nullable=False, unique=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    organizer_name = Column(String(120), nullable=True)
    scheduled_at = Column(DateTime, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    invite_mode = Column(String(32), nullable=False, default="priority")
    spots = Column(Integer, nullable=False, default=1)
    auto_promote_after_minutes = Column(Integer, nullable=False, default=30)
    # Bumped on every roster write; conditional updates compare against it.
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    invitees = relationship(
        "Invitee",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Invitee.priority",
    )


class Invitee(Base):
    __tablename__ = "invitees"
    __table_args__ = (
        UniqueConstraint("event_id", "priority", name="uq_invitees_event_priority"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(32), nullable=True, index=True)
    priority = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, default="pending", index=True)
    invited_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="invitees")
