"""Shared pytest fixtures for rsvpqueue."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from rsvpqueue import api, database, notifications, storage
from rsvpqueue.models import Base
from rsvpqueue.roster import Invitee, InviteeStatus
from rsvpqueue.tokens import RsvpTokenSigner


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def dispatcher():
    """Capture outbound notifications instead of logging them into the void."""

    recorder = notifications.LoggingDispatcher()
    previous = notifications.set_dispatcher(recorder)
    yield recorder
    notifications.set_dispatcher(previous)


@pytest.fixture()
def signer():
    return RsvpTokenSigner("test-secret", ttl=timedelta(days=7))


@pytest.fixture()
def now():
    return datetime(2026, 3, 14, 12, 0, 0)


def make_roster(*statuses: str) -> tuple[Invitee, ...]:
    """Build a priority-ordered roster; invitee N is ``guestN@example.com``."""
    return tuple(
        Invitee(
            id=f"inv-{index}",
            name=f"Guest {index}",
            email=f"guest{index}@example.com",
            priority=index,
            status=InviteeStatus(status),
        )
        for index, status in enumerate(statuses)
    )
