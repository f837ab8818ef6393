"""Engine and session plumbing for rsvpqueue."""

from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings

# Seconds a writer waits on a locked SQLite file before failing.
SQLITE_BUSY_TIMEOUT = 5

DATABASE_URL = f"sqlite:///{settings.database_path}"


def _enable_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT * 1000}")
    finally:
        cursor.close()


def build_engine(url: str = DATABASE_URL, **kwargs) -> Engine:
    """Create an engine; SQLite connections get foreign keys and a busy timeout."""
    connect_args = kwargs.pop("connect_args", {})
    if url.startswith("sqlite"):
        connect_args.setdefault("check_same_thread", False)
    built = create_engine(url, connect_args=connect_args, future=True, **kwargs)
    if built.dialect.name == "sqlite":
        event.listen(built, "connect", _enable_sqlite_pragmas)
    return built


def build_session_factory(bind: Engine) -> scoped_session:
    return scoped_session(
        sessionmaker(
            bind=bind,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )


engine = build_engine()
SessionLocal = build_session_factory(engine)


@contextmanager
def get_session():
    """Yield a session that commits on success and rolls back on error."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
