"""Database initialization and persisted secrets."""

from __future__ import annotations

import secrets
import shutil
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import inspect

from .config import settings
from .database import engine, get_session
from .models import Meta
from .tokens import RsvpTokenSigner
from .utils import utcnow


def init_db() -> None:
    upgrade_database(make_backup=False)
    ensure_root_token()
    ensure_signing_secret()
    ensure_webhook_secret()


def _alembic_config() -> Config:
    package_dir = Path(__file__).resolve().parent
    script_location = package_dir / "alembic"
    ini_path = script_location.parent / "alembic.ini"

    config = Config(str(ini_path)) if ini_path.exists() else Config()
    config.set_main_option("script_location", str(script_location))
    # ConfigParser interpolates "%", which SQLAlchemy uses to escape URL parts.
    url = engine.url.render_as_string(hide_password=False)
    config.set_main_option("sqlalchemy.url", url.replace("%", "%%"))
    return config


def upgrade_database(*, make_backup: bool = True) -> list[str]:
    """Upgrade the database schema in-place.

    Returns a list of applied actions.
    """
    actions: list[str] = []
    db_path = Path(settings.database_path)

    if make_backup and db_path.exists():
        backup_path = db_path.with_suffix(db_path.suffix + ".bak")
        shutil.copy(db_path, backup_path)
        actions.append(f"Backup created at {backup_path}")

    inspector = inspect(engine)
    has_alembic = inspector.has_table("alembic_version")
    has_events = inspector.has_table("events")
    config = _alembic_config()

    if not has_alembic and not has_events:
        command.upgrade(config, "head")
        actions.append("Ran Alembic upgrade to head (fresh database)")
    elif not has_alembic:
        # Tables created outside Alembic: baseline them.
        command.stamp(config, "head")
        actions.append("Stamped existing database to Alembic head")
    else:
        command.upgrade(config, "head")
        actions.append("Applied Alembic migrations to head")

    return actions


def _ensure_meta_secret(key: str) -> str:
    with get_session() as session:
        existing = session.get(Meta, key)
        if existing:
            return existing.value
        value = secrets.token_urlsafe(32)
        session.merge(Meta(key=key, value=value, updated_at=utcnow()))
        return value


def _rotate_meta_secret(key: str) -> str:
    value = secrets.token_urlsafe(32)
    with get_session() as session:
        session.merge(Meta(key=key, value=value, updated_at=utcnow()))
    return value


def _fetch_meta_secret(key: str) -> str:
    with get_session() as session:
        meta = session.get(Meta, key)
        if meta:
            return meta.value
    return _ensure_meta_secret(key)


def ensure_root_token() -> str:
    return _ensure_meta_secret(settings.root_token_key)


def rotate_root_token() -> str:
    return _rotate_meta_secret(settings.root_token_key)


def fetch_root_token() -> str:
    return _fetch_meta_secret(settings.root_token_key)


def ensure_signing_secret() -> str:
    return _ensure_meta_secret(settings.signing_secret_key)


def rotate_signing_secret() -> str:
    """Replace the persisted RSVP link secret; every outstanding link stops working."""
    return _rotate_meta_secret(settings.signing_secret_key)


def fetch_signing_secret() -> str:
    return _fetch_meta_secret(settings.signing_secret_key)


def ensure_webhook_secret() -> str:
    return _ensure_meta_secret(settings.webhook_secret_key)


def rotate_webhook_secret() -> str:
    return _rotate_meta_secret(settings.webhook_secret_key)


def fetch_webhook_secret() -> str:
    """Return the SMS webhook secret, preferring the configured one."""
    return settings.sms_webhook_secret or _fetch_meta_secret(settings.webhook_secret_key)


def build_token_signer() -> RsvpTokenSigner:
    """Return a signer keyed by the configured secret, else the persisted one."""
    secret = settings.token_secret or fetch_signing_secret()
    return RsvpTokenSigner(secret, ttl=settings.token_ttl)
