"""Global configuration for rsvpqueue."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "token_ttl_days": 7,
    "token_secret": "",
    "sms_webhook_secret": "",
    "sweep_interval_minutes": 5,
    "default_auto_promote_minutes": 30,
    "min_auto_promote_minutes": 5,
    "max_auto_promote_minutes": 360,
    "default_spots": 1,
    "cas_max_retries": 3,
    "enable_scheduler": True,
    "public_base_url": "http://localhost:8000",
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "token_ttl_days": int,
    "token_secret": str,
    "sms_webhook_secret": str,
    "sweep_interval_minutes": int,
    "default_auto_promote_minutes": int,
    "min_auto_promote_minutes": int,
    "max_auto_promote_minutes": int,
    "default_spots": int,
    "cas_max_retries": int,
    "enable_scheduler": bool,
    "public_base_url": str,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    token_ttl_days: int
    token_secret: str
    sms_webhook_secret: str
    sweep_interval_minutes: int
    default_auto_promote_minutes: int
    min_auto_promote_minutes: int
    max_auto_promote_minutes: int
    default_spots: int
    cas_max_retries: int
    enable_scheduler: bool
    public_base_url: str
    root_token_key: str
    signing_secret_key: str
    webhook_secret_key: str
    app_host: str
    app_port: int
    config_path: Path

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(days=self.token_ttl_days)


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"RSVPQUEUE_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = Path(data_dir) if data_dir else resolved_base / "data"
    if not resolved_data.is_absolute():
        resolved_data = resolved_base / resolved_data
    resolved_db = Path(database_path) if database_path else resolved_data / "rsvpqueue.db"
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("RSVPQUEUE_BASE_DIR", Path.cwd()))
    env_config = os.getenv("RSVPQUEUE_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "rsvpqueue.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("RSVPQUEUE_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("RSVPQUEUE_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    if layered["min_auto_promote_minutes"] > layered["max_auto_promote_minutes"]:
        raise ValueError(
            "min_auto_promote_minutes must not exceed max_auto_promote_minutes"
        )

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        root_token_key="root_admin_token",
        signing_secret_key="rsvp_signing_secret",
        webhook_secret_key="sms_webhook_secret",
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings, *, redact_secrets: bool = True) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
        "config_path": str(settings.config_path),
    }
    for key in DEFAULTS:
        payload[key] = getattr(settings, key)
    if redact_secrets:
        for key in ("token_secret", "sms_webhook_secret"):
            if payload[key]:
                payload[key] = "********"
    return payload


settings = load_settings()
