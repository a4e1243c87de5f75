"""Global configuration for RSVP Desk."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "db_timeout_seconds": 5.0,
    "app_host": "0.0.0.0",
    "app_port": 8000,
    "app_url": "http://localhost:8000",
    "admin_email": "",
    "admin_password": "",
    "admin_name": "Admin User",
    "smtp_host": "",
    "smtp_port": 465,
    "smtp_user": "",
    "smtp_password": "",
    "smtp_use_ssl": True,
    "smtp_timeout_seconds": 10.0,
    "mail_from": "RSVP Desk <no-reply@localhost>",
    "rsvp_retry_attempts": 3,
    "events_per_page": 50,
    "seed_users": 8,
    "seed_events": 6,
    "seed_rsvps_per_event": 4,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "db_timeout_seconds": float,
    "app_host": str,
    "app_port": int,
    "app_url": str,
    "admin_email": str,
    "admin_password": str,
    "admin_name": str,
    "smtp_host": str,
    "smtp_port": int,
    "smtp_user": str,
    "smtp_password": str,
    "smtp_use_ssl": bool,
    "smtp_timeout_seconds": float,
    "mail_from": str,
    "rsvp_retry_attempts": int,
    "events_per_page": int,
    "seed_users": int,
    "seed_events": int,
    "seed_rsvps_per_event": int,
}

# Never echoed back by ``settings_as_dict``.
SECRET_KEYS = {"admin_password", "smtp_password"}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    config_path: Path
    db_timeout_seconds: float
    app_host: str
    app_port: int
    app_url: str
    admin_email: str
    admin_password: str
    admin_name: str
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    smtp_use_ssl: bool
    smtp_timeout_seconds: float
    mail_from: str
    rsvp_retry_attempts: int
    events_per_page: int
    seed_users: int
    seed_events: int
    seed_rsvps_per_event: int

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host)

    @property
    def admin_bootstrap_configured(self) -> bool:
        return bool(self.admin_email and self.admin_password)


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
    env_key = f"RSVPDESK_{key.upper()}"
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
    resolved_db = Path(database_path) if database_path else resolved_data / "rsvpdesk.db"
    if not resolved_db.is_absolute():
        resolved_db = resolved_base / resolved_db
    return resolved_base, resolved_data, resolved_db


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("RSVPDESK_BASE_DIR", Path.cwd()))
    env_config = os.getenv("RSVPDESK_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "rsvpdesk.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value = _resolve_paths(
        base_dir=base_dir,
        data_dir=os.getenv("RSVPDESK_DATA_DIR", toml_config.get("data_dir")),
        database_path=os.getenv("RSVPDESK_DB", toml_config.get("database_path")),
    )

    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }
    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for field in fields(settings):
        value = getattr(settings, field.name)
        if field.name in SECRET_KEYS:
            value = "********" if value else ""
        elif isinstance(value, Path):
            value = str(value)
        payload[field.name] = value
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# RSVP Desk configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            continue
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
