from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_EMAIL_API_URL = "https://api.brevo.com/v3/smtp/email"


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


@dataclass(slots=True)
class StorageSettings:
    type: str = "sqlite"
    path: str = "data/auction.sqlite"


@dataclass(slots=True)
class EmailSettings:
    api_url: str = DEFAULT_EMAIL_API_URL
    api_key_env_var: str = "BREVO_API_KEY"
    sender_name: str = "Auction Desk"
    sender_email: str = "noreply@example.com"
    timeout_seconds: int = 15


@dataclass(slots=True)
class NotificationSettings:
    operations_recipient: str | None = None
    max_workers: int = 8
    dry_run: bool = False


@dataclass(slots=True)
class SchedulerSettings:
    close_interval_seconds: int = 3600
    reminder_interval_seconds: int = 86400
    max_concurrent_closures: int = 4
    max_close_attempts: int = 3


@dataclass(slots=True)
class AppConfig:
    storage: StorageSettings = field(default_factory=StorageSettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    log_level: str = "INFO"


def _as_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value

    if isinstance(value, int) and value in {0, 1}:
        return bool(value)

    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False

    raise ConfigError(f"{field_name} must be a boolean")


def _as_int(value: Any, *, field_name: str, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _section(parsed: dict[str, Any], name: str) -> dict[str, Any]:
    raw = parsed.get(name, {}) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{name} must be a mapping")
    return raw


def _resolve_relative_path(config_path: Path, raw_path: str) -> str:
    candidate = Path(raw_path).expanduser()
    if candidate.is_absolute():
        return str(candidate)
    return str((config_path.parent / candidate).resolve())


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        parsed = yaml.safe_load(handle) or {}

    if not isinstance(parsed, dict):
        raise ConfigError("Config root must be a mapping")

    raw_storage = _section(parsed, "storage")
    storage_path = str(raw_storage.get("path", "data/auction.sqlite")).strip() or "data/auction.sqlite"
    storage_settings = StorageSettings(
        type=str(raw_storage.get("type", "sqlite")).strip() or "sqlite",
        path=_resolve_relative_path(config_path, storage_path),
    )

    raw_email = _section(parsed, "email")
    email_settings = EmailSettings(
        api_url=_as_optional_str(raw_email.get("api_url")) or DEFAULT_EMAIL_API_URL,
        api_key_env_var=_as_optional_str(raw_email.get("api_key_env_var")) or "BREVO_API_KEY",
        sender_name=_as_optional_str(raw_email.get("sender_name")) or "Auction Desk",
        sender_email=_as_optional_str(raw_email.get("sender_email")) or "noreply@example.com",
        timeout_seconds=_as_int(
            raw_email.get("timeout_seconds", 15),
            field_name="email.timeout_seconds",
            minimum=1,
        ),
    )

    raw_notifications = _section(parsed, "notifications")
    notification_settings = NotificationSettings(
        operations_recipient=_as_optional_str(raw_notifications.get("operations_recipient")),
        max_workers=_as_int(
            raw_notifications.get("max_workers", 8),
            field_name="notifications.max_workers",
            minimum=1,
        ),
        dry_run=_as_bool(
            raw_notifications.get("dry_run", False),
            field_name="notifications.dry_run",
        ),
    )

    raw_scheduler = _section(parsed, "scheduler")
    scheduler_settings = SchedulerSettings(
        close_interval_seconds=_as_int(
            raw_scheduler.get("close_interval_seconds", 3600),
            field_name="scheduler.close_interval_seconds",
            minimum=1,
        ),
        reminder_interval_seconds=_as_int(
            raw_scheduler.get("reminder_interval_seconds", 86400),
            field_name="scheduler.reminder_interval_seconds",
            minimum=1,
        ),
        max_concurrent_closures=_as_int(
            raw_scheduler.get("max_concurrent_closures", 4),
            field_name="scheduler.max_concurrent_closures",
            minimum=1,
        ),
        max_close_attempts=_as_int(
            raw_scheduler.get("max_close_attempts", 3),
            field_name="scheduler.max_close_attempts",
            minimum=1,
        ),
    )

    return AppConfig(
        storage=storage_settings,
        email=email_settings,
        notifications=notification_settings,
        scheduler=scheduler_settings,
        log_level=str(parsed.get("log_level", "INFO")).upper(),
    )
