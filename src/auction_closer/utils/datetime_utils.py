from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from dateutil import parser


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime_utc(value: Any) -> datetime | None:
    if value is None:
        return None

    if isinstance(value, datetime):
        return to_utc(value)

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return to_utc(parser.parse(value))
        except (ValueError, TypeError, OverflowError):
            return None

    return None


def to_storage(value: datetime | None) -> str | None:
    if value is None:
        return None
    # Fixed width so stored values compare correctly as text.
    return to_utc(value).isoformat(timespec="microseconds")


def format_datetime(value: datetime | None) -> str:
    if value is None:
        return "unknown"
    return to_utc(value).strftime("%Y-%m-%d %H:%M UTC")


def format_date(value: datetime | None) -> str:
    if value is None:
        return "Not specified"
    return to_utc(value).strftime("%d %B %Y")


def reminder_window(now: datetime) -> tuple[datetime, datetime]:
    """Start of today through the last microsecond of tomorrow, in UTC."""
    start = to_utc(now).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=2) - timedelta(microseconds=1)
    return start, end
