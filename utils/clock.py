"""
Time helpers shared by the worker, the stores and the receipt pipeline.

Everything inside the gateway is a timezone-aware UTC datetime. SQLite
returns naive datetimes from DateTime(timezone=True) columns, so values read
back from storage go through ensure_utc().
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a Z suffix, as the web app expects."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")
