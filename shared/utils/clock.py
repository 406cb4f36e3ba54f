"""
shared/utils/clock.py
UTC helpers. SQLite hands back naive datetimes even for timezone-aware
columns, so every comparison against a stored value goes through ensure_utc().
"""

from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utctoday() -> date:
    return utcnow().date()


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
