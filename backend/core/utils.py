"""
Utility functions for the flow engine.

Includes:
- UTC datetime helpers
- JSON-safe serialization for context blobs
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes.

    SQLite hands back naive values even for timezone-aware columns, so
    everything read from the store goes through here before comparison.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp stored in a context blob.

    Returns None for missing values and raises ValueError for garbage.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise ValueError(f"Not a timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def to_iso(value: datetime) -> str:
    return ensure_utc(value).isoformat()


def seconds_until(deadline: datetime, now: Optional[datetime] = None) -> float:
    """Seconds from now until deadline, never negative."""
    now = now or utcnow()
    return max(0.0, (ensure_utc(deadline) - now).total_seconds())


def stale_threshold(minutes: int, now: Optional[datetime] = None) -> datetime:
    return (now or utcnow()) - timedelta(minutes=minutes)


def safe_serialize(obj: Any, depth: int = 0) -> Any:
    """Recursively ensure all values are JSON-serializable."""
    if depth > 10:
        return str(obj)
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, datetime):
        return to_iso(obj)
    if isinstance(obj, dict):
        return {str(k): safe_serialize(v, depth + 1) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [safe_serialize(v, depth + 1) for v in obj]
    return str(obj)
