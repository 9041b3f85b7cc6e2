"""
DateTime utility functions for the sync engine.

All persisted timestamps are naive UTC.
"""
from datetime import datetime, timezone


def utcnow():
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(dt):
    """
    Normalize a datetime, ISO string or None to naive UTC.

    Args:
        dt: datetime object, ISO string, or None

    Returns:
        datetime or None
    """
    if dt is None or dt == "":
        return None

    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.strip().replace('Z', '+00:00'))

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def isoformat_utc(dt):
    """Format a naive UTC datetime as an ISO-8601 string with a Z suffix."""
    if not dt:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"


def to_epoch_ms(dt):
    """Milliseconds since the epoch for a naive UTC datetime."""
    if dt is None:
        return None
    return int(dt.replace(tzinfo=timezone.utc).timestamp() * 1000)
