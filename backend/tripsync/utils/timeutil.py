"""UTC helpers.

Timestamps are persisted as naive UTC: SQLite drops tzinfo on round-trip and
comparisons between aware and naive datetimes raise. Everything entering the
store goes through `to_utc_naive`.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def isoformat_z(value: datetime) -> str:
    """Render a stored naive-UTC datetime as ISO-8601 with a Z suffix."""
    return to_utc_naive(value).isoformat(timespec="seconds") + "Z"
