"""
Timezone utilities for the rule dispatch pipeline.

Event timestamps, job creation times and payload timestamps are always
expressed in UTC so that jobs created on one host and executed on another
agree on expiry.
"""

from datetime import datetime, timezone


def now_utc() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """
    Format a datetime as ISO-8601 with a trailing ``Z``.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
