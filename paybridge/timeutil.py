"""UTC helpers.

SQLite hands back naive datetimes even for DateTime(timezone=True) columns,
so anything read from the database goes through as_utc() before it is
compared with an aware "now".
"""

from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return value as an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso(value):
    """Parse an ISO-8601 string (date or datetime) into an aware UTC datetime."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))
