"""Shared parsing and time helpers used by services and blueprints.

as_utc:          naive (SQLite) or aware datetimes → aware UTC
parse_date:      returns None on bad input (query-string filters)
parse_datetime:  raises ValidationError on bad input (request bodies)
parse_bool:      query-string / JSON truthiness
"""
import logging
from datetime import date, datetime, time, timezone

from exception_tracker.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against utcnow() must go through this helper so the same
    code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_datetime(value, field: str = "due_date") -> datetime | None:
    """Parse an ISO date or datetime into an aware UTC datetime.

    A bare date means midnight UTC. Empty input returns None.

    Raises:
        ValidationError: If value is present but not a recognisable date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    parsed = parse_date(text)
    if parsed is None:
        raise ValidationError(
            f"{field} is not a valid date",
            details={field: "expected ISO-8601 date or datetime"},
        )
    return datetime.combine(parsed, time.min, tzinfo=timezone.utc)


def parse_bool(value, default=None):
    """Interpret query-string and JSON truthiness; None/unknown → default."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return default
