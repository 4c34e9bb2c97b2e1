"""Utilities for working with timestamps and calendar dates."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Callable, Optional, Union

Clock = Callable[[], datetime]
DateLike = Union[date, datetime, str]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an upstream timestamp such as ``2024-05-01T09:30:00-0400``.

    Returns ``None`` for empty or malformed input instead of guessing.
    """

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # ``-0400`` offsets are not accepted by fromisoformat on older interpreters.
    if len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit() and ":" not in text[-5:]:
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)


def _as_date(value: DateLike) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    # The calendar date as written upstream, before any offset conversion.
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def age_in_years(date_of_birth: DateLike, today: DateLike) -> Optional[int]:
    """Return the completed years between ``date_of_birth`` and ``today``.

    The birthday has to have been reached in the current year (month, then
    day) before the year counts.
    """

    born = _as_date(date_of_birth)
    current = _as_date(today)
    if born is None or current is None:
        return None
    years = current.year - born.year
    if (current.month, current.day) < (born.month, born.day):
        years -= 1
    return years


__all__ = ["Clock", "utc_now", "ensure_utc", "parse_timestamp", "age_in_years"]
