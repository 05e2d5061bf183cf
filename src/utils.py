"""Shared utilities used across the booking engine."""

import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Iterator, Union
from zoneinfo import ZoneInfo


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("012-345 6789")
        '0123456789'
        >>> normalize_phone("+60 (12) 345-6789")
        '+60123456789'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def normalize_email(value: str) -> str:
    """Lower-case and trim an email so it can be used as a resource key."""
    return value.strip().lower()


def local_datetime(day: date, clock: time, tz: ZoneInfo) -> datetime:
    """Interpret a wall-clock time on ``day`` in the business timezone."""
    return datetime.combine(day, clock, tzinfo=tz)


def to_unix_seconds(moment: datetime) -> int:
    if moment.tzinfo is None:
        raise ValueError("Refusing to convert a naive datetime to Unix seconds")
    return int(moment.timestamp())


def from_unix_seconds(value: Union[str, int], tz: ZoneInfo) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc).astimezone(tz)


def format_rfc3339(moment: datetime, tz: tzinfo) -> str:
    """Format with an explicit offset, e.g. ``2025-03-18T09:00:00+08:00``.

    Never emits a naive or ``Z`` timestamp, so date-only consumers do not
    shift the calendar date across the UTC boundary.
    """
    if moment.tzinfo is None:
        raise ValueError("Refusing to format a naive datetime")
    return moment.astimezone(tz).isoformat(timespec="seconds")


def iter_dates(start: date, end: date) -> Iterator[date]:
    """Yield every date from ``start`` to ``end`` inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5
