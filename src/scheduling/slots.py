"""Slot grid construction and wall-clock to absolute time conversion."""

from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from src.config import parse_slot_grid, settings
from src.errors import BookingValidationError
from src.schemas.availability_schema import Slot
from src.utils import local_datetime


def build_slot_grid(raw: Optional[str] = None) -> list[Slot]:
    """Parse the configured grid, e.g. ``09:00-11:00,11:00-13:00``."""
    windows = parse_slot_grid(raw if raw is not None else settings.scheduling.slot_grid)
    return [
        Slot(label=f"{start}-{end}", start=time.fromisoformat(start), end=time.fromisoformat(end))
        for start, end in windows
    ]


def find_slot(grid: list[Slot], label: str) -> Slot:
    """Look up a slot by label (``"09:00-11:00"``) or by start time (``"09:00"``)."""
    for slot in grid:
        if slot.label == label or slot.start.strftime("%H:%M") == label:
            return slot
    raise BookingValidationError(
        f"Unknown slot {label!r}; valid slots: {[s.label for s in grid]}"
    )


def slot_bounds(day: date, slot: Slot, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Absolute ``[start, end)`` of a slot on ``day`` in the business timezone."""
    return local_datetime(day, slot.start, tz), local_datetime(day, slot.end, tz)


def day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    start = local_datetime(day, time.min, tz)
    return start, local_datetime(day + timedelta(days=1), time.min, tz)


def default_date_range(
    today: date, window_days: int = settings.scheduling.availability_window_days
) -> tuple[date, date]:
    """Tomorrow through ``window_days`` ahead, inclusive."""
    return today + timedelta(days=1), today + timedelta(days=window_days)
