"""Busy intervals, slot grid and availability models."""

from datetime import date, datetime, time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class BusySource(str, Enum):
    FREEBUSY = "freebusy"
    EVENTS = "events"


class BusyInterval(BaseModel):
    """Half-open ``[start, end)`` range during which a resource is busy."""
    start: datetime
    end: datetime
    source: BusySource
    event_id: Optional[str] = None
    recurring_event_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_order(self) -> "BusyInterval":
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("Busy intervals must use timezone-aware datetimes")
        if self.start >= self.end:
            raise ValueError(f"Busy interval must start before it ends: {self.start} >= {self.end}")
        return self

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start


class Slot(BaseModel):
    """Fixed daily window shared by every resource and every day."""
    label: str
    start: time
    end: time

    @model_validator(mode="after")
    def _check_order(self) -> "Slot":
        if self.start >= self.end:
            raise ValueError(f"Slot {self.label} must end after it starts")
        return self


class AvailabilityFilters(BaseModel):
    """Optional narrowing of an availability query."""
    include_weekends: bool = False
    merchant_address: Optional[str] = None
    required_languages: frozenset[str] = Field(default_factory=frozenset)


class AvailabilityResult(BaseModel):
    """Availability of one slot on one date."""
    slot: Slot
    available: bool
    free_resources: list[str] = Field(default_factory=list)
    languages: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _available_matches_resources(self) -> "AvailabilityResult":
        if self.available != bool(self.free_resources):
            raise ValueError("available must be true exactly when free_resources is non-empty")
        return self


class DayAvailability(BaseModel):
    date: date
    day_name: str
    slots: list[AvailabilityResult] = Field(default_factory=list)

    def slot(self, label: str) -> Optional[AvailabilityResult]:
        for result in self.slots:
            if result.slot.label == label:
                return result
        return None


class PerDayAvailability(BaseModel):
    """Ordered per-day availability for a date range."""
    days: list[DayAvailability] = Field(default_factory=list)

    def for_date(self, day: date) -> Optional[DayAvailability]:
        for entry in self.days:
            if entry.date == day:
                return entry
        return None
