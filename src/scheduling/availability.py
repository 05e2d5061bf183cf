"""
Per-day, per-slot availability across a pool of resources.

Busy intervals are fetched once per (resource, day) and shared by every
slot of that day. Fetches run concurrently behind a semaphore so a
multi-week, multi-resource query never fans out past the configured
limit.
"""

import asyncio
import logging
from datetime import date
from typing import Optional
from zoneinfo import ZoneInfo

from src.config import settings
from src.errors import AuthorizationError, BookingEngineError
from src.scheduling.busy_aggregator import BusyTimeAggregator
from src.scheduling.location_matcher import is_location_match
from src.scheduling.slots import build_slot_grid, day_bounds, slot_bounds
from src.schemas.availability_schema import (
    AvailabilityFilters,
    AvailabilityResult,
    BusyInterval,
    DayAvailability,
    PerDayAvailability,
    Slot,
)
from src.schemas.resource_schema import Resource
from src.utils import is_weekend, iter_dates

logger = logging.getLogger(__name__)

BusyCache = dict[tuple[str, date], Optional[list[BusyInterval]]]


def speaks_all(resource: Resource, languages: frozenset[str]) -> bool:
    wanted = {lang.lower() for lang in languages}
    return wanted <= {lang.lower() for lang in resource.languages}


class SlotAvailabilityComputer:
    """Computes which resources are free for each slot of each day."""

    def __init__(
        self,
        aggregator: BusyTimeAggregator,
        slot_grid: Optional[list[Slot]] = None,
        tz: ZoneInfo = settings.scheduling.tz,
        max_concurrency: int = settings.scheduling.max_concurrency,
    ) -> None:
        self._aggregator = aggregator
        self._slot_grid = slot_grid if slot_grid is not None else build_slot_grid()
        self._tz = tz
        self._max_concurrency = max_concurrency

    @property
    def slot_grid(self) -> list[Slot]:
        return list(self._slot_grid)

    async def compute_availability(
        self,
        resources: list[Resource],
        start_date: date,
        end_date: date,
        slot_grid: Optional[list[Slot]] = None,
        filters: Optional[AvailabilityFilters] = None,
    ) -> PerDayAvailability:
        """
        Availability for every date in ``[start_date, end_date]``.

        Weekends are skipped unless ``filters.include_weekends`` is set.
        Resources that fail the location or language filter, or that have
        no valid authorization, never appear as free.
        """
        filters = filters or AvailabilityFilters()
        grid = slot_grid if slot_grid is not None else self._slot_grid
        days = [
            d for d in iter_dates(start_date, end_date)
            if filters.include_weekends or not is_weekend(d)
        ]
        eligible = await self.eligible_resources(resources, filters)
        busy = await self._fetch_busy(eligible, days)

        result = PerDayAvailability()
        for day in days:
            entry = DayAvailability(date=day, day_name=day.strftime("%A"))
            for slot in grid:
                free = self._free_for_slot(eligible, busy, day, slot)
                entry.slots.append(_summarize(slot, free))
            result.days.append(entry)
        return result

    async def compute_resource_availability(
        self,
        resource: Resource,
        start_date: date,
        end_date: date,
        slot_grid: Optional[list[Slot]] = None,
        filters: Optional[AvailabilityFilters] = None,
    ) -> PerDayAvailability:
        """Single-resource mode for a resource-specific calendar view."""
        return await self.compute_availability(
            [resource], start_date, end_date, slot_grid=slot_grid, filters=filters
        )

    async def free_resources_for_slot(
        self,
        resources: list[Resource],
        day: date,
        slot: Slot,
        filters: Optional[AvailabilityFilters] = None,
    ) -> list[Resource]:
        """Resources free for one slot, re-checked against the provider."""
        filters = (filters or AvailabilityFilters()).model_copy(update={"include_weekends": True})
        eligible = await self.eligible_resources(resources, filters)
        busy = await self._fetch_busy(eligible, [day])
        return self._free_for_slot(eligible, busy, day, slot)

    async def eligible_resources(
        self, resources: list[Resource], filters: AvailabilityFilters
    ) -> list[Resource]:
        eligible = []
        for resource in resources:
            if not resource.is_active:
                continue
            if filters.merchant_address is not None and not is_location_match(
                resource.locations, filters.merchant_address
            ):
                continue
            if filters.required_languages and not speaks_all(resource, filters.required_languages):
                continue
            if not await self._aggregator.is_authorized(resource.id):
                logger.info("Skipping %s: calendar access not authorized", resource.id)
                continue
            eligible.append(resource)
        return eligible

    async def _fetch_busy(self, resources: list[Resource], days: list[date]) -> BusyCache:
        cache: BusyCache = {}
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def fetch(resource: Resource, day: date) -> None:
            key = (resource.id, day)
            if key in cache:
                return
            cache[key] = None
            start, end = day_bounds(day, self._tz)
            async with semaphore:
                try:
                    cache[key] = await self._aggregator.get_busy_intervals(resource.id, start, end)
                except AuthorizationError as exc:
                    logger.warning("Treating %s as unavailable on %s: %s", resource.id, day, exc)
                except BookingEngineError as exc:
                    logger.warning(
                        "Busy lookup failed for %s on %s, treating as unavailable: %s",
                        resource.id, day, exc,
                    )

        await asyncio.gather(*(fetch(r, d) for r in resources for d in days))
        return cache

    def _free_for_slot(
        self, resources: list[Resource], busy: BusyCache, day: date, slot: Slot
    ) -> list[Resource]:
        slot_start, slot_end = slot_bounds(day, slot, self._tz)
        free = []
        for resource in resources:
            intervals = busy.get((resource.id, day))
            if intervals is None:
                continue
            if any(interval.overlaps(slot_start, slot_end) for interval in intervals):
                continue
            free.append(resource)
        return free


def _summarize(slot: Slot, free: list[Resource]) -> AvailabilityResult:
    languages = sorted({lang for r in free for lang in r.languages})
    locations = sorted({loc for r in free for loc in r.locations})
    return AvailabilityResult(
        slot=slot,
        available=bool(free),
        free_resources=[r.id for r in free],
        languages=languages,
        locations=locations,
    )
