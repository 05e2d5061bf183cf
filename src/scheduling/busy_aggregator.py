"""
Busy-time aggregation from two provider sources.

The free/busy endpoint is cheap but has been seen to drop instances of
recurring events. The events listing is complete once recurring series
are expanded through the instances endpoint. Both are queried and their
intervals unioned; slot blocking only asks whether any interval
intersects a slot, so overlapping intervals are left as they are.

Events the resource marked as ``free`` never block. Resources who mark
personal events free will therefore show as available; that is kept as
documented behaviour rather than second-guessed here.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from src.config import settings
from src.errors import AuthorizationError, BookingEngineError, ProviderUnavailable
from src.provider.identity_resolver import CalendarIdentityResolver
from src.provider.lark_client import LarkClient
from src.schemas.availability_schema import BusyInterval, BusySource
from src.schemas.provider_schema import EventTime, ProviderEvent
from src.utils import from_unix_seconds, local_datetime

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
FREE = "free"


def _event_time(value: EventTime, tz: ZoneInfo) -> Optional[datetime]:
    if value.timestamp is not None:
        return from_unix_seconds(value.timestamp, tz)
    if value.date is not None:
        return local_datetime(date.fromisoformat(value.date), time.min, tz)
    return None


def _blocks(event: ProviderEvent, parent: Optional[ProviderEvent] = None) -> bool:
    """Whether an event (or an instance of ``parent``) counts as busy."""
    if event.status == CANCELLED:
        return False
    free_busy = event.free_busy_status
    if free_busy is None and parent is not None:
        free_busy = parent.free_busy_status
    return free_busy != FREE


def merge_intervals(intervals: list[BusyInterval]) -> list[tuple[datetime, datetime]]:
    """Canonical union of intervals as sorted, non-overlapping ranges."""
    merged: list[list[datetime]] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and interval.start <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], interval.end)
        else:
            merged.append([interval.start, interval.end])
    return [(start, end) for start, end in merged]


class BusyTimeAggregator:
    """Unions free/busy windows with expanded calendar events."""

    def __init__(
        self,
        client: LarkClient,
        resolver: CalendarIdentityResolver,
        tz: ZoneInfo = settings.scheduling.tz,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._tz = tz

    async def is_authorized(self, resource_id: str) -> bool:
        return await self._client.tokens.is_authorized(resource_id)

    async def get_busy_intervals(
        self, resource_id: str, range_start: datetime, range_end: datetime
    ) -> list[BusyInterval]:
        """
        Busy intervals overlapping ``[range_start, range_end)``.

        Raises:
            NotAuthorized / ReauthorizationRequired: propagated from tokens.
            ProviderUnavailable: both sources failed.
        """
        freebusy, events = await asyncio.gather(
            self._freebusy_intervals(resource_id, range_start, range_end),
            self._event_intervals(resource_id, range_start, range_end),
            return_exceptions=True,
        )
        for result in (freebusy, events):
            if isinstance(result, AuthorizationError):
                raise result
            if isinstance(result, BaseException) and not isinstance(result, BookingEngineError):
                raise result

        if isinstance(freebusy, BaseException) and isinstance(events, BaseException):
            raise ProviderUnavailable(
                f"Both busy sources failed for {resource_id}: {freebusy}; {events}"
            ) from events
        if isinstance(freebusy, BaseException):
            logger.warning("Free/busy lookup failed for %s, using events only: %s",
                           resource_id, freebusy)
            freebusy = []
        if isinstance(events, BaseException):
            logger.warning("Events lookup failed for %s, using free/busy only: %s",
                           resource_id, events)
            events = []

        combined: dict[tuple, BusyInterval] = {}
        for interval in [*freebusy, *events]:
            if not interval.overlaps(range_start, range_end):
                continue
            key = (interval.start, interval.end, interval.source)
            combined.setdefault(key, interval)
        return sorted(combined.values(), key=lambda i: (i.start, i.end))

    async def _freebusy_intervals(
        self, resource_id: str, range_start: datetime, range_end: datetime
    ) -> list[BusyInterval]:
        windows = await self._client.query_freebusy(resource_id, range_start, range_end)
        intervals = []
        for window in windows:
            if window.start_time >= window.end_time:
                logger.warning("Skipping empty free/busy window %s for %s",
                               window.start_time, resource_id)
                continue
            intervals.append(BusyInterval(
                start=window.start_time.astimezone(self._tz),
                end=window.end_time.astimezone(self._tz),
                source=BusySource.FREEBUSY,
            ))
        return intervals

    async def _event_intervals(
        self, resource_id: str, range_start: datetime, range_end: datetime
    ) -> list[BusyInterval]:
        calendar_id = await self._resolver.resolve_writable_calendar(resource_id)
        events = await self._client.list_events(resource_id, calendar_id, range_start, range_end)

        intervals: list[BusyInterval] = []
        for event in events:
            if event.status == CANCELLED:
                continue
            if not event.is_recurring:
                if _blocks(event):
                    intervals.extend(self._to_interval(event, resource_id))
                continue

            try:
                instances = await self._client.list_event_instances(
                    resource_id, calendar_id, event.event_id, range_start, range_end
                )
            except AuthorizationError:
                raise
            except BookingEngineError as exc:
                logger.warning("Could not expand recurring event %s for %s: %s",
                               event.event_id, resource_id, exc)
                continue
            for instance in instances:
                if _blocks(instance, parent=event):
                    intervals.extend(
                        self._to_interval(instance, resource_id, recurring_event_id=event.event_id)
                    )
        return intervals

    def _to_interval(
        self,
        event: ProviderEvent,
        resource_id: str,
        recurring_event_id: Optional[str] = None,
    ) -> list[BusyInterval]:
        start = _event_time(event.start_time, self._tz)
        end = _event_time(event.end_time, self._tz)
        if start is None or end is None:
            logger.warning("Event %s for %s has no usable start/end", event.event_id, resource_id)
            return []
        if event.start_time.date is not None and end <= start:
            # All-day events with an inclusive end date still cover the start day.
            end = start + timedelta(days=1)
        if start >= end:
            logger.warning("Skipping zero-length event %s for %s", event.event_id, resource_id)
            return []
        return [BusyInterval(
            start=start,
            end=end,
            source=BusySource.EVENTS,
            event_id=event.event_id,
            recurring_event_id=recurring_event_id or event.recurring_event_id,
        )]
