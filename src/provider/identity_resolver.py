"""
Writable calendar resolution per resource.

A resource usually sees several calendars: their native primary calendar,
shared calendars, and calendars synced in from Google or Exchange. Synced
calendars often reject writes even when the listed role is ``owner``, so
native calendars always win.
"""

import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from src.config import settings
from src.errors import CalendarAccessDenied, NoWritableCalendar
from src.provider.lark_client import LarkClient
from src.schemas.provider_schema import CalendarEntry
from src.utils import normalize_email

logger = logging.getLogger(__name__)

WRITABLE_ROLES = ("owner", "writer")
EXTERNAL_CALENDAR_TYPES = {"google", "exchange"}

T = TypeVar("T")


def _preference(entry: CalendarEntry) -> Optional[int]:
    """Rank a calendar for writes; lower is better, None means not writable."""
    if entry.role not in WRITABLE_ROLES:
        return None
    role_rank = WRITABLE_ROLES.index(entry.role)
    if entry.type == "primary":
        return role_rank
    if entry.type not in EXTERNAL_CALENDAR_TYPES:
        return 2 + role_rank
    return 4 + role_rank


def pick_writable_calendar(calendars: list[CalendarEntry]) -> Optional[CalendarEntry]:
    """Best writable calendar, keeping provider order among equal ranks."""
    best: Optional[tuple[int, CalendarEntry]] = None
    for entry in calendars:
        rank = _preference(entry)
        if rank is not None and (best is None or rank < best[0]):
            best = (rank, entry)
    return best[1] if best else None


class CalendarIdentityResolver:
    """Resolves and caches the calendar id bookings are written to."""

    def __init__(
        self,
        client: LarkClient,
        ttl_seconds: int = settings.provider.calendar_cache_ttl_seconds,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}

    async def resolve_writable_calendar(self, resource_id: str) -> str:
        """
        Return the resource's writable calendar id.

        Raises:
            NoWritableCalendar: No owner/writer calendar is visible.
        """
        resource_id = normalize_email(resource_id)
        cached = self._cache.get(resource_id)
        if cached is not None and self._clock() - cached[1] < self._ttl_seconds:
            return cached[0]

        calendars = await self._client.list_calendars(resource_id)
        chosen = pick_writable_calendar(calendars)
        if chosen is None:
            logger.error(
                "No writable calendar for %s among %d calendars (roles: %s)",
                resource_id, len(calendars), sorted({c.role for c in calendars}),
            )
            raise NoWritableCalendar(resource_id)

        if chosen.type in EXTERNAL_CALENDAR_TYPES:
            logger.warning(
                "Only an externally synced %s calendar is writable for %s",
                chosen.type, resource_id,
            )
        self._cache[resource_id] = (chosen.calendar_id, self._clock())
        logger.debug("Resolved calendar %s for %s", chosen.calendar_id, resource_id)
        return chosen.calendar_id

    def invalidate(self, resource_id: str) -> None:
        self._cache.pop(normalize_email(resource_id), None)

    async def with_writable_calendar(
        self,
        resource_id: str,
        operation: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run a calendar write, re-resolving the calendar once on an
        access-role rejection before surfacing the error.
        """
        calendar_id = await self.resolve_writable_calendar(resource_id)
        try:
            return await operation(calendar_id)
        except CalendarAccessDenied:
            logger.warning(
                "Calendar %s rejected a write for %s; re-resolving calendar identity",
                calendar_id, resource_id,
            )
            self.invalidate(resource_id)
            calendar_id = await self.resolve_writable_calendar(resource_id)
            return await operation(calendar_id)
