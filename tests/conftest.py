"""Shared test fixtures and helpers."""

import itertools
import json
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

import httpx
import pytest

from src.booking.orchestrator import BookingOrchestrator
from src.config import BookingConfig, ProviderConfig
from src.crm.client import InMemoryCrmClient
from src.integrations.notifications import LarkNotifier
from src.provider.identity_resolver import CalendarIdentityResolver
from src.provider.lark_client import CALENDARS_PATH, FREEBUSY_PATH, MESSAGES_PATH, LarkClient
from src.provider.oauth import TENANT_TOKEN_PATH, LarkOAuthClient
from src.provider.token_manager import TokenLifecycleManager
from src.provider.token_store import InMemoryTokenStore
from src.scheduling.availability import SlotAvailabilityComputer
from src.scheduling.busy_aggregator import BusyTimeAggregator
from src.scheduling.matcher import ResourceMatcher
from src.scheduling.slots import build_slot_grid
from src.schemas.booking_schema import MerchantDetails
from src.schemas.resource_schema import OAuthGrant, Resource, ResourceKind
from src.tools.directory import ResourceDirectory

TZ = ZoneInfo("Asia/Singapore")
BASE_URL = "https://lark.test"
SLOT_GRID = "09:00-11:00,11:00-13:00,14:00-16:00,16:00-18:00"

# 2026-11-02 is a Monday.
MONDAY = date(2026, 11, 2)
TUESDAY = date(2026, 11, 3)
WEDNESDAY = date(2026, 11, 4)
FRIDAY = date(2026, 11, 6)
SATURDAY = date(2026, 11, 7)


async def no_sleep(_seconds: float) -> None:
    return None


def at(day: date, clock: str) -> datetime:
    """Business-timezone datetime for ``day`` at ``HH:MM``."""
    return datetime.combine(day, time.fromisoformat(clock), tzinfo=TZ)


def make_provider_config(**overrides: Any) -> ProviderConfig:
    values: dict[str, Any] = {
        "base_url": BASE_URL,
        "app_id": "cli_test",
        "app_secret": "secret",
        "redirect_uri": "https://portal.test/oauth/callback",
        "max_retries": 0,
        "backoff_seconds": 0.0,
        "token_refresh_buffer_seconds": 60,
    }
    values.update(overrides)
    return ProviderConfig(**values)


def make_booking_config(**overrides: Any) -> BookingConfig:
    values: dict[str, Any] = {
        "environment": "development",
        "mock_calendar_booking": False,
        "mock_fallback_enabled": True,
        "crm_instance_url": "https://crm.test",
    }
    values.update(overrides)
    return BookingConfig(**values)


def make_resource(
    email: str,
    name: Optional[str] = None,
    kind: ResourceKind = ResourceKind.TRAINER,
    languages: tuple[str, ...] = ("English",),
    locations: tuple[str, ...] = (),
    is_active: bool = True,
) -> Resource:
    """Helper to create a Resource."""
    return Resource(
        id=email,
        name=name or email.split("@")[0].replace(".", " ").title(),
        kind=kind,
        languages=frozenset(languages),
        locations=frozenset(locations),
        is_active=is_active,
    )


def make_grant(
    resource_id: str,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    revoked: bool = False,
) -> OAuthGrant:
    """Helper to create a grant that is valid for a long time by default."""
    return OAuthGrant(
        resource_id=resource_id,
        access_token=access_token or f"access-{resource_id}",
        refresh_token=refresh_token or f"refresh-{resource_id}",
        expires_at=expires_at or datetime(2099, 1, 1, tzinfo=timezone.utc),
        provider_user_id=f"ou_{resource_id.split('@')[0]}",
        revoked=revoked,
    )


def make_merchant(**overrides: Any) -> MerchantDetails:
    """Helper to create MerchantDetails with sensible defaults."""
    values: dict[str, Any] = {
        "name": "Kopi Corner",
        "address": "12 Jalan Telawi, Bangsar, 59100 Kuala Lumpur",
        "contact_name": "Aisyah",
        "contact_phone": "012-345 6789",
        "contact_email": "owner@kopicorner.my",
        "manager_name": "Daniel Tan",
        "manager_email": "daniel.tan@storehub.com",
        "onboarding_summary": "Two outlets, moving from paper orders.",
        "hardware": ["iPad", "Receipt printer"],
    }
    values.update(overrides)
    return MerchantDetails(**values)


def ok(data: Optional[dict] = None) -> httpx.Response:
    return httpx.Response(200, json={"code": 0, "msg": "success", "data": data or {}})


def timed_event(
    event_id: str,
    start: datetime,
    end: datetime,
    **fields: Any,
) -> dict[str, Any]:
    """Provider JSON for a timed event."""
    return {
        "event_id": event_id,
        "summary": fields.pop("summary", event_id),
        "start_time": {"timestamp": str(int(start.timestamp())), "timezone": "Asia/Singapore"},
        "end_time": {"timestamp": str(int(end.timestamp())), "timezone": "Asia/Singapore"},
        "status": fields.pop("status", "confirmed"),
        **fields,
    }


def _event_bounds(event: dict[str, Any]) -> tuple[int, int]:
    def seconds(value: dict[str, Any]) -> int:
        if value.get("timestamp"):
            return int(value["timestamp"])
        return int(datetime.combine(date.fromisoformat(value["date"]), time.min, TZ).timestamp())
    return seconds(event["start_time"]), seconds(event["end_time"])


def _overlaps(event: dict[str, Any], start: int, end: int) -> bool:
    event_start, event_end = _event_bounds(event)
    return event_start < end and event_end > start


class FakeLark:
    """
    In-memory Lark tenant served through ``httpx.MockTransport``.

    Each authorized resource owns one calendar ``cal-<email>``; user tokens
    are ``access-<email>``. Failures are injected per operation name.
    """

    def __init__(self) -> None:
        self.calendars: dict[str, list[dict[str, Any]]] = {}
        self.events: dict[str, dict[str, dict[str, Any]]] = {}
        self.instances: dict[str, list[dict[str, Any]]] = {}
        self.freebusy: dict[str, list[tuple[datetime, datetime]]] = {}
        self.messages: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.token_owner: dict[str, str] = {}
        self._failures: dict[str, list] = {}
        self._ids = itertools.count(1)

    # --- setup -----------------------------------------------------------

    def add_resource(self, resource_id: str, calendar_type: str = "primary",
                     role: str = "owner") -> str:
        calendar_id = f"cal-{resource_id}"
        self.calendars[resource_id] = [{
            "calendar_id": calendar_id, "summary": resource_id,
            "type": calendar_type, "role": role,
        }]
        self.events.setdefault(calendar_id, {})
        self.token_owner[f"access-{resource_id}"] = resource_id
        return calendar_id

    def add_event(self, resource_id: str, start: datetime, end: datetime,
                  event_id: Optional[str] = None, **fields: Any) -> str:
        event_id = event_id or f"existing-{next(self._ids)}"
        self.events[f"cal-{resource_id}"][event_id] = timed_event(event_id, start, end, **fields)
        return event_id

    def add_recurring_event(self, resource_id: str, occurrences: list[tuple[datetime, datetime]],
                            event_id: str = "recurring-1", **fields: Any) -> str:
        first_start, first_end = occurrences[0]
        self.add_event(resource_id, first_start, first_end, event_id=event_id,
                       recurrence="FREQ=WEEKLY;BYDAY=MO,WE,FR", **fields)
        self.instances[event_id] = [
            timed_event(f"{event_id}_{int(start.timestamp())}", start, end)
            for start, end in occurrences
        ]
        return event_id

    def add_busy(self, resource_id: str, start: datetime, end: datetime) -> None:
        self.freebusy.setdefault(resource_id, []).append((start, end))

    def fail(self, operation: str, status: int = 503, times: Optional[int] = None) -> None:
        """Make ``operation`` answer ``status``; ``times=None`` fails forever."""
        self._failures[operation] = [status, times]

    # --- inspection ------------------------------------------------------

    def calendar_writes(self) -> list[httpx.Request]:
        return [
            r for r in self.requests
            if r.method in ("POST", "PATCH", "DELETE")
            and r.url.path.startswith(CALENDARS_PATH + "/")
        ]

    def events_of(self, resource_id: str) -> dict[str, dict[str, Any]]:
        return self.events.get(f"cal-{resource_id}", {})

    # --- transport -------------------------------------------------------

    def _injected(self, operation: str) -> Optional[httpx.Response]:
        entry = self._failures.get(operation)
        if entry is None:
            return None
        status, remaining = entry
        if remaining is not None:
            if remaining <= 0:
                return None
            entry[1] = remaining - 1
        code = 191002 if status == 403 else 190001
        return httpx.Response(status, json={"code": code, "msg": f"{operation} failed"})

    def _owner(self, request: httpx.Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        return self.token_owner.get(header.removeprefix("Bearer "))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if path == TENANT_TOKEN_PATH:
            return httpx.Response(200, json={
                "code": 0, "msg": "ok", "tenant_access_token": "tenant-token", "expire": 7200,
            })
        if path == MESSAGES_PATH:
            failure = self._injected("send_message")
            if failure is not None:
                return failure
            self.messages.append(body)
            return ok({"message_id": f"om_{next(self._ids)}"})

        owner = self._owner(request)
        if owner is None:
            return httpx.Response(401, json={"code": 99991668, "msg": "invalid access token"})

        if path == CALENDARS_PATH:
            failure = self._injected("list_calendars")
            if failure is not None:
                return failure
            return ok({"calendar_list": self.calendars.get(owner, []), "has_more": False})
        if path == FREEBUSY_PATH:
            failure = self._injected("freebusy")
            if failure is not None:
                return failure
            return self._freebusy(owner, body)

        parts = path[len(CALENDARS_PATH) + 1:].split("/")
        calendar_id = parts[0]
        events = self.events.setdefault(calendar_id, {})
        params = request.url.params

        if parts[1:] == ["events"] and request.method == "GET":
            failure = self._injected("list_events")
            if failure is not None:
                return failure
            start, end = int(params["start_time"]), int(params["end_time"])
            items = [
                e for e in events.values()
                if e.get("recurrence") or _overlaps(e, start, end)
            ]
            return ok({"items": items, "has_more": False})

        if parts[1:] == ["events"] and request.method == "POST":
            failure = self._injected("create_event")
            if failure is not None:
                return failure
            event_id = f"evt-{next(self._ids)}"
            events[event_id] = {"event_id": event_id, **body}
            return ok({"event": {"event_id": event_id}})

        event_id = parts[2]
        if len(parts) == 4 and parts[3] == "instances":
            failure = self._injected("list_instances")
            if failure is not None:
                return failure
            start, end = int(params["start_time"]), int(params["end_time"])
            items = [i for i in self.instances.get(event_id, []) if _overlaps(i, start, end)]
            return ok({"items": items, "has_more": False})

        operation = "update_event" if request.method == "PATCH" else "delete_event"
        failure = self._injected(operation)
        if failure is not None:
            return failure
        if event_id not in events:
            return httpx.Response(404, json={"code": 193001, "msg": "event not found"})
        if request.method == "PATCH":
            events[event_id].update(body)
            return ok({"event": events[event_id]})
        del events[event_id]
        return ok()

    def _freebusy(self, owner: str, body: dict[str, Any]) -> httpx.Response:
        range_start = datetime.fromisoformat(body["time_min"])
        range_end = datetime.fromisoformat(body["time_max"])
        windows = [
            {"start_time": start.isoformat(), "end_time": end.isoformat()}
            for start, end in self.freebusy.get(owner, [])
            if start < range_end and end > range_start
        ]
        return ok({"freebusy_list": windows})


@dataclass
class Harness:
    """Engine components wired to one FakeLark tenant."""
    lark: FakeLark
    store: InMemoryTokenStore
    tokens: TokenLifecycleManager
    client: LarkClient
    resolver: CalendarIdentityResolver
    aggregator: BusyTimeAggregator
    computer: SlotAvailabilityComputer
    matcher: ResourceMatcher
    crm: InMemoryCrmClient
    directory: ResourceDirectory

    def orchestrator(self, config: Optional[BookingConfig] = None,
                     vendor: Any = None) -> BookingOrchestrator:
        return BookingOrchestrator(
            self.directory,
            self.computer,
            self.matcher,
            self.client,
            self.resolver,
            self.crm,
            notifier=LarkNotifier(self.client),
            vendor=vendor,
            config=config or make_booking_config(),
            tz=TZ,
            vendor_name="Surftek",
        )


def build_harness(
    resources: Optional[list[Resource]] = None,
    authorized: Optional[list[Resource]] = None,
    lark: Optional[FakeLark] = None,
) -> Harness:
    """Wire the engine; ``authorized`` resources get a grant and a calendar."""
    lark = lark or FakeLark()
    for resource in authorized or []:
        lark.add_resource(resource.id)
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(lark.handler))
    provider_config = make_provider_config()
    oauth = LarkOAuthClient(http_client, config=provider_config, sleep=no_sleep)
    store = InMemoryTokenStore([make_grant(r.id) for r in authorized or []])
    tokens = TokenLifecycleManager(store, oauth, buffer_seconds=60)
    client = LarkClient(http_client, tokens, oauth, config=provider_config,
                        timezone_name="Asia/Singapore", sleep=no_sleep)
    resolver = CalendarIdentityResolver(client, ttl_seconds=300)
    aggregator = BusyTimeAggregator(client, resolver, tz=TZ)
    computer = SlotAvailabilityComputer(
        aggregator, slot_grid=build_slot_grid(SLOT_GRID), tz=TZ, max_concurrency=3
    )
    return Harness(
        lark=lark,
        store=store,
        tokens=tokens,
        client=client,
        resolver=resolver,
        aggregator=aggregator,
        computer=computer,
        matcher=ResourceMatcher(),
        crm=InMemoryCrmClient(),
        directory=ResourceDirectory(resources or []),
    )


@pytest.fixture
def trainers() -> list[Resource]:
    return [
        make_resource("alice@storehub.com", "Alice Lim", languages=("English", "Mandarin")),
        make_resource("bala@storehub.com", "Bala Kumar", languages=("English", "Tamil")),
    ]


@pytest.fixture
def installers() -> list[Resource]:
    return [
        make_resource("fairul@storehub.com", "Fairul", kind=ResourceKind.INSTALLER,
                      locations=("Within Klang Valley",)),
        make_resource("azhar@storehub.com", "Azhar", kind=ResourceKind.INSTALLER,
                      locations=("Penang",)),
    ]


@pytest.fixture
def harness(trainers, installers) -> Harness:
    resources = trainers + installers
    return build_harness(resources, authorized=resources)


def day_range(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, TZ)
    return start, start + timedelta(days=1)
