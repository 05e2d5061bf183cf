"""
Lark calendar and messaging API client.

Calendar calls run with the resource's own user access token; bot messages
run with the app's tenant token. Every response is validated into a
result type from ``src.schemas.provider_schema`` before it leaves this
module.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from src.config import ProviderConfig, settings
from src.errors import ProviderUnavailable
from src.provider.oauth import LarkOAuthClient
from src.provider.token_manager import TokenLifecycleManager
from src.provider.transport import (
    Sleeper,
    decode_envelope,
    is_token_rejection,
    parse_data,
    send_with_retries,
)
from src.schemas.provider_schema import (
    CalendarEntry,
    CalendarListPayload,
    CreatedEvent,
    EventDraft,
    EventListPayload,
    FreeBusyUser,
    FreeBusyWindow,
    MessagePayload,
    ProviderEvent,
)
from src.utils import format_rfc3339, to_unix_seconds

logger = logging.getLogger(__name__)

CALENDARS_PATH = "/open-apis/calendar/v4/calendars"
FREEBUSY_PATH = "/open-apis/calendar/v4/freebusy/list"
MESSAGES_PATH = "/open-apis/im/v1/messages"

CALENDAR_PAGE_SIZE = 50
EVENT_PAGE_SIZE = 500
# Guards against a provider that keeps returning has_more forever.
MAX_PAGES = 20


def _segment(value: str) -> str:
    return quote(value, safe="")


class LarkClient:
    """Calendar reads/writes on behalf of a resource, plus bot messages."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tokens: TokenLifecycleManager,
        oauth: LarkOAuthClient,
        config: ProviderConfig = settings.provider,
        timezone_name: str = settings.scheduling.timezone,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._http_client = http_client
        self._tokens = tokens
        self._oauth = oauth
        self._config = config
        self._timezone_name = timezone_name
        self._sleep = sleep

    @property
    def tokens(self) -> TokenLifecycleManager:
        return self._tokens

    def _url(self, path: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{path}"

    async def _send(
        self,
        token: str,
        method: str,
        path: str,
        params: Optional[dict[str, Any]],
        json_body: Optional[dict[str, Any]],
        idempotent: Optional[bool] = None,
    ) -> httpx.Response:
        return await send_with_retries(
            self._http_client,
            method,
            self._url(path),
            idempotent=idempotent,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json; charset=utf-8",
            },
            params=params,
            json_body=json_body,
            max_retries=self._config.max_retries,
            backoff_seconds=self._config.backoff_seconds,
            sleep=self._sleep,
        )

    async def _user_request(
        self,
        resource_id: str,
        method: str,
        path: str,
        context: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
        idempotent: Optional[bool] = None,
    ) -> dict[str, Any]:
        """Call the API as ``resource_id``; a rejected token is refreshed once."""
        token = await self._tokens.get_valid_access_token(resource_id)
        response = await self._send(token, method, path, params, json_body, idempotent)
        if is_token_rejection(response):
            logger.info("Access token rejected for %s, refreshing and retrying", resource_id)
            token = await self._tokens.get_valid_access_token(resource_id, rejected_token=token)
            response = await self._send(token, method, path, params, json_body, idempotent)
        return decode_envelope(response, context)

    async def list_calendars(self, resource_id: str) -> list[CalendarEntry]:
        calendars: list[CalendarEntry] = []
        page_token = ""
        for _ in range(MAX_PAGES):
            params: dict[str, Any] = {"page_size": CALENDAR_PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token
            envelope = await self._user_request(
                resource_id, "GET", CALENDARS_PATH, "list calendars", params=params
            )
            page = parse_data(envelope, CalendarListPayload, "list calendars")
            calendars.extend(c for c in page.calendar_list if not c.is_deleted)
            if not page.has_more or not page.page_token:
                break
            page_token = page.page_token
        return calendars

    async def query_freebusy(
        self, resource_id: str, start: datetime, end: datetime
    ) -> list[FreeBusyWindow]:
        """
        Busy windows reported by the free/busy endpoint.

        The provider returns either a flat list of windows or one entry per
        user with a nested ``busy_time`` list; both shapes are accepted.
        """
        tz = start.tzinfo
        user_id = await self._tokens.provider_user_id(resource_id)
        body = {
            "time_min": format_rfc3339(start, tz),
            "time_max": format_rfc3339(end, tz),
            "user_id": user_id,
            "only_busy": True,
            "include_external_calendar": True,
        }
        envelope = await self._user_request(
            resource_id, "POST", FREEBUSY_PATH, "free/busy", json_body=body,
            params={"user_id_type": "open_id"},
            idempotent=True,
        )
        data = envelope.get("data")
        entries = data.get("freebusy_list") if isinstance(data, dict) else None
        if entries is None:
            return []
        if not isinstance(entries, list):
            raise ProviderUnavailable("free/busy: freebusy_list is not a list")

        windows: list[FreeBusyWindow] = []
        try:
            for entry in entries:
                if isinstance(entry, dict) and "busy_time" in entry:
                    windows.extend(FreeBusyUser.model_validate(entry).busy_time)
                else:
                    windows.append(FreeBusyWindow.model_validate(entry))
        except ValidationError as exc:
            raise ProviderUnavailable(
                f"free/busy: malformed provider payload ({exc.error_count()} errors)"
            ) from exc
        return windows

    async def _list_event_pages(
        self, resource_id: str, path: str, params: dict[str, Any], context: str
    ) -> list[ProviderEvent]:
        events: list[ProviderEvent] = []
        page_token = ""
        for _ in range(MAX_PAGES):
            page_params = dict(params, page_size=EVENT_PAGE_SIZE)
            if page_token:
                page_params["page_token"] = page_token
            envelope = await self._user_request(
                resource_id, "GET", path, context, params=page_params
            )
            page = parse_data(envelope, EventListPayload, context)
            events.extend(page.items)
            if not page.has_more or not page.page_token:
                break
            page_token = page.page_token
        return events

    async def list_events(
        self, resource_id: str, calendar_id: str, start: datetime, end: datetime
    ) -> list[ProviderEvent]:
        """Raw events overlapping ``[start, end)``; recurring series are not expanded."""
        path = f"{CALENDARS_PATH}/{_segment(calendar_id)}/events"
        params = {"start_time": to_unix_seconds(start), "end_time": to_unix_seconds(end)}
        return await self._list_event_pages(resource_id, path, params, "list events")

    async def list_event_instances(
        self,
        resource_id: str,
        calendar_id: str,
        event_id: str,
        start: datetime,
        end: datetime,
    ) -> list[ProviderEvent]:
        """Concrete occurrences of a recurring event within ``[start, end)``."""
        path = f"{CALENDARS_PATH}/{_segment(calendar_id)}/events/{_segment(event_id)}/instances"
        params = {"start_time": to_unix_seconds(start), "end_time": to_unix_seconds(end)}
        return await self._list_event_pages(resource_id, path, params, "event instances")

    async def create_event(self, resource_id: str, calendar_id: str, draft: EventDraft) -> str:
        """Create an event and return its provider id."""
        envelope = await self._user_request(
            resource_id,
            "POST",
            f"{CALENDARS_PATH}/{_segment(calendar_id)}/events",
            "create event",
            json_body=draft.to_payload(self._timezone_name),
        )
        created = parse_data(envelope, CreatedEvent, "create event")
        return created.event.event_id

    async def update_event(
        self, resource_id: str, calendar_id: str, event_id: str, draft: EventDraft
    ) -> None:
        """Patch time and description of an existing event in place."""
        await self._user_request(
            resource_id,
            "PATCH",
            f"{CALENDARS_PATH}/{_segment(calendar_id)}/events/{_segment(event_id)}",
            "update event",
            json_body=draft.to_payload(self._timezone_name),
            idempotent=True,
        )

    async def delete_event(self, resource_id: str, calendar_id: str, event_id: str) -> None:
        if not event_id:
            raise ValueError("Refusing to delete an event without an id")
        await self._user_request(
            resource_id,
            "DELETE",
            f"{CALENDARS_PATH}/{_segment(calendar_id)}/events/{_segment(event_id)}",
            "delete event",
        )

    async def send_text_message(
        self, receive_id: str, text: str, receive_id_type: str = "email"
    ) -> str:
        """Send a bot text message and return the message id."""
        token = await self._oauth.get_tenant_access_token()
        response = await self._send(
            token,
            "POST",
            MESSAGES_PATH,
            {"receive_id_type": receive_id_type},
            {"receive_id": receive_id, "msg_type": "text", "content": _text_content(text)},
        )
        envelope = decode_envelope(response, "send message")
        return parse_data(envelope, MessagePayload, "send message").message_id


def _text_content(text: str) -> str:
    return json.dumps({"text": text}, ensure_ascii=False)
