"""
Validated result types for calendar provider calls.

Every response body is parsed into one of these models at the client
boundary. Extra fields are ignored; missing required fields raise a
pydantic ValidationError, which the client converts to
ProviderUnavailable.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class TokenPayload(_ProviderModel):
    """``data`` of the OAuth code exchange and refresh endpoints."""
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_in: int = Field(gt=0)
    open_id: str = ""
    scope: str = ""


class TenantTokenResponse(_ProviderModel):
    code: int
    msg: str = ""
    tenant_access_token: Optional[str] = None
    expire: int = 0


class CalendarEntry(_ProviderModel):
    calendar_id: str = Field(min_length=1)
    summary: str = ""
    type: str = ""
    role: str = ""
    is_deleted: bool = False


class CalendarListPayload(_ProviderModel):
    calendar_list: list[CalendarEntry] = Field(default_factory=list)
    has_more: bool = False
    page_token: str = ""


class EventTime(_ProviderModel):
    """Either ``timestamp`` (Unix seconds) or ``date`` (all-day) is set."""
    timestamp: Optional[str] = None
    date: Optional[str] = None
    timezone: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _numeric_timestamp(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip().lstrip("-").isdigit():
            raise ValueError(f"Event timestamp is not numeric: {value!r}")
        return value


class ProviderEvent(_ProviderModel):
    event_id: str = Field(min_length=1)
    summary: str = ""
    start_time: EventTime
    end_time: EventTime
    status: str = "confirmed"
    recurrence: str = ""
    free_busy_status: Optional[str] = None
    recurring_event_id: Optional[str] = None

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence.strip())


class EventListPayload(_ProviderModel):
    items: list[ProviderEvent] = Field(default_factory=list)
    has_more: bool = False
    page_token: str = ""


class FreeBusyWindow(_ProviderModel):
    """RFC 3339 busy window; an offset-less value fails validation."""
    start_time: datetime
    end_time: datetime

    @field_validator("start_time", "end_time")
    @classmethod
    def _require_offset(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("Free/busy times must carry a UTC offset")
        return value


class FreeBusyUser(_ProviderModel):
    user_id: str = ""
    busy_time: list[FreeBusyWindow] = Field(default_factory=list)


class EventRef(_ProviderModel):
    event_id: str = Field(min_length=1)


class CreatedEvent(_ProviderModel):
    event: EventRef


class MessagePayload(_ProviderModel):
    message_id: str = Field(min_length=1)


class EventDraft(BaseModel):
    """Event fields sent on create and update."""
    summary: str = Field(min_length=1)
    description: str = ""
    start: datetime
    end: datetime
    attendees: list[str] = Field(default_factory=list)

    def to_payload(self, timezone_name: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "summary": self.summary,
            "description": self.description,
            "start_time": {
                "timestamp": str(int(self.start.timestamp())),
                "timezone": timezone_name,
            },
            "end_time": {
                "timestamp": str(int(self.end.timestamp())),
                "timezone": timezone_name,
            },
            "visibility": "default",
            "need_notification": False,
        }
        if self.attendees:
            payload["attendees"] = [{"email": email} for email in self.attendees]
        return payload
