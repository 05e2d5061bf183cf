"""Bookable resources and their OAuth grants."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.utils import normalize_email


class ResourceKind(str, Enum):
    TRAINER = "trainer"
    INSTALLER = "installer"


class Resource(BaseModel):
    """A trainer or installer who can be booked, keyed by email."""
    id: str
    name: str
    kind: ResourceKind
    languages: frozenset[str] = Field(default_factory=frozenset)
    locations: frozenset[str] = Field(default_factory=frozenset)
    calendar_id: Optional[str] = None
    is_active: bool = True

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = normalize_email(value)
        if "@" not in normalized:
            raise ValueError(f"Resource id must be an email address, got {value!r}")
        return normalized


class OAuthGrant(BaseModel):
    """
    Access/refresh token pair for one resource.

    Only the token lifecycle manager writes grants after the initial
    authorization handshake. A revoked grant is kept, never deleted.
    """
    resource_id: str
    access_token: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1)
    expires_at: datetime
    scope: frozenset[str] = Field(default_factory=frozenset)
    provider_user_id: str = ""
    revoked: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("expires_at", "updated_at")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("Grant timestamps must be timezone-aware")
        return value

    def needs_refresh(self, now: datetime, buffer_seconds: int) -> bool:
        """True once ``now`` is inside the buffer window before expiry."""
        return now >= self.expires_at - timedelta(seconds=buffer_seconds)
