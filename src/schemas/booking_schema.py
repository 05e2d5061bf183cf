"""Booking request variants, committed bookings and cancellation models."""

from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator


class BookingKind(str, Enum):
    TRAINING = "training"
    INSTALLATION = "installation"


class InstallerType(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class MerchantDetails(BaseModel):
    """Merchant context used for event descriptions, tickets and notifications."""
    name: str
    address: Optional[str] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    manager_name: Optional[str] = None
    manager_email: Optional[str] = None
    onboarding_summary: Optional[str] = None
    hardware: list[str] = Field(default_factory=list)


class _BookingRequestBase(BaseModel):
    merchant_id: str = Field(min_length=1)
    merchant: MerchantDetails
    date: date
    slot_label: str = Field(min_length=1)
    existing_event_id: Optional[str] = None

    @field_validator("existing_event_id")
    @classmethod
    def _blank_event_id_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class TrainingRequest(_BookingRequestBase):
    """Training session with a trainer from the directory."""
    kind: Literal["training"] = "training"
    resource_override: Optional[str] = None
    required_languages: frozenset[str] = Field(default_factory=frozenset)


class InternalInstallationRequest(_BookingRequestBase):
    """Hardware installation by an in-house installer."""
    kind: Literal["internal_installation"] = "internal_installation"
    resource_override: Optional[str] = None


class ExternalInstallationRequest(_BookingRequestBase):
    """Hardware installation handed to the external vendor via a ticket."""
    kind: Literal["external_installation"] = "external_installation"
    device_type: Literal["ios", "android"] = "ios"
    latitude: float = 0.0
    longitude: float = 0.0


BookingRequest = Annotated[
    Union[TrainingRequest, InternalInstallationRequest, ExternalInstallationRequest],
    Field(discriminator="kind"),
]

_booking_request_adapter: TypeAdapter = TypeAdapter(BookingRequest)


def parse_booking_request(payload: dict[str, Any]) -> BookingRequest:
    """Validate an inbound payload into the matching request variant."""
    return _booking_request_adapter.validate_python(payload)


class Booking(BaseModel):
    """A committed (or partially committed) appointment."""
    merchant_id: str
    kind: BookingKind
    installer_type: Optional[InstallerType] = None
    assigned_resource: Optional[str] = None
    assigned_name: Optional[str] = None
    assignment_reason: Optional[str] = None
    date: date
    slot_label: str
    start: datetime
    end: datetime
    event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    crm_record_id: str
    state: str
    is_mock_event: bool = False
    vendor_ticket_id: Optional[str] = None
    vendor_case_number: Optional[str] = None
    crm_error: Optional[str] = None
    state_trace: list[str] = Field(default_factory=list)

    @property
    def crm_synced(self) -> bool:
        return self.crm_error is None


class CancellationRequest(BaseModel):
    merchant_id: str = Field(min_length=1)
    kind: BookingKind
    event_id: Optional[str] = None
    merchant: Optional[MerchantDetails] = None


class CancellationResult(BaseModel):
    success: bool
    message: str
    already_cancelled: bool = False
    event_deleted: bool = False
    crm_cleared: bool = False
