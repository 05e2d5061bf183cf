"""CRM object and field names written by the booking engine."""

from dataclasses import dataclass
from typing import Any, Optional

from src.schemas.booking_schema import Booking, BookingKind

TRAINER_OBJECT = "Onboarding_Trainer__c"
PORTAL_OBJECT = "Onboarding_Portal__c"

NOT_SCHEDULED = "Not Scheduled"
EXTERNAL_VENDOR_LABEL = "External Vendor"


@dataclass(frozen=True)
class BookingFieldMap:
    """Trainer-record fields holding one kind of booking."""
    date_field: str
    event_id_field: str
    datetime_field: Optional[str] = None
    assignee_field: Optional[str] = None
    status_field: Optional[str] = None


TRAINING_FIELDS = BookingFieldMap(
    date_field="Training_Date__c",
    event_id_field="Training_Event_Id__c",
    assignee_field="CSM_Name__c",
    status_field="Training_Status__c",
)

INSTALLATION_FIELDS = BookingFieldMap(
    date_field="Installation_Date__c",
    event_id_field="Installation_Event_Id__c",
    datetime_field="Installation_Date_Time__c",
)

# Portal sub-record kept alongside the trainer record for installations.
PORTAL_INSTALLER_NAME = "Installer_Name__c"
PORTAL_EVENT_ID = "Installation_Event_ID__c"
PORTAL_DATE_TIME = "Installation_Date_Time__c"

VENDOR_ASSIGNEE = "Assigned_Installer__c"
VENDOR_TICKET_ID = "Surftek_Ticket_ID__c"
VENDOR_CASE_NUMBER = "Surftek_Case_Number__c"


def field_map(kind: BookingKind) -> BookingFieldMap:
    return TRAINING_FIELDS if kind == BookingKind.TRAINING else INSTALLATION_FIELDS


def trainer_record_fields(booking: Booking) -> dict[str, Any]:
    """Trainer-record update for a placed training or internal installation."""
    fields = field_map(booking.kind)
    start = booking.start.isoformat(timespec="seconds")
    update: dict[str, Any] = {fields.event_id_field: booking.event_id}
    if booking.kind == BookingKind.TRAINING:
        update[fields.date_field] = start
    else:
        update[fields.date_field] = booking.date.isoformat()
    if fields.datetime_field:
        update[fields.datetime_field] = start
    if fields.assignee_field and booking.assigned_name:
        update[fields.assignee_field] = booking.assigned_name
    return update


def portal_record_fields(booking: Booking) -> dict[str, Any]:
    return {
        PORTAL_INSTALLER_NAME: booking.assigned_name,
        PORTAL_EVENT_ID: booking.event_id,
        PORTAL_DATE_TIME: booking.start.isoformat(timespec="seconds"),
    }


def cleared_fields(kind: BookingKind) -> dict[str, Any]:
    """Trainer-record update that removes a booking."""
    fields = field_map(kind)
    update: dict[str, Any] = {fields.date_field: None, fields.event_id_field: None}
    if fields.datetime_field:
        update[fields.datetime_field] = None
    if fields.assignee_field:
        update[fields.assignee_field] = None
    if fields.status_field:
        update[fields.status_field] = NOT_SCHEDULED
    return update


def cleared_portal_fields() -> dict[str, Any]:
    return {PORTAL_INSTALLER_NAME: None, PORTAL_EVENT_ID: None, PORTAL_DATE_TIME: None}


def vendor_record_fields(booking: Booking, vendor_name: str) -> dict[str, Any]:
    """Trainer-record update for an installation handed to the external vendor."""
    update: dict[str, Any] = {
        INSTALLATION_FIELDS.date_field: booking.date.isoformat(),
        VENDOR_ASSIGNEE: vendor_name,
    }
    if INSTALLATION_FIELDS.datetime_field:
        update[INSTALLATION_FIELDS.datetime_field] = booking.start.isoformat(timespec="seconds")
    if booking.vendor_ticket_id:
        update[VENDOR_TICKET_ID] = booking.vendor_ticket_id
    if booking.vendor_case_number:
        update[VENDOR_CASE_NUMBER] = booking.vendor_case_number
    return update


def vendor_portal_fields(booking: Booking) -> dict[str, Any]:
    return {
        PORTAL_INSTALLER_NAME: EXTERNAL_VENDOR_LABEL,
        PORTAL_DATE_TIME: booking.start.isoformat(timespec="seconds"),
    }
