"""Calendar event drafts for trainings and installations."""

from datetime import datetime
from typing import Optional

from src.crm.fields import TRAINER_OBJECT
from src.schemas.booking_schema import BookingKind, MerchantDetails
from src.schemas.provider_schema import EventDraft
from src.schemas.resource_schema import Resource


def crm_record_url(instance_url: str, merchant_id: str) -> str:
    return f"{instance_url.rstrip('/')}/lightning/r/{TRAINER_OBJECT}/{merchant_id}/view"


def _description(merchant: MerchantDetails, record_url: str) -> str:
    parts = [f"Merchant: {merchant.name}"]
    if merchant.address:
        parts.append(f"Store: {merchant.address}")
    if merchant.contact_name or merchant.contact_phone:
        contact = merchant.contact_name or "N/A"
        if merchant.contact_phone:
            contact += f" ({merchant.contact_phone})"
        parts.append(f"Contact: {contact}")
    if merchant.hardware:
        parts.append(f"Hardware: {', '.join(merchant.hardware)}")
    if merchant.onboarding_summary:
        parts.append(f"Summary: {merchant.onboarding_summary}")
    if merchant.manager_name:
        parts.append(f"Manager: {merchant.manager_name}")
    parts.append(f"Salesforce: {record_url}")
    return " | ".join(parts)


def build_event_draft(
    kind: BookingKind,
    merchant: MerchantDetails,
    resource: Resource,
    start: datetime,
    end: datetime,
    record_url: str,
) -> EventDraft:
    """Event placed on the assignee's calendar, with merchant and manager invited."""
    label = "Training" if kind == BookingKind.TRAINING else "Installation"
    attendees: list[str] = []
    for email in (resource.id, merchant.contact_email, merchant.manager_email):
        email = _clean(email)
        if email and email not in attendees:
            attendees.append(email)
    return EventDraft(
        summary=f"{label}: {merchant.name}",
        description=_description(merchant, record_url),
        start=start,
        end=end,
        attendees=attendees,
    )


def _clean(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    return email.strip().lower()
