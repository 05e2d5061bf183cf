"""
Best-effort notifications to resources and account managers.

Message delivery never decides the outcome of a booking, cancellation or
poll: every failure is logged and counted, never raised.
"""

import logging
from typing import Iterable, Optional, Protocol

from src.provider.lark_client import LarkClient
from src.schemas.booking_schema import Booking, BookingKind, MerchantDetails

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send(self, recipient_email: str, text: str) -> None: ...


class LarkNotifier:
    """Delivers plain-text bot messages addressed by email."""

    def __init__(self, client: LarkClient) -> None:
        self._client = client

    async def send(self, recipient_email: str, text: str) -> None:
        await self._client.send_text_message(recipient_email, text, receive_id_type="email")


def _kind_label(kind: BookingKind) -> str:
    return "Training" if kind == BookingKind.TRAINING else "Installation"


def booking_message(booking: Booking, merchant: MerchantDetails, rescheduled: bool = False) -> str:
    action = "rescheduled" if rescheduled else "booked"
    lines = [
        f"{_kind_label(booking.kind)} {action} for {merchant.name}",
        f"Date: {booking.date.isoformat()} ({booking.slot_label})",
    ]
    if booking.assigned_name:
        lines.append(f"Assigned: {booking.assigned_name}")
    if merchant.address:
        lines.append(f"Address: {merchant.address}")
    if merchant.contact_name or merchant.contact_phone:
        contact = f"{merchant.contact_name or 'N/A'} - {merchant.contact_phone or 'N/A'}"
        lines.append(f"Contact: {contact}")
    return "\n".join(lines)


def cancellation_message(kind: BookingKind, merchant_name: str, when: Optional[str]) -> str:
    text = f"{_kind_label(kind)} cancelled for {merchant_name}"
    if when:
        text += f" (was {when})"
    return text


def vendor_assignment_message(
    merchant: MerchantDetails, date_label: str, case_number: Optional[str]
) -> str:
    text = f"Installation for {merchant.name} on {date_label} assigned to the external vendor"
    if case_number:
        text += f", case {case_number}"
    return text


def menu_submission_message(merchant_name: str, submission_link: str, record_url: str) -> str:
    return (
        f"{merchant_name} submitted their menu/product information.\n"
        f"Menu link: {submission_link}\n"
        f"Salesforce: {record_url}"
    )


async def notify_all(
    notifier: Optional[Notifier], recipients: Iterable[Optional[str]], text: str
) -> int:
    """Send ``text`` to every distinct recipient; return how many succeeded."""
    if notifier is None:
        return 0
    sent = 0
    seen: set[str] = set()
    for recipient in recipients:
        if not recipient or recipient.lower() in seen:
            continue
        seen.add(recipient.lower())
        try:
            await notifier.send(recipient, text)
            sent += 1
        except Exception as e:
            logger.warning("Notification to %s failed: %s", recipient, e)
    return sent
