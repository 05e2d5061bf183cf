"""Tests for notification messages and best-effort delivery."""

import pytest

from src.integrations.notifications import (
    LarkNotifier,
    booking_message,
    cancellation_message,
    notify_all,
    vendor_assignment_message,
)
from src.schemas.booking_schema import Booking, BookingKind
from tests.conftest import MONDAY, at, build_harness, make_merchant


class FlakyNotifier:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, recipient_email: str, text: str) -> None:
        if recipient_email.startswith("broken"):
            raise RuntimeError("delivery failed")
        self.sent.append(recipient_email)


class TestNotifyAll:
    @pytest.mark.asyncio
    async def test_skips_blanks_and_duplicates(self):
        notifier = FlakyNotifier()

        sent = await notify_all(
            notifier, ["a@storehub.com", None, "A@StoreHub.com", "", "b@storehub.com"], "hi"
        )

        assert sent == 2
        assert notifier.sent == ["a@storehub.com", "b@storehub.com"]

    @pytest.mark.asyncio
    async def test_failures_are_counted_not_raised(self):
        notifier = FlakyNotifier()
        sent = await notify_all(notifier, ["broken@storehub.com", "ok@storehub.com"], "hi")
        assert sent == 1

    @pytest.mark.asyncio
    async def test_no_notifier(self):
        assert await notify_all(None, ["a@storehub.com"], "hi") == 0

    @pytest.mark.asyncio
    async def test_lark_notifier_sends_by_email(self):
        harness = build_harness()

        await LarkNotifier(harness.client).send("daniel.tan@storehub.com", "hello")

        assert harness.lark.messages[0]["receive_id"] == "daniel.tan@storehub.com"


class TestMessages:
    def test_booking_message(self):
        booking = Booking(
            merchant_id="a0B1",
            kind=BookingKind.TRAINING,
            assigned_name="Alice Lim",
            date=MONDAY,
            slot_label="09:00-11:00",
            start=at(MONDAY, "09:00"),
            end=at(MONDAY, "11:00"),
            crm_record_id="a0B1",
            state="crm_synced",
        )

        text = booking_message(booking, make_merchant(), rescheduled=True)

        assert text.splitlines()[0] == "Training rescheduled for Kopi Corner"
        assert "Date: 2026-11-02 (09:00-11:00)" in text
        assert "Assigned: Alice Lim" in text
        assert "Contact: Aisyah - 012-345 6789" in text

    def test_cancellation_message(self):
        assert cancellation_message(BookingKind.INSTALLATION, "Kopi Corner", "2026-11-02") == (
            "Installation cancelled for Kopi Corner (was 2026-11-02)"
        )
        assert cancellation_message(BookingKind.TRAINING, "Kopi Corner", None) == (
            "Training cancelled for Kopi Corner"
        )

    def test_vendor_assignment_message(self):
        text = vendor_assignment_message(make_merchant(), "2026-11-02 (09:00-11:00)", "CS-1")
        assert text.endswith("assigned to the external vendor, case CS-1")
