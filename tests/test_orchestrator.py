"""Tests for booking, rescheduling and cancellation."""

import json

import httpx
import pytest

from src.booking.orchestrator import (
    EXTERNAL_VENDOR,
    KEPT_ASSIGNEE,
    build_installation_request,
    is_mock_event_id,
)
from src.config import VendorConfig
from src.crm.fields import PORTAL_OBJECT, TRAINER_OBJECT
from src.errors import BookingValidationError, NoCandidate, ProviderUnavailable
from src.integrations.vendor import VendorTicketClient
from src.scheduling.matcher import MANUAL_OVERRIDE, ROTATION
from src.schemas.booking_schema import (
    BookingKind,
    CancellationRequest,
    ExternalInstallationRequest,
    InstallerType,
    InternalInstallationRequest,
    TrainingRequest,
)
from tests.conftest import (
    MONDAY,
    TUESDAY,
    at,
    make_booking_config,
    make_merchant,
    no_sleep,
)

MERCHANT_ID = "a0B5g00000KopiC"
ALICE = "alice@storehub.com"
BALA = "bala@storehub.com"
FAIRUL = "fairul@storehub.com"
MANAGER = "daniel.tan@storehub.com"


def training(**overrides) -> TrainingRequest:
    values = {
        "merchant_id": MERCHANT_ID,
        "merchant": make_merchant(),
        "date": MONDAY,
        "slot_label": "09:00-11:00",
    }
    values.update(overrides)
    return TrainingRequest(**values)


def installation(**overrides) -> InternalInstallationRequest:
    values = {
        "merchant_id": MERCHANT_ID,
        "merchant": make_merchant(),
        "date": MONDAY,
        "slot_label": "14:00-16:00",
    }
    values.update(overrides)
    return InternalInstallationRequest(**values)


def trainer_record(harness) -> dict:
    return harness.crm.records[(TRAINER_OBJECT, MERCHANT_ID)]


def portal_record(harness) -> dict:
    return harness.crm.records[(PORTAL_OBJECT, f"portal-{MERCHANT_ID}")]


def message_recipients(harness) -> list[str]:
    return [m["receive_id"] for m in harness.lark.messages]


class TestBookTraining:
    @pytest.mark.asyncio
    async def test_books_first_free_trainer_and_syncs_crm(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)

        booking = await harness.orchestrator().book(training())

        assert booking.assigned_resource == ALICE
        assert booking.assigned_name == "Alice Lim"
        assert booking.assignment_reason == ROTATION
        assert booking.start == at(MONDAY, "09:00")
        assert booking.end == at(MONDAY, "11:00")
        assert booking.calendar_id == f"cal-{ALICE}"
        assert not booking.is_mock_event
        assert booking.crm_synced
        assert booking.state == "crm_synced"
        assert booking.state_trace == ["requested", "provider_event_created", "crm_synced"]

        event = harness.lark.events_of(ALICE)[booking.event_id]
        assert event["summary"] == "Training: Kopi Corner"
        assert [a["email"] for a in event["attendees"]] == [
            ALICE, "owner@kopicorner.my", MANAGER
        ]
        assert "Salesforce: https://crm.test/lightning/r/" in event["description"]

        record = trainer_record(harness)
        assert record["Training_Event_Id__c"] == booking.event_id
        assert record["Training_Date__c"] == "2026-11-02T09:00:00+08:00"
        assert record["CSM_Name__c"] == "Alice Lim"
        assert message_recipients(harness) == [ALICE, MANAGER]

    @pytest.mark.asyncio
    async def test_busy_trainer_is_skipped(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.lark.add_busy(ALICE, at(MONDAY, "10:00"), at(MONDAY, "10:30"))

        booking = await harness.orchestrator().book(training())

        assert booking.assigned_resource == BALA
        assert harness.lark.events_of(ALICE) == {}

    @pytest.mark.asyncio
    async def test_no_free_trainer_rejects_without_writes(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        for trainer in (ALICE, BALA):
            harness.lark.add_event(trainer, at(MONDAY, "09:00"), at(MONDAY, "11:00"))

        with pytest.raises(NoCandidate):
            await harness.orchestrator().book(training())

        assert harness.lark.calendar_writes() == []
        assert trainer_record(harness) == {"Id": MERCHANT_ID}

    @pytest.mark.asyncio
    async def test_rotation_spreads_bookings(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.crm.add_merchant("a0B5g00000Other")
        orchestrator = harness.orchestrator()

        first = await orchestrator.book(training())
        second = await orchestrator.book(
            training(merchant_id="a0B5g00000Other", slot_label="14:00-16:00")
        )

        assert [first.assigned_resource, second.assigned_resource] == [ALICE, BALA]

    @pytest.mark.asyncio
    async def test_override_assigns_the_named_trainer(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)

        booking = await harness.orchestrator().book(training(resource_override=BALA))

        assert booking.assigned_resource == BALA
        assert booking.assignment_reason == MANUAL_OVERRIDE

    @pytest.mark.asyncio
    async def test_busy_override_is_rejected(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.lark.add_busy(BALA, at(MONDAY, "09:00"), at(MONDAY, "11:00"))

        with pytest.raises(NoCandidate):
            await harness.orchestrator().book(training(resource_override=BALA))
        assert harness.lark.calendar_writes() == []

    @pytest.mark.asyncio
    async def test_language_preference(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)

        booking = await harness.orchestrator().book(
            training(required_languages=frozenset({"Tamil"}))
        )

        assert booking.assigned_resource == BALA

    @pytest.mark.asyncio
    async def test_slot_by_start_time(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        booking = await harness.orchestrator().book(training(slot_label="14:00"))
        assert booking.start == at(MONDAY, "14:00")

    @pytest.mark.asyncio
    async def test_unknown_slot_is_a_validation_error(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        with pytest.raises(BookingValidationError):
            await harness.orchestrator().book(training(slot_label="08:00-09:00"))


class TestFailureModes:
    @pytest.mark.asyncio
    async def test_crm_failure_keeps_the_calendar_event(self, harness):
        booking = await harness.orchestrator().book(training())

        assert booking.state == "crm_sync_failed"
        assert not booking.crm_synced
        assert MERCHANT_ID in booking.crm_error
        assert booking.event_id in harness.lark.events_of(ALICE)

    @pytest.mark.asyncio
    async def test_calendar_failure_falls_back_to_mock_event(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.lark.fail("create_event")

        booking = await harness.orchestrator().book(training())

        assert booking.is_mock_event
        assert is_mock_event_id(booking.event_id)
        assert booking.calendar_id is None
        assert booking.state_trace == [
            "requested", "provider_event_failed", "mock_fallback", "crm_synced"
        ]
        assert trainer_record(harness)["Training_Event_Id__c"] == booking.event_id

    @pytest.mark.asyncio
    async def test_production_never_issues_mock_events(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.lark.fail("create_event")
        config = make_booking_config(environment="production")

        with pytest.raises(ProviderUnavailable):
            await harness.orchestrator(config=config).book(training())

        assert "Training_Event_Id__c" not in trainer_record(harness)

    @pytest.mark.asyncio
    async def test_mock_mode_skips_the_calendar(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        config = make_booking_config(mock_calendar_booking=True)

        booking = await harness.orchestrator(config=config).book(training())

        assert is_mock_event_id(booking.event_id)
        assert booking.state_trace == ["requested", "mock_fallback", "crm_synced"]
        assert harness.lark.calendar_writes() == []

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_the_booking(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.lark.fail("send_message")

        booking = await harness.orchestrator().book(training())

        assert booking.state == "crm_synced"
        assert harness.lark.messages == []


class TestReschedule:
    @pytest.mark.asyncio
    async def test_same_trainer_keeps_the_event(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        original = await orchestrator.book(training())

        moved = await orchestrator.reschedule(
            training(date=TUESDAY, existing_event_id=original.event_id)
        )

        assert moved.event_id == original.event_id
        assert moved.assigned_resource == ALICE
        assert moved.assignment_reason == KEPT_ASSIGNEE
        event = harness.lark.events_of(ALICE)[original.event_id]
        assert event["start_time"]["timestamp"] == str(int(at(TUESDAY, "09:00").timestamp()))
        assert trainer_record(harness)["Training_Date__c"] == "2026-11-03T09:00:00+08:00"

    @pytest.mark.asyncio
    async def test_book_with_existing_event_is_a_reschedule(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        original = await orchestrator.book(training())

        moved = await orchestrator.book(
            training(slot_label="14:00-16:00", existing_event_id=original.event_id)
        )

        assert moved.event_id == original.event_id
        assert list(harness.lark.events_of(ALICE)) == [original.event_id]

    @pytest.mark.asyncio
    async def test_vanished_event_is_recreated(self, harness):
        harness.crm.add_merchant(MERCHANT_ID, CSM_Name__c="Alice Lim")

        moved = await harness.orchestrator().reschedule(
            training(existing_event_id="evt-vanished")
        )

        assert moved.event_id != "evt-vanished"
        assert moved.event_id in harness.lark.events_of(ALICE)
        assert trainer_record(harness)["Training_Event_Id__c"] == moved.event_id

    @pytest.mark.asyncio
    async def test_busy_trainer_hands_over_and_old_event_is_deleted(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        original = await orchestrator.book(training())
        harness.lark.add_busy(ALICE, at(TUESDAY, "09:00"), at(TUESDAY, "11:00"))

        moved = await orchestrator.reschedule(
            training(date=TUESDAY, existing_event_id=original.event_id)
        )

        assert moved.assigned_resource == BALA
        assert moved.event_id in harness.lark.events_of(BALA)
        assert original.event_id not in harness.lark.events_of(ALICE)
        assert trainer_record(harness)["CSM_Name__c"] == "Bala Kumar"
        assert trainer_record(harness)["Training_Event_Id__c"] == moved.event_id

    @pytest.mark.asyncio
    async def test_mock_event_is_replaced_with_a_real_one(self, harness):
        harness.crm.add_merchant(MERCHANT_ID, CSM_Name__c="Alice Lim")

        moved = await harness.orchestrator().reschedule(
            training(existing_event_id="mock-event-1700000000000-abcd1234")
        )

        assert not moved.is_mock_event
        assert moved.event_id in harness.lark.events_of(ALICE)
        assert not any(r.method == "PATCH" for r in harness.lark.requests)

    @pytest.mark.asyncio
    async def test_reschedule_without_event_books_fresh(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        booking = await harness.orchestrator().reschedule(training())
        assert booking.assignment_reason == ROTATION


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_deletes_event_and_clears_crm(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        booking = await orchestrator.book(training())
        harness.lark.messages.clear()

        result = await orchestrator.cancel(CancellationRequest(
            merchant_id=MERCHANT_ID, kind=BookingKind.TRAINING, merchant=make_merchant()
        ))

        assert result.success and result.event_deleted and result.crm_cleared
        assert booking.event_id not in harness.lark.events_of(ALICE)
        record = trainer_record(harness)
        assert record["Training_Event_Id__c"] is None
        assert record["Training_Date__c"] is None
        assert record["Training_Status__c"] == "Not Scheduled"
        assert record["CSM_Name__c"] is None
        assert message_recipients(harness) == [ALICE, MANAGER]

    @pytest.mark.asyncio
    async def test_second_cancel_is_a_no_op(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        await orchestrator.book(training())
        request = CancellationRequest(merchant_id=MERCHANT_ID, kind=BookingKind.TRAINING)
        await orchestrator.cancel(request)
        writes = len(harness.lark.calendar_writes())

        result = await orchestrator.cancel(request)

        assert result.success
        assert result.already_cancelled
        assert len(harness.lark.calendar_writes()) == writes

    @pytest.mark.asyncio
    async def test_second_cancel_by_event_id_is_a_no_op(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        booking = await orchestrator.book(training())
        request = CancellationRequest(
            merchant_id=MERCHANT_ID,
            kind=BookingKind.TRAINING,
            event_id=booking.event_id,
            merchant=make_merchant(),
        )
        first = await orchestrator.cancel(request)
        assert first.event_deleted and not first.already_cancelled
        harness.lark.messages.clear()
        sent_before = len(harness.lark.requests)

        result = await orchestrator.cancel(request)

        assert result.success
        assert result.already_cancelled
        assert not result.event_deleted
        assert len(harness.lark.requests) == sent_before
        assert harness.lark.messages == []

    @pytest.mark.asyncio
    async def test_cancel_of_superseded_event_leaves_booking_alone(self, harness):
        harness.crm.add_merchant(
            MERCHANT_ID, Training_Event_Id__c="evt-current", CSM_Name__c="Alice Lim"
        )

        result = await harness.orchestrator().cancel(CancellationRequest(
            merchant_id=MERCHANT_ID,
            kind=BookingKind.TRAINING,
            event_id="evt-previous",
            merchant=make_merchant(),
        ))

        assert result.success and result.already_cancelled
        assert harness.lark.requests == []
        assert harness.lark.messages == []
        assert trainer_record(harness)["Training_Event_Id__c"] == "evt-current"

    @pytest.mark.asyncio
    async def test_event_missing_everywhere_counts_as_deleted(self, harness):
        harness.crm.add_merchant(MERCHANT_ID, Training_Event_Id__c="evt-ghost")

        result = await harness.orchestrator().cancel(
            CancellationRequest(merchant_id=MERCHANT_ID, kind=BookingKind.TRAINING)
        )

        assert result.success
        assert result.crm_cleared
        assert trainer_record(harness)["Training_Event_Id__c"] is None

    @pytest.mark.asyncio
    async def test_failed_delete_leaves_crm_untouched(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        booking = await orchestrator.book(training())
        harness.lark.fail("delete_event")

        result = await orchestrator.cancel(
            CancellationRequest(merchant_id=MERCHANT_ID, kind=BookingKind.TRAINING)
        )

        assert not result.success
        assert not result.crm_cleared
        assert trainer_record(harness)["Training_Event_Id__c"] == booking.event_id

    @pytest.mark.asyncio
    async def test_mock_event_is_cancelled_without_provider_calls(self, harness):
        mock_id = "mock-event-1700000000000-abcd1234"
        harness.crm.add_merchant(MERCHANT_ID, Training_Event_Id__c=mock_id)

        result = await harness.orchestrator().cancel(CancellationRequest(
            merchant_id=MERCHANT_ID, kind=BookingKind.TRAINING, event_id=mock_id
        ))

        assert result.success and result.event_deleted
        assert harness.lark.calendar_writes() == []

    @pytest.mark.asyncio
    async def test_unknown_merchant(self, harness):
        with pytest.raises(BookingValidationError):
            await harness.orchestrator().cancel(
                CancellationRequest(merchant_id="missing", kind=BookingKind.TRAINING)
            )


class TestInternalInstallation:
    @pytest.mark.asyncio
    async def test_installer_matched_by_location(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)

        booking = await harness.orchestrator().book(installation())

        assert booking.kind == BookingKind.INSTALLATION
        assert booking.installer_type == InstallerType.INTERNAL
        assert booking.assigned_resource == FAIRUL
        event = harness.lark.events_of(FAIRUL)[booking.event_id]
        assert event["summary"] == "Installation: Kopi Corner"

        record = trainer_record(harness)
        assert record["Installation_Date__c"] == "2026-11-02"
        assert record["Installation_Date_Time__c"] == "2026-11-02T14:00:00+08:00"
        assert record["Installation_Event_Id__c"] == booking.event_id
        portal = portal_record(harness)
        assert portal["Installer_Name__c"] == "Fairul"
        assert portal["Installation_Event_ID__c"] == booking.event_id

    @pytest.mark.asyncio
    async def test_no_installer_for_region(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        merchant = make_merchant(address="Jalan Wong Ah Fook, Johor Bahru, Johor")

        with pytest.raises(NoCandidate):
            await harness.orchestrator().book(installation(merchant=merchant))

    @pytest.mark.asyncio
    async def test_cancel_uses_portal_installer(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        orchestrator = harness.orchestrator()
        booking = await orchestrator.book(installation())

        result = await orchestrator.cancel(
            CancellationRequest(merchant_id=MERCHANT_ID, kind=BookingKind.INSTALLATION)
        )

        assert result.success and result.crm_cleared
        assert booking.event_id not in harness.lark.events_of(FAIRUL)
        assert portal_record(harness)["Installer_Name__c"] is None
        assert trainer_record(harness)["Installation_Event_Id__c"] is None


def vendor_client(body: dict, requests: list) -> VendorTicketClient:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=body)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    config = VendorConfig(api_url="https://vendor.test/ticket", api_token="token", name="Surftek")
    return VendorTicketClient(http_client, config=config, max_retries=0, sleep=no_sleep)


def external(**overrides) -> ExternalInstallationRequest:
    values = {
        "merchant_id": MERCHANT_ID,
        "merchant": make_merchant(address="Lot 5, Jalan Teluk Sisek, 25000 Kuantan, Pahang"),
        "date": MONDAY,
        "slot_label": "09:00-11:00",
        "device_type": "android",
    }
    values.update(overrides)
    return ExternalInstallationRequest(**values)


class TestExternalVendor:
    @pytest.mark.asyncio
    async def test_ticket_crm_fields_and_follow_up(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        harness.crm.add_user(MANAGER, "005DANIEL")
        requests: list = []
        vendor = vendor_client(
            {"ErrorCode": "0", "Ticket": {"TicketId": 981, "CaseNum": "CS-1001"}}, requests
        )

        booking = await harness.orchestrator(vendor=vendor).book(external())

        assert booking.installer_type == InstallerType.EXTERNAL
        assert booking.assigned_name == "Surftek"
        assert booking.assignment_reason == EXTERNAL_VENDOR
        assert booking.vendor_ticket_id == "981"
        assert booking.vendor_case_number == "CS-1001"
        assert booking.state_trace == ["requested", "vendor_assigned", "crm_synced"]
        assert harness.lark.calendar_writes() == []

        payload = json.loads(requests[0].content)
        assert payload["Appointment"]["State"] == "Pahang"
        assert payload["Appointment"]["ServiceId"] == 39
        assert payload["Ticket"]["Phone"] == "60123456789"

        record = trainer_record(harness)
        assert record["Assigned_Installer__c"] == "Surftek"
        assert record["Surftek_Ticket_ID__c"] == "981"
        assert record["Installation_Date__c"] == "2026-11-02"
        assert portal_record(harness)["Installer_Name__c"] == "External Vendor"

        task = harness.crm.tasks[0]
        assert task.subject == "[Portal] Confirm external installation for Kopi Corner"
        assert task.owner_id == "005DANIEL"
        assert "CS-1001" in task.description
        assert message_recipients(harness) == [MANAGER]

    @pytest.mark.asyncio
    async def test_vendor_rejection_still_records_the_handover(self, harness):
        harness.crm.add_merchant(MERCHANT_ID)
        vendor = vendor_client({"ErrorCode": "-10001"}, [])

        booking = await harness.orchestrator(vendor=vendor).book(external())

        assert booking.vendor_ticket_id is None
        assert booking.state == "crm_synced"
        assert "Surftek_Ticket_ID__c" not in trainer_record(harness)
        assert "not created" in harness.crm.tasks[0].description


class TestBuildInstallationRequest:
    def _build(self, address: str, **kwargs):
        return build_installation_request(
            merchant_id=MERCHANT_ID,
            merchant=make_merchant(address=address),
            date=MONDAY,
            slot_label="09:00-11:00",
            **kwargs,
        )

    def test_covered_region_goes_internal(self):
        request = self._build("Georgetown, Penang", resource_override="azhar@storehub.com")
        assert isinstance(request, InternalInstallationRequest)
        assert request.resource_override == "azhar@storehub.com"

    def test_uncovered_region_goes_to_vendor(self):
        request = self._build("Kuching, Sarawak", device_type="android")
        assert isinstance(request, ExternalInstallationRequest)
        assert request.device_type == "android"

    def test_explicit_flag_wins(self):
        assert isinstance(
            self._build("Kuching, Sarawak", use_external_vendor=False),
            InternalInstallationRequest,
        )
        assert isinstance(
            self._build("Bangsar, Kuala Lumpur", use_external_vendor=True),
            ExternalInstallationRequest,
        )
