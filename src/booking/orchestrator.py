"""
Booking orchestration for trainings and installations.

A booking re-checks availability for the requested slot, assigns one free
resource, writes the calendar event and only then writes the CRM. The
calendar is authoritative for time; the CRM write is reconciled later if
it fails, never rolled back.

Usage:
    orchestrator = BookingOrchestrator(directory, computer, matcher, client, resolver, crm)
    booking = await orchestrator.book(TrainingRequest(...))
    await orchestrator.cancel(CancellationRequest(merchant_id=..., kind=BookingKind.TRAINING))
"""

import time
import uuid
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Optional, Union
from zoneinfo import ZoneInfo

from src.booking.event_builder import build_event_draft, crm_record_url
from src.booking.state_machine import BookingStateMachine, BookingTrigger
from src.config import BookingConfig, settings
from src.crm.client import CrmClient
from src.crm.fields import (
    PORTAL_INSTALLER_NAME,
    PORTAL_OBJECT,
    TRAINER_OBJECT,
    TRAINING_FIELDS,
    cleared_fields,
    cleared_portal_fields,
    field_map,
    portal_record_fields,
    trainer_record_fields,
    vendor_portal_fields,
    vendor_record_fields,
)
from src.errors import (
    AuthorizationError,
    BookingEngineError,
    BookingValidationError,
    CrmSyncFailed,
    EventNotFound,
    NoCandidate,
    NoWritableCalendar,
    ProviderError,
    ProviderUnavailable,
)
from src.integrations.notifications import (
    Notifier,
    booking_message,
    cancellation_message,
    notify_all,
    vendor_assignment_message,
)
from src.integrations.vendor import VendorTicket, VendorTicketClient
from src.logging_context import get_request_logger, new_request_id
from src.provider.identity_resolver import CalendarIdentityResolver
from src.provider.lark_client import LarkClient
from src.scheduling.availability import SlotAvailabilityComputer
from src.scheduling.location_matcher import is_covered_region
from src.scheduling.matcher import AssignmentPolicy, ResourceMatcher
from src.scheduling.slots import find_slot, slot_bounds
from src.schemas.availability_schema import AvailabilityFilters, Slot
from src.schemas.booking_schema import (
    Booking,
    BookingKind,
    BookingRequest,
    CancellationRequest,
    CancellationResult,
    ExternalInstallationRequest,
    InstallerType,
    InternalInstallationRequest,
    MerchantDetails,
    TrainingRequest,
)
from src.schemas.crm_schema import CrmTask
from src.schemas.provider_schema import EventDraft
from src.schemas.resource_schema import Resource, ResourceKind
from src.tools.directory import ResourceDirectory

logger = get_request_logger(__name__)

KEPT_ASSIGNEE = "kept-assignee"
EXTERNAL_VENDOR = "external-vendor"
MOCK_EVENT_PREFIX = "mock-event-"

InternalRequest = Union[TrainingRequest, InternalInstallationRequest]
EventWrite = Callable[[str], Awaitable[str]]


def mock_event_id() -> str:
    return f"{MOCK_EVENT_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def is_mock_event_id(event_id: str) -> bool:
    return event_id.startswith(MOCK_EVENT_PREFIX)


def build_installation_request(
    *,
    merchant_id: str,
    merchant: MerchantDetails,
    date: date,
    slot_label: str,
    existing_event_id: Optional[str] = None,
    use_external_vendor: Optional[bool] = None,
    resource_override: Optional[str] = None,
    device_type: str = "ios",
    latitude: float = 0.0,
    longitude: float = 0.0,
) -> Union[InternalInstallationRequest, ExternalInstallationRequest]:
    """
    Pick the installation variant once, up front.

    An explicit ``use_external_vendor`` wins; otherwise merchants outside
    the regions our installers cover go to the vendor.
    """
    external = use_external_vendor
    if external is None:
        external = not is_covered_region(merchant.address)
    common: dict[str, Any] = {
        "merchant_id": merchant_id,
        "merchant": merchant,
        "date": date,
        "slot_label": slot_label,
        "existing_event_id": existing_event_id,
    }
    if external:
        logger.info("Installation for %s routed to the external vendor", merchant_id)
        return ExternalInstallationRequest(
            **common, device_type=device_type, latitude=latitude, longitude=longitude
        )
    return InternalInstallationRequest(**common, resource_override=resource_override)


def _booking_kind(request: InternalRequest) -> BookingKind:
    if isinstance(request, TrainingRequest):
        return BookingKind.TRAINING
    return BookingKind.INSTALLATION


def _resource_kind(kind: BookingKind) -> ResourceKind:
    return ResourceKind.TRAINER if kind == BookingKind.TRAINING else ResourceKind.INSTALLER


class BookingOrchestrator:
    """Places, moves and cancels bookings across calendar, CRM and vendor."""

    def __init__(
        self,
        directory: ResourceDirectory,
        computer: SlotAvailabilityComputer,
        matcher: ResourceMatcher,
        client: LarkClient,
        resolver: CalendarIdentityResolver,
        crm: CrmClient,
        notifier: Optional[Notifier] = None,
        vendor: Optional[VendorTicketClient] = None,
        config: BookingConfig = settings.booking,
        tz: ZoneInfo = settings.scheduling.tz,
        vendor_name: str = settings.vendor.name,
    ) -> None:
        self._directory = directory
        self._computer = computer
        self._matcher = matcher
        self._client = client
        self._resolver = resolver
        self._crm = crm
        self._notifier = notifier
        self._vendor = vendor
        self._config = config
        self._tz = tz
        self._vendor_name = vendor_name

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def book(self, request: BookingRequest) -> Booking:
        """
        Place a booking; a request carrying an existing event id is a reschedule.

        Raises:
            BookingValidationError: Unknown slot.
            NoCandidate: No resource is free, before any provider write.
            ProviderUnavailable: Calendar write failed and mock fallback is off.
        """
        new_request_id("BOOK")
        if isinstance(request, ExternalInstallationRequest):
            return await self._book_external(request)
        if request.existing_event_id:
            return await self._reschedule(request, request.existing_event_id)
        return await self._book_internal(request)

    async def reschedule(self, request: BookingRequest) -> Booking:
        """Move a booking; without an existing event id this is a fresh booking."""
        new_request_id("RESCHEDULE")
        if isinstance(request, ExternalInstallationRequest):
            return await self._book_external(request)
        if not request.existing_event_id:
            logger.info("No existing event for %s, booking as new", request.merchant_id)
            return await self._book_internal(request)
        return await self._reschedule(request, request.existing_event_id)

    async def cancel(self, request: CancellationRequest) -> CancellationResult:
        """
        Delete the calendar event and clear the CRM booking fields.

        The CRM event id is the booking of record. When it is empty, or the
        request names a different event, the booking is already gone and
        nothing is deleted or sent. When the event could not be deleted the
        CRM is left untouched so the cancel can be retried.
        """
        new_request_id("CANCEL")
        fields = field_map(request.kind)
        record = await self._crm.get_record(TRAINER_OBJECT, request.merchant_id)
        if record is None:
            raise BookingValidationError(f"Unknown merchant record {request.merchant_id}")

        event_id = record.get(fields.event_id_field)
        if not event_id:
            logger.info("No %s booked for %s; nothing to cancel",
                        request.kind.value, request.merchant_id)
            return CancellationResult(
                success=True, message="No booking to cancel", already_cancelled=True
            )
        if request.event_id and request.event_id != event_id:
            logger.info("Event %s is no longer the %s of record for %s (now %s); nothing to cancel",
                        request.event_id, request.kind.value, request.merchant_id, event_id)
            return CancellationResult(
                success=True, message="Booking already cancelled", already_cancelled=True
            )

        owner = await self._current_assignee(request.kind, request.merchant_id, record)
        deleted = await self._delete_event(event_id, owner, request.kind)
        if not deleted:
            return CancellationResult(
                success=False,
                message=f"Could not delete calendar event {event_id}; try again later",
            )

        crm_cleared = await self._clear_crm(request.kind, request.merchant_id)
        merchant_name = request.merchant.name if request.merchant else request.merchant_id
        manager_email = request.merchant.manager_email if request.merchant else None
        await notify_all(
            self._notifier,
            [owner.id if owner else None, manager_email],
            cancellation_message(request.kind, merchant_name, record.get(fields.date_field)),
        )
        logger.info("Cancelled %s %s for %s", request.kind.value, event_id, request.merchant_id)
        return CancellationResult(
            success=True,
            message=f"{request.kind.value.capitalize()} cancelled",
            event_deleted=True,
            crm_cleared=crm_cleared,
        )

    # ------------------------------------------------------------------
    # Internal resources
    # ------------------------------------------------------------------

    def _slot(self, request: BookingRequest) -> Slot:
        return find_slot(self._computer.slot_grid, request.slot_label)

    def _filters(self, request: InternalRequest) -> AvailabilityFilters:
        # Installers travel to the store; trainings run remotely.
        if isinstance(request, InternalInstallationRequest):
            return AvailabilityFilters(merchant_address=request.merchant.address)
        return AvailabilityFilters()

    def _policy(self, request: InternalRequest) -> AssignmentPolicy:
        if isinstance(request, TrainingRequest):
            return AssignmentPolicy(
                override=request.resource_override,
                required_languages=request.required_languages,
            )
        return AssignmentPolicy(override=request.resource_override)

    async def _free_resources(self, request: InternalRequest, slot: Slot) -> list[Resource]:
        candidates = self._directory.by_kind(_resource_kind(_booking_kind(request)))
        return await self._computer.free_resources_for_slot(
            candidates, request.date, slot, self._filters(request)
        )

    def _select(
        self, sm: BookingStateMachine, request: InternalRequest, free: list[Resource]
    ) -> tuple[Resource, str]:
        try:
            assignment = self._matcher.select_assignee(free, self._policy(request))
        except NoCandidate:
            sm.transition(BookingTrigger.REJECTED)
            logger.info("Rejected %s on %s %s: no free resource",
                        request.merchant_id, request.date, request.slot_label)
            raise
        return assignment.assigned, assignment.reason

    async def _book_internal(self, request: InternalRequest) -> Booking:
        kind = _booking_kind(request)
        slot = self._slot(request)
        start, end = slot_bounds(request.date, slot, self._tz)
        sm = BookingStateMachine()

        free = await self._free_resources(request, slot)
        resource, reason = self._select(sm, request, free)
        draft = self._draft(kind, request, resource, start, end)

        async def create(calendar_id: str) -> str:
            return await self._client.create_event(resource.id, calendar_id, draft)

        event_id, calendar_id, is_mock = await self._write_event(sm, resource, create)
        self._matcher.record_assignment(resource.id)
        return await self._commit(
            sm, request, kind, resource, reason, start, end, event_id, calendar_id, is_mock
        )

    async def _reschedule(self, request: InternalRequest, old_event_id: str) -> Booking:
        kind = _booking_kind(request)
        slot = self._slot(request)
        start, end = slot_bounds(request.date, slot, self._tz)
        sm = BookingStateMachine()

        current = await self._current_assignee(kind, request.merchant_id)
        free = await self._free_resources(request, slot)
        override = self._policy(request).override
        if (
            current is not None
            and any(r.id == current.id for r in free)
            and (not override or override.strip().lower() == current.id)
        ):
            resource, reason = current, KEPT_ASSIGNEE
            draft = self._draft(kind, request, resource, start, end)

            async def update_or_recreate(calendar_id: str) -> str:
                if is_mock_event_id(old_event_id):
                    return await self._client.create_event(resource.id, calendar_id, draft)
                try:
                    await self._client.update_event(resource.id, calendar_id, old_event_id, draft)
                    return old_event_id
                except EventNotFound:
                    logger.info("Event %s no longer exists; creating a replacement",
                                old_event_id)
                    return await self._client.create_event(resource.id, calendar_id, draft)

            event_id, calendar_id, is_mock = await self._write_event(
                sm, resource, update_or_recreate
            )
        else:
            resource, reason = self._select(sm, request, free)
            draft = self._draft(kind, request, resource, start, end)

            async def create(calendar_id: str) -> str:
                return await self._client.create_event(resource.id, calendar_id, draft)

            event_id, calendar_id, is_mock = await self._write_event(sm, resource, create)
            self._matcher.record_assignment(resource.id)
            if not await self._delete_event(old_event_id, current, kind):
                logger.warning("Old event %s for %s was not deleted; remove it manually",
                               old_event_id, request.merchant_id)

        return await self._commit(
            sm, request, kind, resource, reason, start, end, event_id, calendar_id, is_mock,
            rescheduled=True,
        )

    def _draft(
        self,
        kind: BookingKind,
        request: BookingRequest,
        resource: Resource,
        start: datetime,
        end: datetime,
    ) -> EventDraft:
        record_url = crm_record_url(self._config.crm_instance_url, request.merchant_id)
        return build_event_draft(kind, request.merchant, resource, start, end, record_url)

    async def _write_event(
        self, sm: BookingStateMachine, resource: Resource, write: EventWrite
    ) -> tuple[str, Optional[str], bool]:
        """Run the calendar write; returns (event_id, calendar_id, is_mock)."""
        if self._config.mock_calendar_booking:
            sm.transition(BookingTrigger.MOCK_MODE)
            event_id = mock_event_id()
            logger.info("Mock calendar booking enabled; issued %s for %s", event_id, resource.id)
            return event_id, None, True

        async def tagged(calendar_id: str) -> tuple[str, str]:
            return await write(calendar_id), calendar_id

        try:
            event_id, calendar_id = await self._resolver.with_writable_calendar(
                resource.id, tagged
            )
        except (ProviderError, NoWritableCalendar) as exc:
            sm.transition(BookingTrigger.EVENT_FAILED)
            if not self._config.allows_mock_fallback:
                logger.error("Calendar write failed for %s: %s", resource.id, exc)
                if isinstance(exc, (ProviderUnavailable, NoWritableCalendar)):
                    raise
                raise ProviderUnavailable(
                    f"Calendar write failed for {resource.id}: {exc}"
                ) from exc
            event_id = mock_event_id()
            sm.transition(BookingTrigger.MOCK_EVENT_ISSUED)
            logger.warning("Calendar write failed for %s (%s); using mock event %s",
                           resource.id, exc, event_id)
            return event_id, None, True

        sm.transition(BookingTrigger.EVENT_CREATED)
        logger.info("Event %s written to calendar %s for %s", event_id, calendar_id, resource.id)
        return event_id, calendar_id, False

    async def _commit(
        self,
        sm: BookingStateMachine,
        request: InternalRequest,
        kind: BookingKind,
        resource: Resource,
        reason: str,
        start: datetime,
        end: datetime,
        event_id: str,
        calendar_id: Optional[str],
        is_mock: bool,
        rescheduled: bool = False,
    ) -> Booking:
        booking = Booking(
            merchant_id=request.merchant_id,
            kind=kind,
            installer_type=InstallerType.INTERNAL if kind == BookingKind.INSTALLATION else None,
            assigned_resource=resource.id,
            assigned_name=resource.name,
            assignment_reason=reason,
            date=request.date,
            slot_label=request.slot_label,
            start=start,
            end=end,
            event_id=event_id,
            calendar_id=calendar_id,
            crm_record_id=request.merchant_id,
            state=sm.current_state.value,
            is_mock_event=is_mock,
        )
        portal_update = portal_record_fields(booking) if kind == BookingKind.INSTALLATION else None
        crm_error = await self._write_crm(
            booking.crm_record_id, trainer_record_fields(booking), portal_update
        )
        sm.transition(BookingTrigger.CRM_FAILED if crm_error else BookingTrigger.CRM_WRITTEN)
        booking = booking.model_copy(update={
            "crm_error": crm_error,
            "state": sm.current_state.value,
            "state_trace": sm.get_state_trace(),
        })

        await notify_all(
            self._notifier,
            [resource.id, request.merchant.manager_email],
            booking_message(booking, request.merchant, rescheduled=rescheduled),
        )
        logger.info("%s %s for %s on %s %s assigned to %s (%s)",
                    kind.value.capitalize(), "rescheduled" if rescheduled else "booked",
                    request.merchant_id, request.date, request.slot_label, resource.id,
                    booking.state)
        return booking

    # ------------------------------------------------------------------
    # External vendor
    # ------------------------------------------------------------------

    async def _book_external(self, request: ExternalInstallationRequest) -> Booking:
        slot = self._slot(request)
        start, end = slot_bounds(request.date, slot, self._tz)
        sm = BookingStateMachine()
        record_url = crm_record_url(self._config.crm_instance_url, request.merchant_id)

        ticket: Optional[VendorTicket] = None
        if self._vendor is None:
            logger.warning("No vendor client configured; %s needs a manual vendor ticket",
                           request.merchant_id)
        else:
            try:
                ticket = await self._vendor.create_installation_ticket(request, record_url)
            except BookingEngineError as e:
                logger.warning("Vendor ticket for %s failed: %s", request.merchant_id, e)
        sm.transition(BookingTrigger.VENDOR_TICKETED)

        booking = Booking(
            merchant_id=request.merchant_id,
            kind=BookingKind.INSTALLATION,
            installer_type=InstallerType.EXTERNAL,
            assigned_name=self._vendor_name,
            assignment_reason=EXTERNAL_VENDOR,
            date=request.date,
            slot_label=request.slot_label,
            start=start,
            end=end,
            crm_record_id=request.merchant_id,
            state=sm.current_state.value,
            vendor_ticket_id=ticket.ticket_id if ticket else None,
            vendor_case_number=ticket.case_number if ticket else None,
        )
        crm_error = await self._write_crm(
            booking.crm_record_id,
            vendor_record_fields(booking, self._vendor_name),
            vendor_portal_fields(booking),
        )
        sm.transition(BookingTrigger.CRM_FAILED if crm_error else BookingTrigger.CRM_WRITTEN)
        booking = booking.model_copy(update={
            "crm_error": crm_error,
            "state": sm.current_state.value,
            "state_trace": sm.get_state_trace(),
        })

        date_label = f"{request.date.isoformat()} ({request.slot_label})"
        await notify_all(
            self._notifier,
            [request.merchant.manager_email],
            vendor_assignment_message(request.merchant, date_label, booking.vendor_case_number),
        )
        await self._create_vendor_task(request, booking, record_url)
        logger.info("Installation for %s assigned to %s (ticket %s, %s)",
                    request.merchant_id, self._vendor_name, booking.vendor_ticket_id,
                    booking.state)
        return booking

    async def _create_vendor_task(
        self, request: ExternalInstallationRequest, booking: Booking, record_url: str
    ) -> None:
        owner_id = None
        try:
            if request.merchant.manager_email:
                owner_id = await self._crm.find_user_id(request.merchant.manager_email)
            description = (
                f"Installation for {request.merchant.name} on "
                f"{booking.date.isoformat()} ({booking.slot_label}) was sent to "
                f"{self._vendor_name}.\n"
                f"Ticket: {booking.vendor_ticket_id or 'not created'}\n"
                f"Case: {booking.vendor_case_number or 'N/A'}\n"
                f"Salesforce: {record_url}"
            )
            await self._crm.create_task(CrmTask(
                subject=f"[Portal] Confirm external installation for {request.merchant.name}",
                description=description,
                what_id=request.merchant_id,
                owner_id=owner_id,
                activity_date=booking.date,
            ))
        except Exception as e:
            logger.warning("Could not create vendor follow-up task for %s: %s",
                           request.merchant_id, e)

    # ------------------------------------------------------------------
    # CRM and calendar helpers
    # ------------------------------------------------------------------

    async def _write_crm(
        self,
        record_id: str,
        trainer_update: dict[str, Any],
        portal_update: Optional[dict[str, Any]],
    ) -> Optional[str]:
        """Write booking fields; returns the failure message, if any."""
        try:
            await self._crm.update_record(TRAINER_OBJECT, record_id, trainer_update)
            if portal_update is not None:
                portal_id = await self._crm.find_portal_record_id(record_id)
                if portal_id is None:
                    logger.warning("No portal record for %s; portal fields not written",
                                   record_id)
                else:
                    await self._crm.update_record(PORTAL_OBJECT, portal_id, portal_update)
        except CrmSyncFailed as e:
            logger.warning("CRM write for %s failed, booking stands: %s", record_id, e)
            return str(e)
        return None

    async def _clear_crm(self, kind: BookingKind, record_id: str) -> bool:
        portal_update = cleared_portal_fields() if kind == BookingKind.INSTALLATION else None
        return await self._write_crm(record_id, cleared_fields(kind), portal_update) is None

    async def _current_assignee(
        self,
        kind: BookingKind,
        merchant_id: str,
        record: Optional[dict[str, Any]] = None,
    ) -> Optional[Resource]:
        """The resource the CRM says holds the booking, if it is still in the directory."""
        try:
            if kind == BookingKind.TRAINING:
                if record is None:
                    record = await self._crm.get_record(TRAINER_OBJECT, merchant_id)
                name = (record or {}).get(TRAINING_FIELDS.assignee_field or "")
            else:
                portal_id = await self._crm.find_portal_record_id(merchant_id)
                portal = await self._crm.get_record(PORTAL_OBJECT, portal_id) if portal_id else None
                name = (portal or {}).get(PORTAL_INSTALLER_NAME)
        except CrmSyncFailed as e:
            logger.warning("Could not read current assignee for %s: %s", merchant_id, e)
            return None
        if not name:
            return None
        resource = self._directory.find_by_name(name, _resource_kind(kind))
        if resource is None:
            logger.warning("CRM assignee %r for %s is not in the directory", name, merchant_id)
        return resource

    async def _delete_event(
        self, event_id: str, owner: Optional[Resource], kind: BookingKind
    ) -> bool:
        """
        Delete ``event_id`` from the owner's calendar, falling back to every
        authorized resource of the same kind when the owner is unknown or
        does not hold it. An event no calendar knows about counts as deleted.
        """
        if is_mock_event_id(event_id):
            return True

        candidates = [owner] if owner is not None else []
        candidates += [
            r for r in self._directory.by_kind(_resource_kind(kind))
            if owner is None or r.id != owner.id
        ]
        failures = 0
        for resource in candidates:
            if not await self._client.tokens.is_authorized(resource.id):
                continue

            async def delete(calendar_id: str, resource_id: str = resource.id) -> None:
                await self._client.delete_event(resource_id, calendar_id, event_id)

            try:
                await self._resolver.with_writable_calendar(resource.id, delete)
            except EventNotFound:
                continue
            except (AuthorizationError, NoWritableCalendar, ProviderError) as e:
                failures += 1
                logger.warning("Deleting %s via %s failed: %s", event_id, resource.id, e)
                continue
            logger.info("Deleted event %s from %s", event_id, resource.id)
            return True

        if failures:
            return False
        logger.info("Event %s not found on any calendar; treating as deleted", event_id)
        return True

