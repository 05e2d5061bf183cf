"""
External installation vendor ticketing.

Merchants outside the regions our installers cover are handed to the
vendor: one onsite-support ticket per installation, with hardware and
onboarding context packed into the remark field.
"""

import asyncio
import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from src.config import VendorConfig, settings
from src.errors import ProviderUnavailable, VendorTicketError
from src.provider.transport import Sleeper, send_with_retries
from src.scheduling.location_matcher import extract_states
from src.schemas.booking_schema import ExternalInstallationRequest
from src.utils import normalize_phone

logger = logging.getLogger(__name__)

ONSITE_SUPPORT_ISSUE = "*Onsite Support"
DEALER = "StoreHub"
# Documented limit is 1000; the API rejects remarks well before that.
MAX_REMARK_LENGTH = 850

SERVICE_IDS = {"ios": 1, "android": 39}

ERROR_DESCRIPTIONS = {
    "-10000": "Invalid parameter",
    "-10001": "Invalid passcode",
    "-10003": "Invalid auth code",
    "-10004": "Too many requests",
    "-10007": "Invalid authorization",
    "-10008": "Unexpected error",
    "-10015": "Session expired",
}


class VendorTicket(BaseModel):
    ticket_id: str
    case_number: str


class _TicketBody(BaseModel):
    TicketId: int
    CaseNum: str


def _vendor_phone(raw: str) -> str:
    """Local Malaysian numbers become ``60XXXXXXXXX``."""
    phone = normalize_phone(raw).lstrip("+")
    if phone.startswith("0"):
        phone = "60" + phone[1:]
    if not phone.startswith("60"):
        phone = "60" + phone
    return phone


def build_remark(request: ExternalInstallationRequest, crm_record_url: str) -> str:
    merchant = request.merchant
    parts = []
    if merchant.hardware:
        parts.append("Hardware:\n" + "\n".join(f"- {item}" for item in merchant.hardware))
    parts.append(f"Preferred Date: {request.date.isoformat()}")
    parts.append(f"Preferred Time: {request.slot_label}")
    if merchant.manager_name:
        parts.append(f"Onboarding Manager: {merchant.manager_name}")
    parts.append(f"Salesforce: {crm_record_url}")
    remark = "\n\n".join(parts)

    if merchant.onboarding_summary:
        room = MAX_REMARK_LENGTH - len(remark) - len("\n\nOnboarding Summary:\n")
        if room > 50:
            summary = merchant.onboarding_summary
            if len(summary) > room:
                summary = summary[: room - 3] + "..."
            remark += f"\n\nOnboarding Summary:\n{summary}"

    if len(remark) > MAX_REMARK_LENGTH:
        remark = remark[: MAX_REMARK_LENGTH - 3] + "..."
    return remark.strip()


def build_ticket_payload(
    request: ExternalInstallationRequest, crm_record_url: str
) -> dict[str, Any]:
    """
    Ticket and appointment payload for the vendor API.

    Raises:
        VendorTicketError: Contact phone or address is missing.
    """
    merchant = request.merchant
    if not merchant.contact_phone or not merchant.contact_phone.strip():
        raise VendorTicketError("missing-phone", "Contact phone is required for a vendor ticket")
    if not merchant.address or not merchant.address.strip():
        raise VendorTicketError("missing-address", "Address is required for a vendor ticket")

    states = extract_states(merchant.address)
    ticket: dict[str, Any] = {
        "Name": merchant.contact_name or merchant.name,
        "Phone": _vendor_phone(merchant.contact_phone),
        "Issue": ONSITE_SUPPORT_ISSUE,
        "Priority": 0,
        "IsReceiveSms": True,
        "Remark": build_remark(request, crm_record_url),
        "StoreName": merchant.name,
        "DealerReseller": DEALER,
    }
    if merchant.contact_email:
        ticket["Email"] = merchant.contact_email
    return {
        "Ticket": ticket,
        "Appointment": {
            "Address": merchant.address,
            "State": states[0] if states else "",
            "ServiceId": SERVICE_IDS[request.device_type],
            "Longitude": request.longitude,
            "Latitude": request.latitude,
        },
    }


class VendorTicketClient:
    """Creates installation tickets with the external vendor."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: VendorConfig = settings.vendor,
        max_retries: int = settings.provider.max_retries,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._http_client = http_client
        self._config = config
        self._max_retries = max_retries
        self._sleep = sleep

    @property
    def vendor_name(self) -> str:
        return self._config.name

    async def create_installation_ticket(
        self, request: ExternalInstallationRequest, crm_record_url: str
    ) -> VendorTicket:
        """
        Raises:
            VendorTicketError: Missing token, missing fields or an error code.
            ProviderUnavailable: Network failure or unreadable response.
        """
        if not self._config.api_token:
            raise VendorTicketError("not-configured", "VENDOR_API_TOKEN is not configured")

        payload = build_ticket_payload(request, crm_record_url)
        response = await send_with_retries(
            self._http_client,
            "POST",
            self._config.api_url,
            headers={"Authorization": f"Bearer {self._config.api_token}"},
            json_body=payload,
            max_retries=self._max_retries,
            sleep=self._sleep,
        )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderUnavailable(
                f"Vendor API returned invalid JSON ({response.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise ProviderUnavailable("Vendor API response is not a JSON object")

        error_code = str(body.get("ErrorCode", ""))
        if error_code != "0":
            description = body.get("ErrorMessage") or ERROR_DESCRIPTIONS.get(
                error_code, f"Unknown error ({error_code})"
            )
            raise VendorTicketError(error_code, str(description))

        try:
            ticket = _TicketBody.model_validate(body.get("Ticket"))
        except ValidationError as exc:
            raise ProviderUnavailable("Vendor API returned a malformed ticket") from exc

        logger.info(
            "Vendor ticket %s (case %s) created for merchant %s",
            ticket.TicketId, ticket.CaseNum, request.merchant_id,
        )
        return VendorTicket(ticket_id=str(ticket.TicketId), case_number=ticket.CaseNum)
