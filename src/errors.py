"""Error taxonomy for the availability and booking engine.

Authorization errors are user-visible and need a new OAuth handshake.
``NoWritableCalendar`` is an operator problem. ``ProviderUnavailable`` is
transient. ``NoCandidate`` asks the merchant to pick another slot.
``CrmSyncFailed`` never undoes a calendar hold.
"""

from typing import Optional


class BookingEngineError(Exception):
    """Base class for all engine errors."""


class AuthorizationError(BookingEngineError):
    """The resource must complete the OAuth handshake again."""

    def __init__(self, resource_id: str, message: str) -> None:
        self.resource_id = resource_id
        super().__init__(message)


class NotAuthorized(AuthorizationError):
    """No usable grant is stored for the resource."""

    def __init__(self, resource_id: str) -> None:
        super().__init__(resource_id, f"{resource_id} has not authorized calendar access")


class ReauthorizationRequired(AuthorizationError):
    """The refresh token was rejected; the stale grant is kept for diagnostics."""

    def __init__(self, resource_id: str, reason: str) -> None:
        self.reason = reason
        super().__init__(
            resource_id, f"{resource_id} must re-authorize calendar access: {reason}"
        )


class NoWritableCalendar(BookingEngineError):
    """None of the resource's calendars accepts writes."""

    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"No writable calendar found for {resource_id}")


class ProviderError(BookingEngineError):
    """Base class for calendar provider failures."""


class ProviderUnavailable(ProviderError):
    """Transient failure: network, timeout, 5xx or a malformed payload."""


class ProviderRequestError(ProviderError):
    """The provider rejected a request."""

    def __init__(self, *, status_code: int, code: Optional[int], message: str) -> None:
        self.status_code = status_code
        self.code = code
        self.message = message
        super().__init__(
            f"Provider request failed (status={status_code}, code={code}): {message}"
        )


class CalendarAccessDenied(ProviderRequestError):
    """The calendar rejected a write for access-role reasons."""


class EventNotFound(ProviderRequestError):
    """The referenced event no longer exists on the provider."""


class NoCandidate(BookingEngineError):
    """No resource can take the requested slot."""


class BookingValidationError(BookingEngineError):
    """The booking request is inconsistent with the slot grid or directory."""


class CrmSyncFailed(BookingEngineError):
    """Writing booking fields back to the CRM failed."""


class VendorTicketError(BookingEngineError):
    """The external installation vendor rejected a ticket."""

    def __init__(self, error_code: str, message: str) -> None:
        self.error_code = error_code
        super().__init__(f"Vendor ticket failed ({error_code}): {message}")
