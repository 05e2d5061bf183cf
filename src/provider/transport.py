"""
HTTP plumbing shared by the Lark OAuth and calendar clients.

Lark wraps every response in an envelope ``{"code": 0, "msg": "", "data": {...}}``.
A non-zero ``code`` is a failure even when the HTTP status is 200, so both
the status and the envelope are inspected before any payload is trusted.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from src.errors import (
    CalendarAccessDenied,
    EventNotFound,
    ProviderRequestError,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
# Statuses where the provider refused the request without acting on it.
REFUSED_STATUS_CODES = {429, 503}
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "PUT", "DELETE"})

# Lark calendar error codes
ACCESS_DENIED_CODES = {191002, 193002}
NOT_FOUND_CODES = {191000, 193000, 193001}
# Lark auth error codes for an invalid or expired user access token
TOKEN_INVALID_CODES = {99991668, 99991677}

ModelT = TypeVar("ModelT", bound=BaseModel)
Sleeper = Callable[[float], Awaitable[None]]


async def send_with_retries(
    http_client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    headers: Optional[dict[str, str]] = None,
    params: Optional[dict[str, Any]] = None,
    json_body: Optional[dict[str, Any]] = None,
    idempotent: Optional[bool] = None,
    max_retries: int = 3,
    backoff_seconds: float = 1.0,
    sleep: Sleeper = asyncio.sleep,
) -> httpx.Response:
    """
    Send a request, retrying transport errors and transient statuses.

    Backoff doubles per attempt; a numeric ``Retry-After`` header on a 429
    takes precedence. Exhausted transport errors raise ProviderUnavailable.
    The last response is returned as-is once retries run out.

    ``idempotent`` defaults from the method. A non-idempotent request (a
    POST that creates something) is only resent when it provably never
    reached the provider: a failed connect, a 429 or a 503.
    """
    if idempotent is None:
        idempotent = method.upper() in IDEMPOTENT_METHODS
    retry_statuses = RETRY_STATUS_CODES if idempotent else REFUSED_STATUS_CODES
    attempt = 0
    while True:
        try:
            response = await http_client.request(
                method, url, headers=headers, params=params, json=json_body
            )
        except httpx.HTTPError as exc:
            never_sent = isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))
            if attempt >= max_retries or not (idempotent or never_sent):
                raise ProviderUnavailable(
                    f"{method} {url} failed after {attempt + 1} attempts: {exc}"
                ) from exc
            delay = backoff_seconds * (2 ** attempt)
            logger.warning(
                "Provider request error (%s), retrying in %.1fs (attempt %d/%d)",
                type(exc).__name__, delay, attempt + 1, max_retries,
            )
            await sleep(delay)
            attempt += 1
            continue

        if response.status_code not in retry_statuses or attempt >= max_retries:
            return response

        delay = backoff_seconds * (2 ** attempt)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after is not None:
                try:
                    delay = float(retry_after)
                except ValueError:
                    logger.debug("Ignoring non-numeric Retry-After header: %r", retry_after)
        logger.warning(
            "Provider returned %d, retrying in %.1fs (attempt %d/%d)",
            response.status_code, delay, attempt + 1, max_retries,
        )
        await sleep(delay)
        attempt += 1


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        message = payload.get("msg") or payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def is_token_rejection(response: httpx.Response) -> bool:
    """True when the provider refused the bearer token itself."""
    if response.status_code == 401:
        return True
    try:
        payload = response.json()
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("code") in TOKEN_INVALID_CODES


def decode_envelope(response: httpx.Response, context: str) -> dict[str, Any]:
    """
    Validate the Lark envelope and return it.

    Raises:
        ProviderUnavailable: 5xx, 429, non-JSON or envelope without a code.
        EventNotFound: 404 or a not-found error code.
        CalendarAccessDenied: 403 or an access-role error code.
        ProviderRequestError: any other rejected request.
    """
    if response.status_code >= 500 or response.status_code == 429:
        raise ProviderUnavailable(
            f"{context}: provider returned {response.status_code}: {safe_error_message(response)}"
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderUnavailable(f"{context}: provider returned invalid JSON") from exc

    if not isinstance(payload, dict):
        raise ProviderUnavailable(f"{context}: provider response is not a JSON object")

    code = payload.get("code")
    if isinstance(code, bool) or not isinstance(code, int):
        raise ProviderUnavailable(f"{context}: provider response is missing an integer code")

    if code == 0 and response.status_code < 400:
        return payload

    message = safe_error_message(response)
    if response.status_code == 404 or code in NOT_FOUND_CODES:
        raise EventNotFound(status_code=response.status_code, code=code, message=message)
    if response.status_code == 403 or code in ACCESS_DENIED_CODES:
        raise CalendarAccessDenied(status_code=response.status_code, code=code, message=message)
    raise ProviderRequestError(status_code=response.status_code, code=code, message=message)


def parse_data(envelope: dict[str, Any], model: type[ModelT], context: str) -> ModelT:
    """Validate ``envelope["data"]`` against ``model``; malformed data is transient."""
    data = envelope.get("data")
    if not isinstance(data, dict):
        raise ProviderUnavailable(f"{context}: provider response has no data object")
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ProviderUnavailable(
            f"{context}: malformed provider payload ({exc.error_count()} errors)"
        ) from exc
