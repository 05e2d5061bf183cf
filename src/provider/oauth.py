"""
Lark OAuth endpoints: authorization URL, code exchange, refresh and the
app-level tenant token used for bot messages.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from src.config import ProviderConfig, settings
from src.errors import ProviderUnavailable
from src.provider.transport import (
    Sleeper,
    decode_envelope,
    parse_data,
    send_with_retries,
)
from src.schemas.provider_schema import TenantTokenResponse, TokenPayload

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/open-apis/authen/v1/authorize"
CODE_EXCHANGE_PATH = "/open-apis/authen/v1/access_token"
REFRESH_PATH = "/open-apis/authen/v1/refresh_access_token"
TENANT_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"

CALENDAR_SCOPES = (
    "calendar:calendar",
    "calendar:calendar.event:create",
    "calendar:calendar.event:read",
    "calendar:calendar.event:update",
    "calendar:calendar.event:delete",
    "calendar:calendar.free_busy:read",
)

# Tenant tokens are renewed this long before the provider's expiry.
TENANT_TOKEN_EARLY_REFRESH_SECONDS = 60


class LarkOAuthClient:
    """OAuth handshake and token endpoints for the Lark open platform."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        config: ProviderConfig = settings.provider,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._http_client = http_client
        self._config = config
        self._sleep = sleep
        self._tenant_token: Optional[str] = None
        self._tenant_token_expires_at: Optional[datetime] = None
        self._tenant_lock = asyncio.Lock()

    def _url(self, path: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{path}"

    def authorization_url(self, state: str) -> str:
        """URL a resource opens to grant calendar access to the app."""
        query = urlencode({
            "app_id": self._config.app_id,
            "redirect_uri": self._config.redirect_uri,
            "response_type": "code",
            "scope": " ".join(CALENDAR_SCOPES),
            "state": state,
        })
        return f"{self._url(AUTHORIZE_PATH)}?{query}"

    async def exchange_code(self, code: str) -> TokenPayload:
        """Exchange an authorization code for the first token pair."""
        return await self._token_request(
            CODE_EXCHANGE_PATH,
            {"grant_type": "authorization_code", "code": code},
            "code exchange",
        )

    async def refresh(self, refresh_token: str) -> TokenPayload:
        """
        Exchange a refresh token for a new access/refresh pair.

        Raises ProviderRequestError when the provider rejects the refresh
        token, and ProviderUnavailable on transient failures.
        """
        return await self._token_request(
            REFRESH_PATH,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token refresh",
        )

    async def _token_request(self, path: str, body: dict, context: str) -> TokenPayload:
        response = await send_with_retries(
            self._http_client,
            "POST",
            self._url(path),
            headers={"Content-Type": "application/json; charset=utf-8"},
            json_body={
                **body,
                "app_id": self._config.app_id,
                "app_secret": self._config.app_secret,
            },
            max_retries=self._config.max_retries,
            backoff_seconds=self._config.backoff_seconds,
            sleep=self._sleep,
        )
        envelope = decode_envelope(response, context)
        return parse_data(envelope, TokenPayload, context)

    async def get_tenant_access_token(self) -> str:
        """App-level token for bot messages, cached until shortly before expiry."""
        token = self._cached_tenant_token()
        if token is not None:
            return token

        async with self._tenant_lock:
            token = self._cached_tenant_token()
            if token is None:
                token = await self._refresh_tenant_token()
            return token

    def _cached_tenant_token(self) -> Optional[str]:
        if self._tenant_token is None or self._tenant_token_expires_at is None:
            return None
        if datetime.now(timezone.utc) >= self._tenant_token_expires_at:
            return None
        return self._tenant_token

    async def _refresh_tenant_token(self) -> str:
        response = await send_with_retries(
            self._http_client,
            "POST",
            self._url(TENANT_TOKEN_PATH),
            json_body={"app_id": self._config.app_id, "app_secret": self._config.app_secret},
            idempotent=True,
            max_retries=self._config.max_retries,
            backoff_seconds=self._config.backoff_seconds,
            sleep=self._sleep,
        )
        envelope = decode_envelope(response, "tenant token")
        # Tenant token fields sit beside ``code`` rather than inside ``data``.
        try:
            payload = TenantTokenResponse.model_validate(envelope)
        except ValidationError as exc:
            raise ProviderUnavailable("tenant token: malformed provider payload") from exc
        if not payload.tenant_access_token:
            raise ProviderUnavailable("tenant token: response is missing tenant_access_token")

        ttl = max(payload.expire - TENANT_TOKEN_EARLY_REFRESH_SECONDS, 30)
        self._tenant_token = payload.tenant_access_token
        self._tenant_token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
        logger.debug("Tenant access token refreshed, valid for %ds", ttl)
        return payload.tenant_access_token
