"""
Token lifecycle: hands out valid access tokens per resource and is the
only writer of grants after the initial authorization handshake.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from src.config import settings
from src.errors import NotAuthorized, ProviderRequestError, ReauthorizationRequired
from src.provider.oauth import LarkOAuthClient
from src.provider.token_store import TokenStore
from src.schemas.provider_schema import TokenPayload
from src.schemas.resource_schema import OAuthGrant
from src.utils import normalize_email

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """
    Per-resource access tokens with proactive refresh.

    Refreshes for one resource are serialised on a per-resource lock, and
    the stored grant is re-read once the lock is held. When two requests
    race, the second sees the first one's fresh grant and reuses it, so
    exactly one refresh hits the provider.
    """

    def __init__(
        self,
        store: TokenStore,
        oauth: LarkOAuthClient,
        buffer_seconds: int = settings.provider.token_refresh_buffer_seconds,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._buffer_seconds = buffer_seconds
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, resource_id: str) -> asyncio.Lock:
        return self._locks.setdefault(resource_id, asyncio.Lock())

    async def _load_grant(self, resource_id: str) -> OAuthGrant:
        grant = await self._store.get(resource_id)
        if grant is None or grant.revoked:
            raise NotAuthorized(resource_id)
        return grant

    async def get_valid_access_token(
        self, resource_id: str, *, rejected_token: Optional[str] = None
    ) -> str:
        """
        Return an access token that is outside the expiry buffer.

        Args:
            resource_id: Resource email.
            rejected_token: A token the provider just refused. It is
                refreshed even if its expiry says it is still valid,
                unless another caller already replaced it.

        Raises:
            NotAuthorized: No grant stored, or the grant was revoked.
            ReauthorizationRequired: The provider rejected the refresh token.
            ProviderUnavailable: The refresh call failed transiently.
        """
        resource_id = normalize_email(resource_id)
        grant = await self._load_grant(resource_id)
        if not self._must_refresh(grant, rejected_token):
            return grant.access_token

        async with self._lock_for(resource_id):
            grant = await self._load_grant(resource_id)
            if not self._must_refresh(grant, rejected_token):
                return grant.access_token
            refreshed = await self._refresh(grant)
            return refreshed.access_token

    def _must_refresh(self, grant: OAuthGrant, rejected_token: Optional[str]) -> bool:
        if rejected_token is not None and grant.access_token == rejected_token:
            return True
        return grant.needs_refresh(self._clock(), self._buffer_seconds)

    async def _refresh(self, grant: OAuthGrant) -> OAuthGrant:
        try:
            payload = await self._oauth.refresh(grant.refresh_token)
        except ProviderRequestError as exc:
            # The stale grant stays in the store for diagnostics.
            logger.warning(
                "Token refresh rejected for %s (code=%s): re-authorization required",
                grant.resource_id, exc.code,
            )
            raise ReauthorizationRequired(grant.resource_id, exc.message) from exc

        refreshed = self._grant_from_payload(grant.resource_id, payload, previous=grant)
        await self._store.put(refreshed)
        logger.info(
            "Refreshed access token for %s, expires at %s",
            grant.resource_id, refreshed.expires_at.isoformat(),
        )
        return refreshed

    def _grant_from_payload(
        self,
        resource_id: str,
        payload: TokenPayload,
        previous: Optional[OAuthGrant] = None,
    ) -> OAuthGrant:
        now = self._clock()
        scope = frozenset(payload.scope.split()) if payload.scope else frozenset()
        if not scope and previous is not None:
            scope = previous.scope
        provider_user_id = payload.open_id or (previous.provider_user_id if previous else "")
        return OAuthGrant(
            resource_id=resource_id,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_at=now + timedelta(seconds=payload.expires_in),
            scope=scope,
            provider_user_id=provider_user_id,
            updated_at=now,
        )

    def authorization_url(self, state: str) -> str:
        return self._oauth.authorization_url(state)

    async def complete_authorization(self, resource_id: str, code: str) -> OAuthGrant:
        """Finish the OAuth handshake and store the resource's first grant."""
        resource_id = normalize_email(resource_id)
        payload = await self._oauth.exchange_code(code)
        async with self._lock_for(resource_id):
            grant = self._grant_from_payload(resource_id, payload)
            await self._store.put(grant)
        logger.info("Stored calendar authorization for %s", resource_id)
        return grant

    async def revoke(self, resource_id: str) -> None:
        """Flag the grant as revoked; the record itself is kept."""
        resource_id = normalize_email(resource_id)
        async with self._lock_for(resource_id):
            grant = await self._store.get(resource_id)
            if grant is None or grant.revoked:
                return
            revoked = grant.model_copy(update={"revoked": True, "updated_at": self._clock()})
            await self._store.put(revoked)
        logger.info("Revoked calendar authorization for %s", resource_id)

    async def is_authorized(self, resource_id: str) -> bool:
        grant = await self._store.get(normalize_email(resource_id))
        return grant is not None and not grant.revoked

    async def provider_user_id(self, resource_id: str) -> str:
        grant = await self._load_grant(normalize_email(resource_id))
        return grant.provider_user_id

    async def authorized_resources(self) -> list[str]:
        resource_ids = await self._store.list_resource_ids()
        return [rid for rid in resource_ids if await self.is_authorized(rid)]
