"""
OAuth grant storage.

The token lifecycle manager depends only on the ``TokenStore`` protocol so
tests can inject the in-memory store and deployments can use durable
storage. Grants are keyed by resource id (normalised email).
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from pydantic import ValidationError

from src.schemas.resource_schema import OAuthGrant
from src.utils import normalize_email

logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    async def get(self, resource_id: str) -> Optional[OAuthGrant]: ...

    async def put(self, grant: OAuthGrant) -> None: ...

    async def list_resource_ids(self) -> list[str]: ...


class InMemoryTokenStore:
    """Process-local store, used by tests and the offline demo."""

    def __init__(self, grants: Optional[list[OAuthGrant]] = None) -> None:
        self._grants: dict[str, OAuthGrant] = {}
        for grant in grants or []:
            self._grants[normalize_email(grant.resource_id)] = grant
        self.put_count = 0

    async def get(self, resource_id: str) -> Optional[OAuthGrant]:
        return self._grants.get(normalize_email(resource_id))

    async def put(self, grant: OAuthGrant) -> None:
        self._grants[normalize_email(grant.resource_id)] = grant
        self.put_count += 1

    async def list_resource_ids(self) -> list[str]:
        return sorted(self._grants)


class JsonFileTokenStore:
    """
    Grants persisted to a JSON file, one object per resource.

    The file is read once, on first use, and then served from memory; the
    store assumes it is the file's only writer while running. Disk I/O
    runs in a worker thread. Writes go to a temporary file that replaces
    the original, so a crash mid-write never leaves a truncated store
    behind.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._grants: Optional[dict[str, OAuthGrant]] = None

    def _read_all(self) -> dict[str, OAuthGrant]:
        """Blocking file read, run via ``asyncio.to_thread``."""
        if not self._path.exists():
            return {}
        raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        grants: dict[str, OAuthGrant] = {}
        for resource_id, data in raw.items():
            try:
                grants[resource_id] = OAuthGrant.model_validate(data)
            except ValidationError:
                logger.error("Skipping unreadable grant for %s in %s", resource_id, self._path)
        return grants

    def _write_all(self, grants: dict[str, OAuthGrant]) -> None:
        """Blocking atomic write, run via ``asyncio.to_thread``."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {key: grant.model_dump(mode="json") for key, grant in sorted(grants.items())}
        fd, tmp_path = tempfile.mkstemp(dir=self._path.parent, prefix=".tokens-")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        os.replace(tmp_path, self._path)

    async def _loaded(self) -> dict[str, OAuthGrant]:
        if self._grants is None:
            async with self._lock:
                if self._grants is None:
                    self._grants = await asyncio.to_thread(self._read_all)
                    logger.debug("Loaded %d grant(s) from %s", len(self._grants), self._path)
        return self._grants

    async def get(self, resource_id: str) -> Optional[OAuthGrant]:
        grants = await self._loaded()
        return grants.get(normalize_email(resource_id))

    async def put(self, grant: OAuthGrant) -> None:
        await self._loaded()
        async with self._lock:
            updated = dict(self._grants or {})
            updated[normalize_email(grant.resource_id)] = grant
            await asyncio.to_thread(self._write_all, updated)
            self._grants = updated

    async def list_resource_ids(self) -> list[str]:
        return sorted(await self._loaded())
