"""
CRM client interface and an in-memory implementation.

The engine only needs record reads/updates, the installation portal
sub-record, task creation, user lookup and the recent menu-submission
query. Each write is idempotent per (record, field), so a failed write is
logged and left for the next reconciling write.
"""

import itertools
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

from src.crm.fields import PORTAL_OBJECT, TRAINER_OBJECT
from src.errors import CrmSyncFailed
from src.schemas.crm_schema import CrmTask, MenuSubmission
from src.utils import normalize_email

logger = logging.getLogger(__name__)


class CrmClient(Protocol):
    async def get_record(self, object_name: str, record_id: str) -> Optional[dict[str, Any]]: ...

    async def update_record(
        self, object_name: str, record_id: str, fields: dict[str, Any]
    ) -> None: ...

    async def find_portal_record_id(self, merchant_id: str) -> Optional[str]: ...

    async def find_user_id(self, email: str) -> Optional[str]: ...

    async def create_task(self, task: CrmTask) -> str: ...

    async def query_menu_submissions(self, since: datetime) -> list[MenuSubmission]: ...


class InMemoryCrmClient:
    """Dictionary-backed CRM used by tests and the offline CLI."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], dict[str, Any]] = {}
        self.portal_by_merchant: dict[str, str] = {}
        self.users: dict[str, str] = {}
        self.tasks: list[CrmTask] = []
        self.submissions: list[MenuSubmission] = []
        self._ids = itertools.count(1)

    def add_merchant(self, merchant_id: str, with_portal: bool = True, **fields: Any) -> None:
        self.records[(TRAINER_OBJECT, merchant_id)] = {"Id": merchant_id, **fields}
        if with_portal:
            portal_id = f"portal-{merchant_id}"
            self.records[(PORTAL_OBJECT, portal_id)] = {
                "Id": portal_id, "Onboarding_Trainer_Record__c": merchant_id,
            }
            self.portal_by_merchant[merchant_id] = portal_id

    def add_user(self, email: str, user_id: str) -> None:
        self.users[normalize_email(email)] = user_id

    async def get_record(self, object_name: str, record_id: str) -> Optional[dict[str, Any]]:
        record = self.records.get((object_name, record_id))
        return dict(record) if record is not None else None

    async def update_record(
        self, object_name: str, record_id: str, fields: dict[str, Any]
    ) -> None:
        record = self.records.get((object_name, record_id))
        if record is None:
            raise CrmSyncFailed(f"{object_name} {record_id} not found")
        record.update(fields)
        logger.debug("Updated %s %s: %s", object_name, record_id, sorted(fields))

    async def find_portal_record_id(self, merchant_id: str) -> Optional[str]:
        return self.portal_by_merchant.get(merchant_id)

    async def find_user_id(self, email: str) -> Optional[str]:
        return self.users.get(normalize_email(email))

    async def create_task(self, task: CrmTask) -> str:
        self.tasks.append(task)
        return f"task-{next(self._ids)}"

    async def query_menu_submissions(self, since: datetime) -> list[MenuSubmission]:
        return [s for s in self.submissions if s.last_modified >= since]
