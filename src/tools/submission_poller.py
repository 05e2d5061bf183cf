"""
Menu submission poll.

Runs on a schedule: finds merchant records whose menu-collection link was
set recently, tells the onboarding manager and opens a CRM task to review
the submission. The same (record, link) pair is acted on at most once, so
overlapping lookback windows and repeated runs are harmless.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from src.booking.event_builder import crm_record_url
from src.config import settings
from src.crm.client import CrmClient
from src.integrations.notifications import Notifier, menu_submission_message, notify_all
from src.logging_context import get_request_logger, new_request_id
from src.schemas.crm_schema import CrmTask, MenuSubmission

logger = get_request_logger(__name__)

DEFAULT_LOOKBACK = timedelta(minutes=10)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionLedger(Protocol):
    async def seen(self, merchant_id: str, submission_link: str) -> bool: ...

    async def record(self, merchant_id: str, submission_link: str) -> None: ...


class InMemorySubmissionLedger:
    def __init__(self) -> None:
        self._pairs: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    async def seen(self, merchant_id: str, submission_link: str) -> bool:
        return (merchant_id, submission_link) in self._pairs

    async def record(self, merchant_id: str, submission_link: str) -> None:
        async with self._lock:
            self._pairs.add((merchant_id, submission_link))


@dataclass
class PollSummary:
    """Counts from one poll run."""
    checked: int = 0
    already_processed: int = 0
    missing_manager: int = 0
    notified: int = 0
    tasks_created: int = 0
    failed: int = 0


class SubmissionPoller:
    def __init__(
        self,
        crm: CrmClient,
        notifier: Optional[Notifier],
        ledger: SubmissionLedger,
        lookback: timedelta = DEFAULT_LOOKBACK,
        crm_instance_url: str = settings.booking.crm_instance_url,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._crm = crm
        self._notifier = notifier
        self._ledger = ledger
        self._lookback = lookback
        self._crm_instance_url = crm_instance_url
        self._clock = clock

    async def run_once(self) -> PollSummary:
        """Process every new submission in the lookback window."""
        new_request_id("POLL")
        summary = PollSummary()
        since = self._clock() - self._lookback
        submissions = await self._crm.query_menu_submissions(since)
        logger.info("Found %d menu submission(s) since %s", len(submissions), since.isoformat())

        for submission in submissions:
            summary.checked += 1
            if await self._ledger.seen(submission.merchant_id, submission.submission_link):
                summary.already_processed += 1
                continue
            if not submission.manager_email:
                summary.missing_manager += 1
                logger.warning("Submission for %s has no onboarding manager email; skipping",
                               submission.merchant_id)
                continue

            # Recorded first: a crash mid-way must not produce a second task.
            await self._ledger.record(submission.merchant_id, submission.submission_link)
            try:
                await self._process(submission, submission.manager_email, summary)
            except Exception as e:
                summary.failed += 1
                logger.warning("Processing submission for %s failed: %s",
                               submission.merchant_id, e)

        logger.info(
            "Poll finished: %d checked, %d notified, %d task(s), %d skipped, %d failed",
            summary.checked, summary.notified, summary.tasks_created,
            summary.already_processed + summary.missing_manager, summary.failed,
        )
        return summary

    async def _process(
        self, submission: MenuSubmission, manager_email: str, summary: PollSummary
    ) -> None:
        record_url = crm_record_url(self._crm_instance_url, submission.merchant_id)
        sent = await notify_all(
            self._notifier,
            [manager_email],
            menu_submission_message(
                submission.merchant_name, submission.submission_link, record_url
            ),
        )
        summary.notified += sent

        owner_id = await self._crm.find_user_id(manager_email)
        if owner_id is None:
            logger.warning("No CRM user for %s; task for %s left unassigned",
                           manager_email, submission.merchant_id)
        task_id = await self._crm.create_task(CrmTask(
            subject=f"[Portal] Check menu/product submission for {submission.merchant_name}",
            description=(
                f"{submission.merchant_name} submitted their menu/product information.\n\n"
                f"Menu link: {submission.submission_link}\n"
                f"Salesforce: {record_url}"
            ),
            what_id=submission.merchant_id,
            owner_id=owner_id,
            activity_date=self._clock().date(),
        ))
        summary.tasks_created += 1
        logger.info("Created task %s for %s", task_id, submission.merchant_id)
