"""
Command line entry point for the availability and booking engine.

The CRM is held in memory, so bookings and polls run against the records
seeded from the command line or payload files; calendar and messaging
calls go to the configured Lark tenant.

Usage:
    python main.py availability --kind trainer --start 2026-11-02 --end 2026-11-06
    python main.py book --payload booking.json
    python main.py cancel --merchant-id a0B5g00000XyZ --kind training --event-id evt_123
    python main.py poll-submissions --submissions submissions.json
    python main.py authorize-url --resource trainer@storehub.com
    python main.py authorize-complete --resource trainer@storehub.com --code abc123
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from src.booking.orchestrator import BookingOrchestrator
from src.config import settings
from src.crm.client import InMemoryCrmClient
from src.errors import BookingEngineError
from src.integrations.notifications import LarkNotifier
from src.integrations.vendor import VendorTicketClient
from src.logging_context import RequestIdFilter
from src.provider.identity_resolver import CalendarIdentityResolver
from src.provider.lark_client import LarkClient
from src.provider.oauth import LarkOAuthClient
from src.provider.token_manager import TokenLifecycleManager
from src.provider.token_store import JsonFileTokenStore
from src.scheduling.availability import SlotAvailabilityComputer
from src.scheduling.busy_aggregator import BusyTimeAggregator
from src.scheduling.matcher import ResourceMatcher
from src.scheduling.slots import default_date_range
from src.schemas.availability_schema import AvailabilityFilters
from src.schemas.booking_schema import BookingKind, CancellationRequest, parse_booking_request
from src.schemas.crm_schema import MenuSubmission
from src.schemas.resource_schema import ResourceKind
from src.tools.directory import ResourceDirectory
from src.tools.submission_poller import InMemorySubmissionLedger, SubmissionPoller

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """All collaborators wired against one HTTP client."""
    directory: ResourceDirectory
    tokens: TokenLifecycleManager
    computer: SlotAvailabilityComputer
    orchestrator: BookingOrchestrator
    crm: InMemoryCrmClient
    notifier: LarkNotifier


def build_engine(http_client: httpx.AsyncClient, directory: ResourceDirectory) -> Engine:
    oauth = LarkOAuthClient(http_client)
    tokens = TokenLifecycleManager(JsonFileTokenStore(settings.booking.token_store_path), oauth)
    client = LarkClient(http_client, tokens, oauth)
    resolver = CalendarIdentityResolver(client)
    computer = SlotAvailabilityComputer(BusyTimeAggregator(client, resolver))
    crm = InMemoryCrmClient()
    notifier = LarkNotifier(client)
    orchestrator = BookingOrchestrator(
        directory,
        computer,
        ResourceMatcher(),
        client,
        resolver,
        crm,
        notifier=notifier,
        vendor=VendorTicketClient(http_client),
    )
    return Engine(directory, tokens, computer, orchestrator, crm, notifier)


def _print_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, default=str) + "\n")


def _load_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


async def _availability(engine: Engine, args: argparse.Namespace) -> None:
    start, end = default_date_range(date.today())
    if args.start:
        start = date.fromisoformat(args.start)
    if args.end:
        end = date.fromisoformat(args.end)
    filters = AvailabilityFilters(
        include_weekends=args.include_weekends or settings.scheduling.include_weekends,
        merchant_address=args.address,
        required_languages=frozenset(args.language or []),
    )
    if args.resource:
        resource = engine.directory.get(args.resource)
        if resource is None:
            raise SystemExit(f"Unknown resource: {args.resource}")
        result = await engine.computer.compute_resource_availability(
            resource, start, end, filters=filters
        )
    else:
        resources = engine.directory.by_kind(ResourceKind(args.kind))
        result = await engine.computer.compute_availability(resources, start, end, filters=filters)
    _print_json(result.model_dump(mode="json"))


async def _book(engine: Engine, args: argparse.Namespace) -> None:
    request = parse_booking_request(_load_json(args.payload))
    engine.crm.add_merchant(request.merchant_id)
    booking = await engine.orchestrator.book(request)
    _print_json(booking.model_dump(mode="json"))


async def _cancel(engine: Engine, args: argparse.Namespace) -> None:
    engine.crm.add_merchant(args.merchant_id)
    result = await engine.orchestrator.cancel(CancellationRequest(
        merchant_id=args.merchant_id,
        kind=BookingKind(args.kind),
        event_id=args.event_id,
    ))
    _print_json(result.model_dump(mode="json"))


async def _poll_submissions(engine: Engine, args: argparse.Namespace) -> None:
    if args.submissions:
        adapter = TypeAdapter(list[MenuSubmission])
        engine.crm.submissions.extend(adapter.validate_python(_load_json(args.submissions)))
    poller = SubmissionPoller(engine.crm, engine.notifier, InMemorySubmissionLedger())
    summary = await poller.run_once()
    _print_json(summary.__dict__)


async def _authorize_url(engine: Engine, args: argparse.Namespace) -> None:
    sys.stdout.write(engine.tokens.authorization_url(args.resource) + "\n")


async def _authorize_complete(engine: Engine, args: argparse.Namespace) -> None:
    grant = await engine.tokens.complete_authorization(args.resource, args.code)
    _print_json({"resource_id": grant.resource_id, "expires_at": grant.expires_at.isoformat()})


COMMANDS = {
    "availability": _availability,
    "book": _book,
    "cancel": _cancel,
    "poll-submissions": _poll_submissions,
    "authorize-url": _authorize_url,
    "authorize-complete": _authorize_complete,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Check trainer/installer availability and manage onboarding bookings."
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging output.",
    )
    parser.add_argument(
        "--directory",
        type=str,
        default=settings.booking.resource_directory_path,
        help="Path to the resource directory JSON file.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    availability = commands.add_parser("availability", help="Show free slots per day.")
    availability.add_argument("--kind", choices=[k.value for k in ResourceKind],
                              default=ResourceKind.TRAINER.value)
    availability.add_argument("--start", help="First date (YYYY-MM-DD), default tomorrow.")
    availability.add_argument("--end", help="Last date (YYYY-MM-DD), inclusive.")
    availability.add_argument("--address", help="Merchant address for location matching.")
    availability.add_argument("--language", action="append",
                              help="Required language; repeat for several.")
    availability.add_argument("--resource", help="Single-resource mode for this email.")
    availability.add_argument("--include-weekends", action="store_true")

    book = commands.add_parser("book", help="Place or reschedule a booking.")
    book.add_argument("--payload", required=True, help="Booking request JSON file.")

    cancel = commands.add_parser("cancel", help="Cancel a booking.")
    cancel.add_argument("--merchant-id", required=True)
    cancel.add_argument("--kind", choices=[k.value for k in BookingKind], required=True)
    cancel.add_argument("--event-id", help="Calendar event id; read from the CRM if omitted.")

    poll = commands.add_parser("poll-submissions", help="Process recent menu submissions.")
    poll.add_argument("--submissions", help="JSON list of submissions to seed the CRM with.")

    authorize = commands.add_parser("authorize-url", help="Print a calendar OAuth link.")
    authorize.add_argument("--resource", required=True, help="Resource email, used as state.")

    complete = commands.add_parser("authorize-complete", help="Store a grant from an OAuth code.")
    complete.add_argument("--resource", required=True)
    complete.add_argument("--code", required=True, help="Authorization code from the callback.")
    return parser


async def run(args: argparse.Namespace) -> None:
    directory = ResourceDirectory.from_file(args.directory)
    async with httpx.AsyncClient(timeout=settings.provider.timeout_seconds) as http_client:
        engine = build_engine(http_client, directory)
        await COMMANDS[args.command](engine, args)


def main() -> None:
    args = build_parser().parse_args()

    root = logging.getLogger()
    if args.verbose:
        root.setLevel(logging.DEBUG)
    handler = logging.StreamHandler()
    handler.addFilter(RequestIdFilter())
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(name)s] %(levelname)s [%(request_id)s]: %(message)s"
    ))
    root.handlers = [handler]

    try:
        asyncio.run(run(args))
    except FileNotFoundError as e:
        logger.error("File not found: %s", e.filename)
        sys.exit(1)
    except (BookingEngineError, ValidationError, ValueError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
