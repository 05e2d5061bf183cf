"""
Assignment policy: pick exactly one resource from the free set.

Rotation hands the slot to the least-recently-assigned free resource so
load spreads across the pool. An authorized caller may pin a resource
instead, which is recorded as a manual override.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Optional

from src.errors import NoCandidate
from src.schemas.resource_schema import Resource
from src.utils import normalize_email

logger = logging.getLogger(__name__)

ROTATION = "rotation"
MANUAL_OVERRIDE = "manual-override"


@dataclass
class AssignmentPolicy:
    override: Optional[str] = None
    required_languages: frozenset[str] = field(default_factory=frozenset)


@dataclass
class Assignment:
    assigned: Resource
    reason: str


def _language_preference(
    free: list[Resource], required_languages: frozenset[str]
) -> list[Resource]:
    """Speakers of every required language, else of any, else everyone."""
    if not required_languages:
        return free
    wanted = {lang.lower() for lang in required_languages}
    speaks = [(r, {lang.lower() for lang in r.languages}) for r in free]

    all_match = [r for r, langs in speaks if wanted <= langs]
    if all_match:
        return all_match
    any_match = [r for r, langs in speaks if wanted & langs]
    if any_match:
        logger.info("No resource speaks all of %s; using partial language matches",
                    sorted(required_languages))
        return any_match
    logger.info("No resource speaks any of %s; ignoring language preference",
                sorted(required_languages))
    return free


class ResourceMatcher:
    """Rotation-based assignee selection with manual override."""

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self._last_assigned: dict[str, int] = {}

    def select_assignee(
        self, free_resources: list[Resource], policy: Optional[AssignmentPolicy] = None
    ) -> Assignment:
        """
        Choose one resource from ``free_resources``.

        Raises:
            NoCandidate: The free set is empty, or the override is not free.
        """
        policy = policy or AssignmentPolicy()
        if not free_resources:
            raise NoCandidate("No free resource for the requested slot")

        if policy.override:
            wanted = normalize_email(policy.override)
            for resource in free_resources:
                if resource.id == wanted:
                    logger.info("Manual override assigns %s", resource.id)
                    return Assignment(assigned=resource, reason=MANUAL_OVERRIDE)
            raise NoCandidate(f"Requested resource {policy.override} is not free for this slot")

        candidates = _language_preference(free_resources, policy.required_languages)
        chosen = min(candidates, key=lambda r: (self._last_assigned.get(r.id, 0), r.id))
        logger.info("Rotation assigns %s from %d candidates", chosen.id, len(candidates))
        return Assignment(assigned=chosen, reason=ROTATION)

    def record_assignment(self, resource_id: str) -> None:
        """Move a resource to the back of the rotation."""
        self._last_assigned[normalize_email(resource_id)] = next(self._sequence)
