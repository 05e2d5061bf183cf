"""Tests for assignee selection."""

import pytest

from src.errors import NoCandidate
from src.scheduling.matcher import MANUAL_OVERRIDE, ROTATION, AssignmentPolicy, ResourceMatcher
from tests.conftest import make_resource


@pytest.fixture
def pool():
    return [
        make_resource("alice@storehub.com", languages=("English", "Mandarin")),
        make_resource("bala@storehub.com", languages=("English", "Tamil")),
        make_resource("chong@storehub.com", languages=("Mandarin", "Cantonese")),
    ]


class TestRotation:
    def test_empty_free_set_has_no_candidate(self):
        with pytest.raises(NoCandidate):
            ResourceMatcher().select_assignee([])

    def test_unassigned_resources_go_first_in_id_order(self, pool):
        assignment = ResourceMatcher().select_assignee(pool)
        assert assignment.assigned.id == "alice@storehub.com"
        assert assignment.reason == ROTATION

    def test_recorded_assignments_rotate_the_pool(self, pool):
        matcher = ResourceMatcher()
        chosen = []
        for _ in range(4):
            assignment = matcher.select_assignee(pool)
            matcher.record_assignment(assignment.assigned.id)
            chosen.append(assignment.assigned.id)

        assert chosen == [
            "alice@storehub.com",
            "bala@storehub.com",
            "chong@storehub.com",
            "alice@storehub.com",
        ]

    def test_selection_alone_does_not_advance_rotation(self, pool):
        matcher = ResourceMatcher()
        first = matcher.select_assignee(pool)
        second = matcher.select_assignee(pool)
        assert first.assigned.id == second.assigned.id

    def test_least_recent_among_free_only(self, pool):
        matcher = ResourceMatcher()
        matcher.record_assignment("bala@storehub.com")
        matcher.record_assignment("alice@storehub.com")

        assignment = matcher.select_assignee(pool[:2])

        assert assignment.assigned.id == "bala@storehub.com"


class TestLanguagePreference:
    def test_speakers_of_all_languages_preferred(self, pool):
        policy = AssignmentPolicy(required_languages=frozenset({"Mandarin", "Cantonese"}))
        assert ResourceMatcher().select_assignee(pool, policy).assigned.id == "chong@storehub.com"

    def test_partial_speakers_used_when_nobody_speaks_all(self, pool):
        policy = AssignmentPolicy(required_languages=frozenset({"tamil", "Malay"}))
        assert ResourceMatcher().select_assignee(pool, policy).assigned.id == "bala@storehub.com"

    def test_language_ignored_when_nobody_matches(self, pool):
        policy = AssignmentPolicy(required_languages=frozenset({"Malay"}))
        assert ResourceMatcher().select_assignee(pool, policy).assigned.id == "alice@storehub.com"


class TestManualOverride:
    def test_override_picks_the_named_free_resource(self, pool):
        policy = AssignmentPolicy(override="Chong@StoreHub.com")
        assignment = ResourceMatcher().select_assignee(pool, policy)
        assert assignment.assigned.id == "chong@storehub.com"
        assert assignment.reason == MANUAL_OVERRIDE

    def test_override_that_is_not_free_is_rejected(self, pool):
        policy = AssignmentPolicy(override="dina@storehub.com")
        with pytest.raises(NoCandidate):
            ResourceMatcher().select_assignee(pool, policy)
