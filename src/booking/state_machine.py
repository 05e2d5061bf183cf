"""
Finite state machine for one booking attempt.

Every booking follows an explicit path through the transition table, so
partial failures (calendar hold placed, CRM write failed) end in a named
state instead of an ambiguous exception.

Usage:
    sm = BookingStateMachine()
    sm.transition(BookingTrigger.EVENT_CREATED)
    assert sm.current_state == BookingState.PROVIDER_EVENT_CREATED
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    """All possible states of a booking attempt."""
    REQUESTED = "requested"
    PROVIDER_EVENT_CREATED = "provider_event_created"
    PROVIDER_EVENT_FAILED = "provider_event_failed"
    MOCK_FALLBACK = "mock_fallback"
    VENDOR_ASSIGNED = "vendor_assigned"
    CRM_SYNCED = "crm_synced"
    CRM_SYNC_FAILED = "crm_sync_failed"
    REJECTED = "rejected"


class BookingTrigger(str, Enum):
    """Events that cause state transitions."""
    EVENT_CREATED = "event_created"
    EVENT_FAILED = "event_failed"
    MOCK_MODE = "mock_mode"
    MOCK_EVENT_ISSUED = "mock_event_issued"
    VENDOR_TICKETED = "vendor_ticketed"
    CRM_WRITTEN = "crm_written"
    CRM_FAILED = "crm_failed"
    REJECTED = "rejected"


@dataclass
class Transition:
    """A single valid state transition."""
    from_state: BookingState
    to_state: BookingState
    trigger: BookingTrigger


@dataclass
class StateEntry:
    """Recorded history entry for a state visit."""
    state: BookingState
    entered_at: datetime
    trigger: Optional[BookingTrigger] = None


class InvalidTransitionError(Exception):
    """Raised when a transition is not valid from the current state."""


class BookingStateMachine:
    """
    Deterministic state machine for a booking commit.

    The provider leg always resolves (created, failed, mocked or handed to
    the vendor) before any CRM transition is reachable.
    """

    TRANSITIONS: list[Transition] = [
        # --- Calendar leg ---
        Transition(BookingState.REQUESTED, BookingState.PROVIDER_EVENT_CREATED,
                   BookingTrigger.EVENT_CREATED),
        Transition(BookingState.REQUESTED, BookingState.PROVIDER_EVENT_FAILED,
                   BookingTrigger.EVENT_FAILED),
        Transition(BookingState.REQUESTED, BookingState.MOCK_FALLBACK,
                   BookingTrigger.MOCK_MODE),
        Transition(BookingState.PROVIDER_EVENT_FAILED, BookingState.MOCK_FALLBACK,
                   BookingTrigger.MOCK_EVENT_ISSUED),

        # --- External vendor ---
        Transition(BookingState.REQUESTED, BookingState.VENDOR_ASSIGNED,
                   BookingTrigger.VENDOR_TICKETED),

        # --- Rejection ---
        Transition(BookingState.REQUESTED, BookingState.REJECTED,
                   BookingTrigger.REJECTED),

        # --- CRM leg ---
        Transition(BookingState.PROVIDER_EVENT_CREATED, BookingState.CRM_SYNCED,
                   BookingTrigger.CRM_WRITTEN),
        Transition(BookingState.PROVIDER_EVENT_CREATED, BookingState.CRM_SYNC_FAILED,
                   BookingTrigger.CRM_FAILED),
        Transition(BookingState.MOCK_FALLBACK, BookingState.CRM_SYNCED,
                   BookingTrigger.CRM_WRITTEN),
        Transition(BookingState.MOCK_FALLBACK, BookingState.CRM_SYNC_FAILED,
                   BookingTrigger.CRM_FAILED),
        Transition(BookingState.VENDOR_ASSIGNED, BookingState.CRM_SYNCED,
                   BookingTrigger.CRM_WRITTEN),
        Transition(BookingState.VENDOR_ASSIGNED, BookingState.CRM_SYNC_FAILED,
                   BookingTrigger.CRM_FAILED),
    ]

    def __init__(self) -> None:
        self._current_state = BookingState.REQUESTED
        self._history: list[StateEntry] = [
            StateEntry(state=BookingState.REQUESTED, entered_at=datetime.now(timezone.utc))
        ]

    @property
    def current_state(self) -> BookingState:
        return self._current_state

    def transition(self, trigger: BookingTrigger) -> BookingState:
        """
        Execute a state transition.

        Raises:
            InvalidTransitionError: If no valid transition exists.
        """
        for t in self.TRANSITIONS:
            if t.from_state == self._current_state and t.trigger == trigger:
                old_state = self._current_state
                self._current_state = t.to_state
                self._history.append(StateEntry(
                    state=self._current_state,
                    entered_at=datetime.now(timezone.utc),
                    trigger=trigger,
                ))
                logger.debug(
                    "Booking transition: %s -> %s (trigger: %s)",
                    old_state.value, self._current_state.value, trigger.value,
                )
                return self._current_state

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_state.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self) -> list[BookingTrigger]:
        """Return all triggers valid from the current state."""
        return [t.trigger for t in self.TRANSITIONS if t.from_state == self._current_state]

    def get_history(self) -> list[StateEntry]:
        return list(self._history)

    def get_state_trace(self) -> list[str]:
        """Return ordered list of state names visited."""
        return [entry.state.value for entry in self._history]

    def is_terminal(self) -> bool:
        """True once no further transition is possible."""
        return not self.get_valid_triggers()
