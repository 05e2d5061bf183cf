from src.booking.orchestrator import BookingOrchestrator, build_installation_request
from src.booking.state_machine import (
    BookingState,
    BookingStateMachine,
    BookingTrigger,
    InvalidTransitionError,
)

__all__ = [
    "BookingOrchestrator",
    "build_installation_request",
    "BookingState",
    "BookingStateMachine",
    "BookingTrigger",
    "InvalidTransitionError",
]
