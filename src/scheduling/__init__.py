from src.scheduling.availability import SlotAvailabilityComputer
from src.scheduling.busy_aggregator import BusyTimeAggregator, merge_intervals
from src.scheduling.matcher import AssignmentPolicy, ResourceMatcher
from src.scheduling.slots import build_slot_grid, default_date_range, find_slot

__all__ = [
    "SlotAvailabilityComputer",
    "BusyTimeAggregator",
    "merge_intervals",
    "ResourceMatcher",
    "AssignmentPolicy",
    "build_slot_grid",
    "default_date_range",
    "find_slot",
]
