"""
Service layer for the unified calendar.

Provides:
- Recurrence rule parsing and occurrence expansion
- Exception overlay for recurring manual events
- Multi-source aggregation
- View range calculation
- Optimistic mutations and time-range selection
"""

from unified_calendar.services.recurrence import (
    Frequency,
    Occurrence,
    RecurrenceRule,
    describe_rule,
    expand,
    normalize_rule_string,
    parse_rule,
    preview,
    serialize_rule,
)

from unified_calendar.services.exception_overlay import apply_exceptions

from unified_calendar.services.aggregator import EventAggregator

from unified_calendar.services.view_range import (
    CalendarView,
    range_for,
    shift_reference,
)

from unified_calendar.services.mutations import (
    EventProjection,
    MutationCoordinator,
    MutationRecord,
    MutationState,
)

from unified_calendar.services.selection import (
    TimeSelection,
    begin_selection,
    contains,
    extend_selection,
    selection_bounds,
)

__all__ = [
    # Recurrence
    "Frequency",
    "Occurrence",
    "RecurrenceRule",
    "describe_rule",
    "expand",
    "normalize_rule_string",
    "parse_rule",
    "preview",
    "serialize_rule",
    # Exceptions
    "apply_exceptions",
    # Aggregation
    "EventAggregator",
    # Views
    "CalendarView",
    "range_for",
    "shift_reference",
    # Mutations
    "EventProjection",
    "MutationCoordinator",
    "MutationRecord",
    "MutationState",
    # Selection
    "TimeSelection",
    "begin_selection",
    "contains",
    "extend_selection",
    "selection_bounds",
]
