"""
Drag-to-select time ranges on week/day grids.

A selection is an immutable value: each pointer event produces a new one,
so there is no hidden state to reset between drags.
"""

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence


@dataclass(frozen=True)
class TimeSelection:
    """Hour cells selected within one grid column."""

    day_index: int
    start_hour: int
    end_hour: int

    @property
    def first_hour(self) -> int:
        return min(self.start_hour, self.end_hour)

    @property
    def last_hour(self) -> int:
        return max(self.start_hour, self.end_hour)

    @property
    def hours(self) -> int:
        return self.last_hour - self.first_hour + 1


def _check_hour(hour: int) -> None:
    if not 0 <= hour <= 23:
        raise ValueError(f"Hour out of range: {hour}")


def begin_selection(day_index: int, hour: int) -> TimeSelection:
    """Start a selection on a single hour cell."""
    _check_hour(hour)
    return TimeSelection(day_index=day_index, start_hour=hour, end_hour=hour)


def extend_selection(
    selection: Optional[TimeSelection],
    day_index: int,
    hour: int,
) -> Optional[TimeSelection]:
    """
    Drag the selection to another hour cell.

    Moving into another day column leaves the selection unchanged; ranges
    never span days.
    """
    if selection is None or day_index != selection.day_index:
        return selection
    _check_hour(hour)
    return replace(selection, end_hour=hour)


def contains(selection: Optional[TimeSelection], day_index: int, hour: int) -> bool:
    """Check whether a grid cell is highlighted."""
    if selection is None or day_index != selection.day_index:
        return False
    return selection.first_hour <= hour <= selection.last_hour


def selection_bounds(
    selection: TimeSelection,
    days: Sequence[date],
) -> tuple[datetime, datetime]:
    """
    Turn a selection into event instants.

    The end is the hour after the last selected cell, so selecting 9-11
    yields 09:00-12:00.

    Args:
        selection: Finished selection
        days: Dates of the grid columns, indexed by ``day_index``

    Returns:
        (start, end) on the selected day, tzinfo taken from datetime columns
    """
    column = days[selection.day_index]
    tzinfo = column.tzinfo if isinstance(column, datetime) else None
    day = date(column.year, column.month, column.day)

    start = datetime.combine(day, time(selection.first_hour), tzinfo=tzinfo)
    end = datetime.combine(day, time(0), tzinfo=tzinfo) + timedelta(hours=selection.last_hour + 1)
    return start, end
