"""
View range calculation.

Maps a calendar view and a reference date to the concrete window the
aggregator is queried with. Month grids are padded to whole weeks so the
rendered grid has no partial rows.
"""

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from unified_calendar.config import get_settings
from unified_calendar.integrations.base import Window

DateLike = Union[date, datetime]


class CalendarView(str, Enum):
    MONTH = "month"
    WEEK = "week"
    DAY = "day"
    AGENDA = "agenda"


def start_of_day(reference: DateLike) -> datetime:
    """Midnight of the reference day, keeping tzinfo of datetime references."""
    if isinstance(reference, datetime):
        return reference.replace(hour=0, minute=0, second=0, microsecond=0)
    return datetime(reference.year, reference.month, reference.day)


def start_of_week(reference: DateLike, week_start: int) -> datetime:
    """Midnight of the first day of the week containing ``reference``."""
    day = start_of_day(reference)
    return day - timedelta(days=(day.weekday() - week_start) % 7)


def range_for(
    view: Union[CalendarView, str],
    reference: DateLike,
    week_start: Optional[int] = None,
) -> Window:
    """
    Compute the query window for a view.

    Args:
        view: month, week, day or agenda
        reference: Any date inside the period to show
        week_start: First weekday of the grid (0=Monday); defaults to settings

    Returns:
        Half-open window ending at the midnight after the last shown day

    Raises:
        ValueError: If the view is unknown
    """
    view = CalendarView(view)
    if week_start is None:
        week_start = get_settings().week_start_day

    day = start_of_day(reference)

    if view == CalendarView.MONTH:
        first = day.replace(day=1)
        last = first + relativedelta(months=1) - timedelta(days=1)
        return Window(
            start=start_of_week(first, week_start),
            end=start_of_week(last, week_start) + timedelta(days=7),
        )

    if view == CalendarView.WEEK:
        week = start_of_week(day, week_start)
        return Window(start=week, end=week + timedelta(days=7))

    if view == CalendarView.DAY:
        return Window(start=day, end=day + timedelta(days=1))

    # Agenda lists the reference's calendar month.
    first = day.replace(day=1)
    return Window(start=first, end=first + relativedelta(months=1))


def shift_reference(
    view: Union[CalendarView, str],
    reference: DateLike,
    steps: int,
) -> DateLike:
    """
    Move the reference date by whole view periods (negative steps go back).

    Month and agenda views move by months, week by weeks, day by days.
    """
    view = CalendarView(view)
    if view == CalendarView.WEEK:
        return reference + timedelta(weeks=steps)
    if view == CalendarView.DAY:
        return reference + timedelta(days=steps)
    return reference + relativedelta(months=steps)
