"""
Per-date exception overlay for recurring anchors.

Exceptions are matched to occurrences by calendar date only, never by exact
instant, so an override keeps applying even if the series time changes.
"""

import logging
from dataclasses import replace
from datetime import date
from typing import Sequence

from unified_calendar.integrations.base import CalendarEvent, CalendarException

logger = logging.getLogger(__name__)


def index_exceptions(
    exceptions: Sequence[CalendarException],
) -> dict[date, CalendarException]:
    """
    Pick the effective exception for each original date.

    A cancellation beats any modification on the same date; among several
    modifications the last one listed wins.
    """
    by_date: dict[date, CalendarException] = {}
    for exception in exceptions:
        current = by_date.get(exception.original_date)
        if current is not None and current.is_cancellation:
            continue
        by_date[exception.original_date] = exception
    return by_date


def _modified(event: CalendarEvent, exception: CalendarException) -> CalendarEvent:
    changes = {}
    if exception.new_start_at is not None:
        changes["start_at"] = exception.new_start_at
    if exception.new_end_at is not None:
        changes["end_at"] = exception.new_end_at
    elif exception.new_start_at is not None and event.end_at is not None:
        # Moving only the start keeps the occurrence's duration
        changes["end_at"] = exception.new_start_at + event.duration
    if exception.new_title is not None:
        changes["title"] = exception.new_title
    if exception.new_description is not None:
        changes["description"] = exception.new_description

    metadata = dict(event.metadata)
    if exception.id is not None:
        metadata["exception_id"] = exception.id
    return replace(event, metadata=metadata, **changes)


def apply_exceptions(
    occurrences: Sequence[CalendarEvent],
    exceptions: Sequence[CalendarException],
) -> list[CalendarEvent]:
    """
    Apply cancellations and modifications to expanded occurrences.

    Args:
        occurrences: Occurrences as produced by expansion (unmodified instants)
        exceptions: Exceptions of the anchor the occurrences belong to

    Returns:
        Occurrences with cancelled dates removed and modified dates rewritten.
        Exceptions with no matching occurrence are ignored.
    """
    if not exceptions:
        return list(occurrences)

    by_date = index_exceptions(exceptions)
    result = []
    for occurrence in occurrences:
        exception = by_date.get(occurrence.start_at.date())
        if exception is None:
            result.append(occurrence)
        elif exception.is_cancellation:
            logger.debug(
                f"Occurrence {occurrence.source_id}@{occurrence.start_at.date()} cancelled"
            )
        else:
            result.append(_modified(occurrence, exception))
    return result
