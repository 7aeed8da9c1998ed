"""
Event aggregation across calendar sources.

Merges manual events with the events every other module projects onto the
calendar:
- Two read shapes per source (anchored in window, recurring anchors before it)
- Deduplication by (source type, source id) before expansion
- Recurrence expansion plus exception overlay for recurring anchors
- One ordered occurrence list per window
"""

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Sequence

from unified_calendar.config import Settings, get_settings
from unified_calendar.errors import SourceUnavailableError
from unified_calendar.integrations.base import (
    CalendarEvent,
    CalendarException,
    CalendarFilters,
    ExceptionStore,
    RawEventRow,
    SourceReader,
    SourceType,
    Window,
    build_event,
)
from unified_calendar.services.exception_overlay import apply_exceptions
from unified_calendar.services.recurrence import (
    Occurrence,
    expand,
    format_occurrence_date,
    parse_rule,
)

logger = logging.getLogger(__name__)


def align_instant(value: Optional[datetime], reference: datetime, settings: Settings) -> Optional[datetime]:
    """
    Make ``value`` comparable with ``reference``.

    Naive instants are read as wall-clock time in the configured timezone.
    """
    if value is None:
        return None
    if reference.tzinfo is not None and value.tzinfo is None:
        return value.replace(tzinfo=settings.tzinfo).astimezone(reference.tzinfo)
    if reference.tzinfo is None and value.tzinfo is not None:
        return value.astimezone(settings.tzinfo).replace(tzinfo=None)
    return value


def materialize(anchor: CalendarEvent, occurrence: Occurrence) -> CalendarEvent:
    """
    Turn an expanded occurrence into an event.

    The anchor occurrence is the anchor record itself; generated ones drop the
    rule and carry provenance flags pointing back at the anchor.
    """
    if occurrence.is_anchor:
        return anchor
    return replace(
        anchor,
        start_at=occurrence.start,
        end_at=occurrence.end,
        recurrence_rule=None,
        metadata={
            **anchor.metadata,
            "is_recurrence_instance": True,
            "original_event_id": anchor.source_id,
            "occurrence_date": format_occurrence_date(occurrence.start),
        },
    )


class EventAggregator:
    """
    Builds the unified occurrence list for a window.

    Readers are queried concurrently; any reader failure fails the whole
    query. Nothing is retried here.
    """

    def __init__(
        self,
        readers: Sequence[SourceReader],
        exception_store: Optional[ExceptionStore] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the aggregator.

        Args:
            readers: One reader per source type
            exception_store: Store for manual-event exceptions (None disables overlays)
            settings: Engine settings (loads cached settings if None)
        """
        self._readers: dict[SourceType, SourceReader] = {}
        for reader in readers:
            if reader.source_type in self._readers:
                raise ValueError(f"Duplicate reader for source type {reader.source_type}")
            self._readers[SourceType(reader.source_type)] = reader
        self._exception_store = exception_store
        self._settings = settings or get_settings()

    @property
    def source_types(self) -> list[SourceType]:
        return list(self._readers)

    async def query(
        self,
        organization_id: str,
        window: Window,
        filters: Optional[CalendarFilters] = None,
    ) -> list[CalendarEvent]:
        """
        Get every occurrence starting inside the window.

        Args:
            organization_id: Organization whose calendar is requested
            window: Half-open time range
            filters: Branch/assignee/status/source filters

        Returns:
            Occurrences sorted by start

        Raises:
            SourceUnavailableError: If any reader or the exception store fails
        """
        filters = filters or CalendarFilters()
        readers = [
            reader for source_type, reader in self._readers.items()
            if filters.allows_source(source_type)
        ]

        results = await asyncio.gather(
            *(self._read_source(reader, organization_id, window, filters) for reader in readers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        anchors = self._merge(organization_id, window, filters, results)
        exceptions = await self._load_exceptions(anchors)

        events: list[CalendarEvent] = []
        for anchor in anchors:
            events.extend(self._occurrences_in_window(anchor, window, exceptions))

        events.sort(key=lambda e: (e.start_at, e.source_type.value, e.source_id))
        logger.debug(
            f"Aggregated {len(events)} occurrences from {len(anchors)} anchors "
            f"for org {organization_id} in [{window.start}, {window.end})"
        )
        return events

    async def _read_source(
        self,
        reader: SourceReader,
        organization_id: str,
        window: Window,
        filters: CalendarFilters,
    ) -> tuple[SourceType, list[RawEventRow]]:
        """Issue both read shapes for one source; in-window rows come first."""
        source_type = SourceType(reader.source_type)
        try:
            in_window, recurring = await asyncio.gather(
                reader.fetch_in_window(organization_id, window.start, window.end, filters),
                reader.fetch_recurring_anchors_before(organization_id, window.end, filters),
            )
        except Exception as e:
            logger.error(f"Source reader '{source_type.value}' failed: {e}")
            raise SourceUnavailableError(
                f"Calendar source '{source_type.value}' is unavailable",
                source_type=source_type.value,
                original_error=e,
            ) from e
        return source_type, [*in_window, *recurring]

    def _merge(
        self,
        organization_id: str,
        window: Window,
        filters: CalendarFilters,
        results: Sequence[tuple[SourceType, list[RawEventRow]]],
    ) -> list[CalendarEvent]:
        """Deduplicate rows by identity and build their event variants."""
        seen: set[tuple[SourceType, str]] = set()
        anchors: list[CalendarEvent] = []

        for source_type, rows in results:
            for row in rows:
                if row.organization_id is not None and str(row.organization_id) != str(organization_id):
                    logger.warning(
                        f"Dropping {source_type.value} row {row.source_id}: belongs to "
                        f"organization {row.organization_id}, not {organization_id}"
                    )
                    continue

                key = (source_type, str(row.source_id))
                if key in seen:
                    continue
                seen.add(key)

                if not filters.matches(row):
                    continue

                row = replace(
                    row,
                    start_at=align_instant(row.start_at, window.start, self._settings),
                    end_at=align_instant(row.end_at, window.start, self._settings),
                )
                anchors.append(build_event(source_type, row))

        return anchors

    async def _load_exceptions(
        self,
        anchors: Sequence[CalendarEvent],
    ) -> dict[str, list[CalendarException]]:
        """Fetch exceptions for recurring manual anchors in one batch."""
        if self._exception_store is None:
            return {}

        anchor_ids = [
            anchor.source_id for anchor in anchors
            if anchor.is_manual and parse_rule(anchor.recurrence_rule).is_recurring
        ]
        if not anchor_ids:
            return {}

        try:
            return await self._exception_store.list_for_anchors(anchor_ids)
        except Exception as e:
            logger.error(f"Exception store failed: {e}")
            raise SourceUnavailableError(
                "Calendar exceptions are unavailable",
                source_type=SourceType.MANUAL.value,
                original_error=e,
            ) from e

    def _occurrences_in_window(
        self,
        anchor: CalendarEvent,
        window: Window,
        exceptions: dict[str, list[CalendarException]],
    ) -> list[CalendarEvent]:
        rule = parse_rule(anchor.recurrence_rule)
        if not rule.is_recurring:
            return [anchor] if window.contains(anchor.start_at) else []

        occurrences = expand(
            anchor.start_at,
            anchor.end_at,
            rule,
            window.start,
            window.end,
            max_occurrences=self._settings.max_occurrences_per_series,
            tolerance=timedelta(seconds=self._settings.anchor_tolerance_seconds),
        )
        series = [materialize(anchor, occurrence) for occurrence in occurrences]

        if anchor.is_manual:
            series = apply_exceptions(series, exceptions.get(anchor.source_id, []))
            # A modification may move an occurrence out of the window
            series = [
                event for event in series
                if window.contains(align_instant(event.start_at, window.start, self._settings))
            ]
        return series
