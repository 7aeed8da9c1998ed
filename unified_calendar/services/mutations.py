"""
Optimistic mutation of manual calendar events.

The caller owns an EventProjection (the list it renders). Every mutation is
applied to the projection first, then written through the EventWriter; a
rejected write restores the entries the mutation touched.

State per mutation: IDLE -> OPTIMISTICALLY_APPLIED -> COMMITTED | ROLLED_BACK

Concurrent mutations of one event are not queued or merged: the latest
optimistic apply wins locally and the last completed write wins in storage.
"""

import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Awaitable, Callable, Iterable, Iterator, Optional, Union

from unified_calendar.config import Settings, get_settings
from unified_calendar.errors import (
    EventNotFoundError,
    EventValidationError,
    OwnershipViolationError,
    WriteConflictError,
)
from unified_calendar.integrations.base import (
    CalendarEvent,
    CalendarException,
    EventDraft,
    EventStatus,
    EventWriter,
    ExceptionStore,
    ExceptionType,
    ManualEvent,
    SourceType,
)
from unified_calendar.services.recurrence import normalize_rule_string, parse_rule

logger = logging.getLogger(__name__)

EventKey = tuple[SourceType, str]

UPDATABLE_FIELDS = frozenset({
    "title",
    "description",
    "start_at",
    "end_at",
    "all_day",
    "location",
    "assigned_to",
    "customer_id",
    "branch_id",
    "color",
    "status",
    "recurrence_rule",
})

REQUIRED_FIELDS = ("title", "start_at", "all_day", "status")


class MutationState(str, Enum):
    IDLE = "idle"
    OPTIMISTICALLY_APPLIED = "optimistically_applied"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class MutationRecord:
    """Outcome of one mutation, kept so callers can inspect or replay it."""

    event_key: EventKey
    operation: str
    state: MutationState = MutationState.IDLE
    before: Optional[CalendarEvent] = None
    after: Optional[CalendarEvent] = None
    error: Optional[Exception] = None


class EventProjection:
    """
    Ordered in-memory list of the occurrences a caller is showing.

    Holds anchors and generated occurrences side by side; mutations only ever
    rewrite anchors.
    """

    def __init__(self, events: Iterable[CalendarEvent] = ()):
        self._events: list[CalendarEvent] = list(events)

    @property
    def events(self) -> list[CalendarEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[CalendarEvent]:
        return iter(list(self._events))

    def find_anchor(self, key: EventKey) -> Optional[CalendarEvent]:
        """The persisted record for ``key`` if it is in view."""
        for event in self._events:
            if event.key == key and not event.is_recurrence_instance:
                return event
        return None

    def occurrences_of(self, key: EventKey) -> list[CalendarEvent]:
        return [event for event in self._events if event.key == key]

    def entries(self, key: EventKey) -> list[tuple[int, CalendarEvent]]:
        """Positions and values of everything sharing ``key``."""
        return [(i, event) for i, event in enumerate(self._events) if event.key == key]

    def add(self, event: CalendarEvent) -> None:
        self._events.append(event)

    def replace_anchor(self, event: CalendarEvent) -> None:
        for i, current in enumerate(self._events):
            if current.key == event.key and not current.is_recurrence_instance:
                self._events[i] = event
                return
        raise KeyError(event.key)

    def remove(self, key: EventKey) -> None:
        """Drop the anchor and every generated occurrence of ``key``."""
        self._events = [event for event in self._events if event.key != key]

    def restore(self, key: EventKey, entries: list[tuple[int, CalendarEvent]]) -> None:
        """Put back entries captured by entries(), at their original positions."""
        self.remove(key)
        for index, event in sorted(entries, key=lambda entry: entry[0]):
            self._events.insert(min(index, len(self._events)), event)


class MutationCoordinator:
    """
    Applies create/update/delete/move/resize to manual events.

    Only manual events are writable; anything else raises
    OwnershipViolationError before any state changes.
    """

    def __init__(
        self,
        projection: EventProjection,
        writer: EventWriter,
        organization_id: str,
        exception_store: Optional[ExceptionStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.projection = projection
        self._writer = writer
        self._organization_id = organization_id
        self._exception_store = exception_store
        self._settings = settings or get_settings()

    # -------------------------------------------------------------------------
    # Target resolution & validation
    # -------------------------------------------------------------------------

    def _locate(self, event_id: str, source_type: Union[SourceType, str]) -> CalendarEvent:
        if not event_id or event_id == "undefined":
            raise EventValidationError(f"Invalid event id: {event_id!r}")

        source_type = SourceType(source_type)
        if source_type != SourceType.MANUAL:
            raise OwnershipViolationError(
                f"{source_type.value} events are read-only; only manual events can be changed"
            )

        key = (SourceType.MANUAL, str(event_id))
        anchor = self.projection.find_anchor(key)
        if anchor is not None:
            return anchor

        if self.projection.occurrences_of(key):
            raise EventValidationError(
                f"Event {event_id} is only in view as generated occurrences; "
                "edit the series anchor or add an exception for the date"
            )
        raise EventNotFoundError(f"Event {event_id} not found")

    def _align(self, value: Optional[datetime], reference: datetime) -> Optional[datetime]:
        """Naive input is wall-clock time in the configured timezone."""
        if value is None or value.tzinfo is not None or reference.tzinfo is None:
            return value
        return value.replace(tzinfo=self._settings.tzinfo)

    def _check_instants(self, start: datetime, end: Optional[datetime]) -> None:
        if end is not None and end <= start:
            raise EventValidationError(f"End {end} must be after start {start}")

    def _clean_patch(self, patch: dict, anchor: CalendarEvent) -> dict:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise EventValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        cleaned = dict(patch)
        for field_name in REQUIRED_FIELDS:
            if field_name in cleaned and cleaned[field_name] is None:
                raise EventValidationError(f"{field_name} cannot be cleared")
        for field_name in ("start_at", "end_at"):
            if field_name in cleaned:
                cleaned[field_name] = self._align(cleaned[field_name], anchor.start_at)
        if "title" in cleaned and not (cleaned["title"] or "").strip():
            raise EventValidationError("Title cannot be empty")
        if "status" in cleaned:
            try:
                cleaned["status"] = EventStatus(cleaned["status"])
            except ValueError:
                raise EventValidationError(f"Unknown status: {cleaned['status']}")
        if "recurrence_rule" in cleaned:
            cleaned["recurrence_rule"] = normalize_rule_string(cleaned["recurrence_rule"])
        return cleaned

    # -------------------------------------------------------------------------
    # Optimistic protocol
    # -------------------------------------------------------------------------

    async def _apply_optimistically(
        self,
        operation: str,
        before: CalendarEvent,
        after: Optional[CalendarEvent],
        write: Callable[[], Awaitable[None]],
    ) -> MutationRecord:
        """
        Apply ``after`` (None removes the event) locally, then write through.

        Raises:
            WriteConflictError: If the writer rejects the change (already rolled back)
        """
        key = before.key
        record = MutationRecord(event_key=key, operation=operation, before=before, after=after)
        snapshot = self.projection.entries(key)

        if after is None:
            self.projection.remove(key)
        else:
            self.projection.replace_anchor(after)
        record.state = MutationState.OPTIMISTICALLY_APPLIED

        try:
            await write()
        except Exception as e:
            self.projection.restore(key, snapshot)
            record.state = MutationState.ROLLED_BACK
            record.error = e
            logger.warning(f"{operation} of event {key[1]} rejected, rolled back: {e}")
            raise WriteConflictError(
                f"Could not {operation} event {key[1]}: {e}",
                mutation=record,
                original_error=e,
            ) from e

        record.state = MutationState.COMMITTED
        logger.info(f"{operation} of event {key[1]} committed")
        return record

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def create(self, draft: EventDraft) -> ManualEvent:
        """
        Create a manual event and add it to the projection.

        Occurrences of a recurring draft appear on the next aggregation query.

        Raises:
            EventValidationError: If the draft is malformed
            WriteConflictError: If the writer rejects the insert
        """
        if not (draft.title or "").strip():
            raise EventValidationError("Title cannot be empty")
        self._check_instants(draft.start_at, draft.end_at)
        draft = replace(draft, recurrence_rule=normalize_rule_string(draft.recurrence_rule))

        try:
            event = await self._writer.insert(self._organization_id, draft)
        except Exception as e:
            logger.warning(f"Insert of '{draft.title}' rejected: {e}")
            raise WriteConflictError(f"Could not create event: {e}", original_error=e) from e

        self.projection.add(event)
        logger.info(f"Created manual event {event.source_id} '{event.title}'")
        return event

    async def update(
        self,
        event_id: str,
        patch: dict,
        source_type: Union[SourceType, str] = SourceType.MANUAL,
    ) -> MutationRecord:
        """Patch fields of a manual anchor."""
        before = self._locate(event_id, source_type)
        patch = self._clean_patch(patch, before)
        after = replace(before, **patch)
        self._check_instants(after.start_at, after.end_at)

        return await self._apply_optimistically(
            "update",
            before,
            after,
            lambda: self._writer.update_patch(before.source_id, patch),
        )

    async def delete(
        self,
        event_id: str,
        source_type: Union[SourceType, str] = SourceType.MANUAL,
    ) -> MutationRecord:
        """Delete a manual anchor together with its generated occurrences."""
        before = self._locate(event_id, source_type)
        return await self._apply_optimistically(
            "delete",
            before,
            None,
            lambda: self._writer.delete(before.source_id),
        )

    async def move(
        self,
        event_id: str,
        new_date: date,
        new_hour: int,
        source_type: Union[SourceType, str] = SourceType.MANUAL,
    ) -> MutationRecord:
        """
        Move an event to another day/hour.

        Keeps the original minute-of-hour and duration; open-ended events get
        the configured default duration.

        Args:
            event_id: Manual event id
            new_date: Target day (time part ignored)
            new_hour: Target hour, 0-23
            source_type: Source of the dragged event

        Returns:
            Committed MutationRecord
        """
        before = self._locate(event_id, source_type)
        if not 0 <= new_hour <= 23:
            raise EventValidationError(f"Hour out of range: {new_hour}")

        duration = before.duration
        if duration is None:
            duration = timedelta(minutes=self._settings.default_event_duration_minutes)

        # Hours are grid cells in the configured timezone
        original = before.start_at
        if original.tzinfo is not None:
            original = original.astimezone(self._settings.tzinfo)
        new_start = datetime.combine(
            date(new_date.year, new_date.month, new_date.day),
            time(new_hour, original.minute),
            tzinfo=original.tzinfo,
        )
        new_end = new_start + duration
        after = replace(before, start_at=new_start, end_at=new_end)

        return await self._apply_optimistically(
            "move",
            before,
            after,
            lambda: self._writer.update_patch(
                before.source_id, {"start_at": new_start, "end_at": new_end}
            ),
        )

    async def resize(
        self,
        event_id: str,
        new_start: datetime,
        new_end: datetime,
        source_type: Union[SourceType, str] = SourceType.MANUAL,
    ) -> MutationRecord:
        """
        Change both instants of an event.

        Raises:
            EventValidationError: If end <= start or the duration is under the minimum
        """
        before = self._locate(event_id, source_type)
        new_start = self._align(new_start, before.start_at)
        new_end = self._align(new_end, before.start_at)
        self._check_instants(new_start, new_end)
        minimum = timedelta(minutes=self._settings.min_event_duration_minutes)
        if new_end - new_start < minimum:
            raise EventValidationError(
                f"Events must last at least {self._settings.min_event_duration_minutes} minutes"
            )

        after = replace(before, start_at=new_start, end_at=new_end)
        return await self._apply_optimistically(
            "resize",
            before,
            after,
            lambda: self._writer.update_patch(
                before.source_id, {"start_at": new_start, "end_at": new_end}
            ),
        )

    # -------------------------------------------------------------------------
    # Exceptions
    # -------------------------------------------------------------------------

    def _require_exception_store(self) -> ExceptionStore:
        if self._exception_store is None:
            raise RuntimeError("MutationCoordinator was created without an exception store")
        return self._exception_store

    async def _recurring_anchor(self, anchor_id: str) -> CalendarEvent:
        anchor = self.projection.find_anchor((SourceType.MANUAL, str(anchor_id)))
        if anchor is None:
            anchor = await self._writer.get(self._organization_id, str(anchor_id))
        if anchor is None:
            raise EventNotFoundError(f"Event {anchor_id} not found")
        if not parse_rule(anchor.recurrence_rule).is_recurring:
            raise EventValidationError(f"Event {anchor_id} does not recur")
        return anchor

    def _check_exception(self, exception: CalendarException) -> None:
        if exception.exception_type == ExceptionType.MODIFIED:
            overrides = (
                exception.new_start_at,
                exception.new_end_at,
                exception.new_title,
                exception.new_description,
            )
            if all(value is None for value in overrides):
                raise EventValidationError("A modified exception needs at least one override")
            if exception.new_start_at is not None:
                self._check_instants(exception.new_start_at, exception.new_end_at)

    async def add_exception(
        self,
        anchor_id: str,
        original_date: date,
        exception_type: Union[ExceptionType, str],
        new_start_at: Optional[datetime] = None,
        new_end_at: Optional[datetime] = None,
        new_title: Optional[str] = None,
        new_description: Optional[str] = None,
    ) -> CalendarException:
        """
        Cancel or modify one occurrence date of a recurring manual anchor.

        The projection is not rewritten; the next query applies the exception.
        """
        store = self._require_exception_store()
        anchor = await self._recurring_anchor(anchor_id)

        exception = CalendarException(
            owner_id=anchor.source_id,
            original_date=original_date,
            exception_type=ExceptionType(exception_type),
            new_start_at=new_start_at,
            new_end_at=new_end_at,
            new_title=new_title,
            new_description=new_description,
        )
        self._check_exception(exception)

        created = await store.create(exception)
        logger.info(
            f"Added {created.exception_type.value} exception for event {anchor.source_id} "
            f"on {original_date.isoformat()}"
        )
        return created

    async def update_exception(self, exception_id: str, updates: dict) -> CalendarException:
        store = self._require_exception_store()
        current = await store.get(exception_id)
        if current is None:
            raise EventNotFoundError(f"Exception {exception_id} not found")

        allowed = {"original_date", "exception_type", "new_start_at", "new_end_at", "new_title", "new_description"}
        unknown = set(updates) - allowed
        if unknown:
            raise EventValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        if "exception_type" in updates:
            updates = {**updates, "exception_type": ExceptionType(updates["exception_type"])}

        self._check_exception(replace(current, **updates))
        return await store.update(exception_id, updates)

    async def remove_exception(self, exception_id: str) -> None:
        store = self._require_exception_store()
        if not await store.delete(exception_id):
            raise EventNotFoundError(f"Exception {exception_id} not found")
        logger.info(f"Removed exception {exception_id}")
