"""
SQLAlchemy-backed calendar sources.

Implements the engine boundaries on top of the calendar tables:
- ManualEventReader / SqlEventWriter: calendar_events
- ProjectedSourceReader: calendar_source_events, one reader per source type
- SqlExceptionStore: calendar_exceptions

SQLAlchemy sessions are synchronous, so every query runs in a thread pool
and the aggregator can still fan out across sources.
"""

import asyncio
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from unified_calendar.config import get_settings
from unified_calendar.database import get_db_context
from unified_calendar.errors import EventNotFoundError
from unified_calendar.integrations.base import (
    CalendarException,
    CalendarFilters,
    EventDraft,
    EventStatus,
    ExceptionType,
    ManualEvent,
    RawEventRow,
    SourceType,
    build_event,
)
from unified_calendar.models import (
    CalendarEventRecord,
    CalendarExceptionRecord,
    SourceEventRecord,
)

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = frozenset({"start_at", "end_at", "new_start_at", "new_end_at"})


def _to_storage(value: Optional[datetime]) -> Optional[datetime]:
    """Store instants in UTC; naive values are wall-clock in the configured timezone."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=get_settings().tzinfo)
    return value.astimezone(timezone.utc)


def _from_storage(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive UTC; make every loaded instant aware."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _storage_value(field_name: str, value):
    if field_name in _DATETIME_FIELDS:
        return _to_storage(value)
    if isinstance(value, (EventStatus, ExceptionType)):
        return value.value
    return value


class _SqlRepository:
    """Shared session and thread pool handling."""

    def __init__(
        self,
        session_factory: sessionmaker,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        """
        Args:
            session_factory: Factory producing sessions bound to the calendar database
            executor: Thread pool for blocking queries (creates default if None)
        """
        self._session_factory = session_factory
        self._executor = executor or ThreadPoolExecutor(
            max_workers=get_settings().source_reader_workers
        )

    async def _run_in_executor(self, func, *args, **kwargs):
        """Run a synchronous function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            partial(func, *args, **kwargs),
        )

    def _session(self):
        return get_db_context(self._session_factory)


# =============================================================================
# Manual events
# =============================================================================


def _manual_row(record: CalendarEventRecord) -> RawEventRow:
    return RawEventRow(
        source_id=str(record.id),
        start_at=_from_storage(record.start_at),
        end_at=_from_storage(record.end_at),
        all_day=record.all_day,
        title=record.title,
        description=record.description,
        recurrence_rule=record.recurrence_rule,
        status=record.status,
        organization_id=record.organization_id,
        branch_id=record.branch_id,
        assigned_to=record.assigned_to,
        color=record.color,
        metadata=dict(record.event_metadata or {}),
        extra={
            "location": record.location,
            "customer_id": record.customer_id,
        },
    )


def _scoped_manual_query(organization_id: str, filters: CalendarFilters):
    query = select(CalendarEventRecord).where(
        CalendarEventRecord.organization_id == str(organization_id),
        CalendarEventRecord.deleted_at.is_(None),
    )
    if filters.branch_id is not None:
        query = query.where(CalendarEventRecord.branch_id == filters.branch_id)
    if filters.assigned_to is not None:
        query = query.where(CalendarEventRecord.assigned_to == filters.assigned_to)
    if filters.status != "all":
        query = query.where(CalendarEventRecord.status == EventStatus(filters.status).value)
    return query


class ManualEventReader(_SqlRepository):
    """Reads manual events from calendar_events."""

    source_type = SourceType.MANUAL

    def _fetch_in_window(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        filters: CalendarFilters,
    ) -> list[RawEventRow]:
        query = _scoped_manual_query(organization_id, filters).where(
            CalendarEventRecord.start_at >= _to_storage(start),
            CalendarEventRecord.start_at < _to_storage(end),
        ).order_by(CalendarEventRecord.start_at)

        with self._session() as session:
            return [_manual_row(record) for record in session.scalars(query)]

    def _fetch_recurring(
        self,
        organization_id: str,
        end: datetime,
        filters: CalendarFilters,
    ) -> list[RawEventRow]:
        query = _scoped_manual_query(organization_id, filters).where(
            CalendarEventRecord.recurrence_rule.is_not(None),
            CalendarEventRecord.recurrence_rule != "",
            CalendarEventRecord.start_at < _to_storage(end),
        ).order_by(CalendarEventRecord.start_at)

        with self._session() as session:
            return [_manual_row(record) for record in session.scalars(query)]

    async def fetch_in_window(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        filters: CalendarFilters,
    ) -> Sequence[RawEventRow]:
        rows = await self._run_in_executor(
            self._fetch_in_window, organization_id, start, end, filters
        )
        logger.debug(f"Read {len(rows)} manual events for org {organization_id}")
        return rows

    async def fetch_recurring_anchors_before(
        self,
        organization_id: str,
        end: datetime,
        filters: CalendarFilters,
    ) -> Sequence[RawEventRow]:
        return await self._run_in_executor(
            self._fetch_recurring, organization_id, end, filters
        )


class SqlEventWriter(_SqlRepository):
    """
    Writes manual events to calendar_events.

    Deletes are soft deletes; readers never return deleted rows.
    """

    def _load(self, session: Session, event_id: str) -> CalendarEventRecord:
        record_id = _parse_uuid(event_id)
        record = session.get(CalendarEventRecord, record_id) if record_id else None
        if record is None or record.is_deleted:
            raise EventNotFoundError(f"Event {event_id} not found")
        return record

    def _get(self, organization_id: str, event_id: str) -> Optional[ManualEvent]:
        record_id = _parse_uuid(event_id)
        if record_id is None:
            return None
        with self._session() as session:
            record = session.get(CalendarEventRecord, record_id)
            if record is None or record.is_deleted or record.organization_id != str(organization_id):
                return None
            return build_event(SourceType.MANUAL, _manual_row(record))

    def _insert(self, organization_id: str, draft: EventDraft) -> ManualEvent:
        record = CalendarEventRecord(
            organization_id=str(organization_id),
            branch_id=draft.branch_id,
            title=draft.title.strip(),
            description=draft.description,
            location=draft.location,
            start_at=_to_storage(draft.start_at),
            end_at=_to_storage(draft.end_at),
            all_day=draft.all_day,
            assigned_to=draft.assigned_to,
            customer_id=draft.customer_id,
            color=draft.color,
            status=EventStatus(draft.status).value,
            recurrence_rule=draft.recurrence_rule,
            event_metadata=dict(draft.metadata or {}),
        )
        with self._session() as session:
            session.add(record)
            session.flush()
            event = build_event(SourceType.MANUAL, _manual_row(record))
        logger.info(f"Inserted manual event {event.source_id} for org {organization_id}")
        return event

    def _update_patch(self, event_id: str, patch: dict) -> None:
        with self._session() as session:
            record = self._load(session, event_id)
            for field_name, value in patch.items():
                column = "event_metadata" if field_name == "metadata" else field_name
                setattr(record, column, _storage_value(field_name, value))

    def _delete(self, event_id: str) -> None:
        with self._session() as session:
            self._load(session, event_id).soft_delete()

    async def get(self, organization_id: str, event_id: str) -> Optional[ManualEvent]:
        return await self._run_in_executor(self._get, organization_id, event_id)

    async def insert(self, organization_id: str, draft: EventDraft) -> ManualEvent:
        return await self._run_in_executor(self._insert, organization_id, draft)

    async def update_patch(self, event_id: str, patch: dict) -> None:
        await self._run_in_executor(self._update_patch, event_id, patch)

    async def delete(self, event_id: str) -> None:
        await self._run_in_executor(self._delete, event_id)


# =============================================================================
# Projected sources
# =============================================================================


def _projected_row(record: SourceEventRecord) -> RawEventRow:
    return RawEventRow(
        source_id=record.source_id,
        start_at=_from_storage(record.start_at),
        end_at=_from_storage(record.end_at),
        all_day=record.all_day,
        title=record.title,
        description=record.description,
        recurrence_rule=record.recurrence_rule,
        status=record.status,
        organization_id=record.organization_id,
        branch_id=record.branch_id,
        assigned_to=record.assigned_to,
        color=record.color,
        extra=dict(record.attributes or {}),
    )


class ProjectedSourceReader(_SqlRepository):
    """
    Reads one source type from calendar_source_events.

    Status vocabularies differ per source, so status filtering is left to the
    aggregator.
    """

    def __init__(
        self,
        source_type: SourceType,
        session_factory: sessionmaker,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        super().__init__(session_factory, executor)
        self.source_type = SourceType(source_type)
        if self.source_type == SourceType.MANUAL:
            raise ValueError("Manual events are read by ManualEventReader")

    def _scoped_query(self, organization_id: str, filters: CalendarFilters):
        query = select(SourceEventRecord).where(
            SourceEventRecord.organization_id == str(organization_id),
            SourceEventRecord.source_type == self.source_type.value,
            SourceEventRecord.deleted_at.is_(None),
        )
        if filters.branch_id is not None:
            query = query.where(SourceEventRecord.branch_id == filters.branch_id)
        if filters.assigned_to is not None:
            query = query.where(SourceEventRecord.assigned_to == filters.assigned_to)
        return query

    def _fetch_in_window(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        filters: CalendarFilters,
    ) -> list[RawEventRow]:
        query = self._scoped_query(organization_id, filters).where(
            SourceEventRecord.start_at >= _to_storage(start),
            SourceEventRecord.start_at < _to_storage(end),
        ).order_by(SourceEventRecord.start_at)

        with self._session() as session:
            return [_projected_row(record) for record in session.scalars(query)]

    def _fetch_recurring(
        self,
        organization_id: str,
        end: datetime,
        filters: CalendarFilters,
    ) -> list[RawEventRow]:
        query = self._scoped_query(organization_id, filters).where(
            SourceEventRecord.recurrence_rule.is_not(None),
            SourceEventRecord.recurrence_rule != "",
            SourceEventRecord.start_at < _to_storage(end),
        ).order_by(SourceEventRecord.start_at)

        with self._session() as session:
            return [_projected_row(record) for record in session.scalars(query)]

    async def fetch_in_window(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        filters: CalendarFilters,
    ) -> Sequence[RawEventRow]:
        return await self._run_in_executor(
            self._fetch_in_window, organization_id, start, end, filters
        )

    async def fetch_recurring_anchors_before(
        self,
        organization_id: str,
        end: datetime,
        filters: CalendarFilters,
    ) -> Sequence[RawEventRow]:
        return await self._run_in_executor(
            self._fetch_recurring, organization_id, end, filters
        )


# =============================================================================
# Exceptions
# =============================================================================


def _exception_from_record(record: CalendarExceptionRecord) -> CalendarException:
    return CalendarException(
        id=str(record.id),
        owner_id=str(record.calendar_event_id),
        original_date=record.original_date,
        exception_type=ExceptionType(record.exception_type),
        new_start_at=_from_storage(record.new_start_at),
        new_end_at=_from_storage(record.new_end_at),
        new_title=record.new_title,
        new_description=record.new_description,
    )


class SqlExceptionStore(_SqlRepository):
    """Per-date overrides stored in calendar_exceptions."""

    def _active(self):
        return select(CalendarExceptionRecord).where(
            CalendarExceptionRecord.deleted_at.is_(None),
        ).order_by(
            CalendarExceptionRecord.original_date,
            CalendarExceptionRecord.created_at,
        )

    def _list_for_anchors(self, anchor_ids: Sequence[str]) -> dict[str, list[CalendarException]]:
        ids = [parsed for parsed in (_parse_uuid(i) for i in anchor_ids) if parsed]
        if not ids:
            return {}

        query = self._active().where(CalendarExceptionRecord.calendar_event_id.in_(ids))
        result: dict[str, list[CalendarException]] = {}
        with self._session() as session:
            for record in session.scalars(query):
                exception = _exception_from_record(record)
                result.setdefault(exception.owner_id, []).append(exception)
        return result

    def _load(self, session: Session, exception_id: str) -> Optional[CalendarExceptionRecord]:
        record_id = _parse_uuid(exception_id)
        record = session.get(CalendarExceptionRecord, record_id) if record_id else None
        if record is None or record.is_deleted:
            return None
        return record

    def _get(self, exception_id: str) -> Optional[CalendarException]:
        with self._session() as session:
            record = self._load(session, exception_id)
            return _exception_from_record(record) if record else None

    def _create(self, exception: CalendarException) -> CalendarException:
        owner_id = _parse_uuid(exception.owner_id)
        if owner_id is None:
            raise EventNotFoundError(f"Event {exception.owner_id} not found")

        record = CalendarExceptionRecord(
            calendar_event_id=owner_id,
            original_date=exception.original_date,
            exception_type=ExceptionType(exception.exception_type).value,
            new_start_at=_to_storage(exception.new_start_at),
            new_end_at=_to_storage(exception.new_end_at),
            new_title=exception.new_title,
            new_description=exception.new_description,
        )
        with self._session() as session:
            session.add(record)
            session.flush()
            return _exception_from_record(record)

    def _update(self, exception_id: str, updates: dict) -> CalendarException:
        with self._session() as session:
            record = self._load(session, exception_id)
            if record is None:
                raise EventNotFoundError(f"Exception {exception_id} not found")
            for field_name, value in updates.items():
                setattr(record, field_name, _storage_value(field_name, value))
            session.flush()
            return _exception_from_record(record)

    def _delete(self, exception_id: str) -> bool:
        with self._session() as session:
            record = self._load(session, exception_id)
            if record is None:
                return False
            record.soft_delete()
            return True

    async def list_for_anchor(self, anchor_id: str) -> list[CalendarException]:
        by_anchor = await self._run_in_executor(self._list_for_anchors, [anchor_id])
        return by_anchor.get(str(_parse_uuid(anchor_id)), [])

    async def list_for_anchors(
        self,
        anchor_ids: Sequence[str],
    ) -> dict[str, list[CalendarException]]:
        return await self._run_in_executor(self._list_for_anchors, list(anchor_ids))

    async def get(self, exception_id: str) -> Optional[CalendarException]:
        return await self._run_in_executor(self._get, exception_id)

    async def create(self, exception: CalendarException) -> CalendarException:
        return await self._run_in_executor(self._create, exception)

    async def update(self, exception_id: str, updates: dict) -> CalendarException:
        return await self._run_in_executor(self._update, exception_id, updates)

    async def delete(self, exception_id: str) -> bool:
        return await self._run_in_executor(self._delete, exception_id)
