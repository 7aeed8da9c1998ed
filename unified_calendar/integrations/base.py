"""
Calendar source protocols and projection types.

Defines the interface every event source exposes to the engine (readers),
the exception store, the manual-event writer, and the tagged event variants
the engine hands to the presentation layer.
"""

from abc import abstractmethod
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timedelta
from enum import Enum
from typing import ClassVar, Optional, Protocol, Sequence


class SourceType(str, Enum):
    """Module that owns an event. Only MANUAL is writable through the engine."""

    MANUAL = "manual"
    TASK = "task"
    SHIFT = "shift"
    LEAVE = "leave"
    RESERVATION = "reservation"
    HOUSEKEEPING = "housekeeping"
    MAINTENANCE = "maintenance"
    GYM_CLASS = "gym_class"
    TRIP = "trip"


ALL_SOURCE_TYPES: tuple[SourceType, ...] = tuple(SourceType)


class EventStatus(str, Enum):
    """Occurrence status shared by every source."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"
    PENDING = "pending"
    COMPLETED = "completed"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "EventStatus":
        """
        Map a source status onto the shared vocabulary.

        Missing status means confirmed; statuses a source invents on its own
        are shown as pending rather than dropped.
        """
        if value is None or value == "":
            return cls.CONFIRMED
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.PENDING


class ExceptionType(str, Enum):
    """Per-date override kinds for recurring anchors."""

    CANCELLED = "cancelled"
    MODIFIED = "modified"


@dataclass(frozen=True)
class Window:
    """Half-open time range [start, end) a calendar view asks for."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.end <= self.start:
            raise ValueError(f"Window end {self.end} must be after start {self.start}")

    def contains(self, instant: datetime) -> bool:
        """Check whether an instant falls inside the window."""
        return self.start <= instant < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass
class RawEventRow:
    """
    Row shape returned by a SourceReader.

    ``extra`` carries the source-specific columns that only one event variant
    knows how to read.
    """

    source_id: str
    start_at: datetime
    end_at: Optional[datetime] = None
    all_day: bool = False
    title: str = ""
    description: Optional[str] = None
    recurrence_rule: Optional[str] = None
    status: Optional[str] = None
    organization_id: Optional[str] = None
    branch_id: Optional[str] = None
    assigned_to: Optional[str] = None
    color: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)


@dataclass
class CalendarFilters:
    """
    Filters applied to an aggregation query.

    Readers push these down to their storage where they can; the aggregator
    re-applies them to every row so all sources behave the same.
    """

    branch_id: Optional[str] = None
    assigned_to: Optional[str] = None
    status: str = "all"
    source_types: tuple[SourceType, ...] = ALL_SOURCE_TYPES

    def allows_source(self, source_type: SourceType) -> bool:
        return source_type in self.source_types

    def matches(self, row: RawEventRow) -> bool:
        """Check a raw row against branch, assignee and status filters."""
        if self.branch_id is not None and row.branch_id != self.branch_id:
            return False
        if self.assigned_to is not None and row.assigned_to != self.assigned_to:
            return False
        if self.status != "all" and EventStatus.coerce(row.status) != EventStatus(self.status):
            return False
        return True


@dataclass
class CalendarException:
    """
    Override for one occurrence date of a recurring manual anchor.

    Orphaned exceptions (anchor gone or no longer recurring) are inert.
    """

    owner_id: str
    original_date: date
    exception_type: ExceptionType
    id: Optional[str] = None
    new_start_at: Optional[datetime] = None
    new_end_at: Optional[datetime] = None
    new_title: Optional[str] = None
    new_description: Optional[str] = None

    @property
    def is_cancellation(self) -> bool:
        return self.exception_type == ExceptionType.CANCELLED


@dataclass
class EventDraft:
    """
    Input to EventWriter.insert() for a new manual event.
    """

    title: str
    start_at: datetime
    end_at: Optional[datetime] = None
    description: Optional[str] = None
    all_day: bool = False
    location: Optional[str] = None
    assigned_to: Optional[str] = None
    customer_id: Optional[str] = None
    branch_id: Optional[str] = None
    color: Optional[str] = None
    status: EventStatus = EventStatus.CONFIRMED
    recurrence_rule: Optional[str] = None
    metadata: dict = field(default_factory=dict)


# =============================================================================
# Event variants
# =============================================================================


@dataclass(frozen=True)
class CalendarEvent:
    """
    Read-only projection of one occurrence, shared by every source.

    Subclasses add the fields only their source carries; ``SOURCE_TYPE`` ties
    each subclass to exactly one owning module.
    """

    SOURCE_TYPE: ClassVar[Optional[SourceType]] = None

    source_id: str
    title: str
    start_at: datetime
    end_at: Optional[datetime] = None
    all_day: bool = False
    description: Optional[str] = None
    recurrence_rule: Optional[str] = None
    status: EventStatus = EventStatus.CONFIRMED
    organization_id: Optional[str] = None
    branch_id: Optional[str] = None
    assigned_to: Optional[str] = None
    color: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @property
    def source_type(self) -> SourceType:
        return self.SOURCE_TYPE

    @property
    def key(self) -> tuple[SourceType, str]:
        """Deduplication identity within one organization."""
        return (self.source_type, self.source_id)

    @property
    def is_manual(self) -> bool:
        return self.source_type == SourceType.MANUAL

    @property
    def is_recurrence_instance(self) -> bool:
        return bool(self.metadata.get("is_recurrence_instance"))

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_at is None:
            return None
        return self.end_at - self.start_at

    @property
    def duration_minutes(self) -> Optional[int]:
        """Calculate event duration in minutes."""
        if self.end_at is None:
            return None
        return int(self.duration.total_seconds() / 60)

    @property
    def details(self) -> dict:
        """Fields only this variant's source carries."""
        return {name: getattr(self, name) for name in _variant_fields(type(self))}

    @classmethod
    def from_row(cls, row: RawEventRow) -> "CalendarEvent":
        """Build the variant from a reader row, picking its own extra columns."""
        specific = {
            name: row.extra[name]
            for name in _variant_fields(cls)
            if name in row.extra
        }
        return cls(
            source_id=str(row.source_id),
            title=row.title or "",
            start_at=row.start_at,
            end_at=row.end_at,
            all_day=row.all_day,
            description=row.description,
            recurrence_rule=row.recurrence_rule or None,
            status=EventStatus.coerce(row.status),
            organization_id=row.organization_id,
            branch_id=row.branch_id,
            assigned_to=row.assigned_to,
            color=row.color,
            metadata=dict(row.metadata or {}),
            **specific,
        )


_BASE_FIELDS = frozenset(f.name for f in fields(CalendarEvent))


def _variant_fields(cls) -> list[str]:
    return [f.name for f in fields(cls) if f.name not in _BASE_FIELDS]


@dataclass(frozen=True)
class ManualEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.MANUAL

    location: Optional[str] = None
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class TaskEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.TASK

    priority: Optional[str] = None
    project_id: Optional[str] = None


@dataclass(frozen=True)
class ShiftEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.SHIFT

    employee_id: Optional[str] = None
    shift_type: Optional[str] = None


@dataclass(frozen=True)
class LeaveEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.LEAVE

    employee_id: Optional[str] = None
    leave_type: Optional[str] = None


@dataclass(frozen=True)
class ReservationEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.RESERVATION

    space_id: Optional[str] = None
    guest_name: Optional[str] = None


@dataclass(frozen=True)
class HousekeepingEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.HOUSEKEEPING

    room_id: Optional[str] = None
    job_type: Optional[str] = None


@dataclass(frozen=True)
class MaintenanceEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.MAINTENANCE

    asset_id: Optional[str] = None
    priority: Optional[str] = None


@dataclass(frozen=True)
class GymClassEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.GYM_CLASS

    instructor_id: Optional[str] = None
    capacity: Optional[int] = None


@dataclass(frozen=True)
class TripEvent(CalendarEvent):
    SOURCE_TYPE: ClassVar[SourceType] = SourceType.TRIP

    vehicle_id: Optional[str] = None
    origin: Optional[str] = None
    destination: Optional[str] = None


EVENT_VARIANTS: dict[SourceType, type[CalendarEvent]] = {
    variant.SOURCE_TYPE: variant
    for variant in (
        ManualEvent,
        TaskEvent,
        ShiftEvent,
        LeaveEvent,
        ReservationEvent,
        HousekeepingEvent,
        MaintenanceEvent,
        GymClassEvent,
        TripEvent,
    )
}


def build_event(source_type: SourceType, row: RawEventRow) -> CalendarEvent:
    """Build the event variant owned by ``source_type`` from a reader row."""
    return EVENT_VARIANTS[SourceType(source_type)].from_row(row)


# =============================================================================
# Boundaries
# =============================================================================


class SourceReader(Protocol):
    """
    Read contract every event source exposes to the aggregator.

    Implementations:
    - ManualEventReader: calendar_events table (the only writable source)
    - ProjectedSourceReader: read-model rows published by other modules

    Readers must scope every query to ``organization_id``. All methods are
    async so the aggregator can fan out across sources.
    """

    source_type: SourceType

    @abstractmethod
    async def fetch_in_window(
        self,
        organization_id: str,
        start: datetime,
        end: datetime,
        filters: CalendarFilters,
    ) -> Sequence[RawEventRow]:
        """
        Rows whose anchor start lies in [start, end).

        Args:
            organization_id: Organization scope
            start: Window start (inclusive)
            end: Window end (exclusive)
            filters: Branch/assignee/status filters to push down

        Returns:
            Matching rows, recurring or not
        """
        ...

    @abstractmethod
    async def fetch_recurring_anchors_before(
        self,
        organization_id: str,
        end: datetime,
        filters: CalendarFilters,
    ) -> Sequence[RawEventRow]:
        """
        Rows with a recurrence rule whose anchor starts before ``end``.

        Args:
            organization_id: Organization scope
            end: Window end; anchors at any earlier instant are returned
            filters: Branch/assignee/status filters to push down

        Returns:
            Recurring anchor rows
        """
        ...


class ExceptionStore(Protocol):
    """
    CRUD for per-date overrides of recurring manual anchors.
    """

    @abstractmethod
    async def list_for_anchor(self, anchor_id: str) -> list[CalendarException]:
        ...

    @abstractmethod
    async def list_for_anchors(
        self,
        anchor_ids: Sequence[str],
    ) -> dict[str, list[CalendarException]]:
        """
        Batch variant used by the aggregator.

        Returns:
            Dict mapping anchor id to its exceptions (missing ids map to nothing)
        """
        ...

    @abstractmethod
    async def get(self, exception_id: str) -> Optional[CalendarException]:
        ...

    @abstractmethod
    async def create(self, exception: CalendarException) -> CalendarException:
        ...

    @abstractmethod
    async def update(self, exception_id: str, updates: dict) -> CalendarException:
        ...

    @abstractmethod
    async def delete(self, exception_id: str) -> bool:
        ...


class EventWriter(Protocol):
    """
    Write contract for manual events, the only source the engine may change.

    Writers signal rejection by raising; the coordinator rolls back.
    """

    @abstractmethod
    async def get(self, organization_id: str, event_id: str) -> Optional[ManualEvent]:
        ...

    @abstractmethod
    async def insert(self, organization_id: str, draft: EventDraft) -> ManualEvent:
        ...

    @abstractmethod
    async def update_patch(self, event_id: str, patch: dict) -> None:
        ...

    @abstractmethod
    async def delete(self, event_id: str) -> None:
        ...
