"""
Calendar persistence models.

Entities:
- CalendarEventRecord: Manual events, the only records the engine writes
- CalendarExceptionRecord: Per-date overrides of recurring manual events
- SourceEventRecord: Read-model rows other modules publish onto the calendar
"""

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from unified_calendar.models.base import BaseModel, get_json_type


class CalendarEventRecord(BaseModel):
    """
    A manually-created calendar event.

    Recurring events are stored once, as the anchor carrying the rule string;
    occurrences are never persisted.
    """

    __tablename__ = "calendar_events"

    organization_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        doc="Owning organization"
    )

    branch_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="Branch the event belongs to"
    )

    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        doc="Event title"
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Detailed event description"
    )

    location: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        doc="Event location"
    )

    # Timing
    start_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        doc="Event start (UTC)"
    )

    end_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="Event end (UTC, NULL for open-ended events)"
    )

    all_day: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        doc="Whether this is an all-day event"
    )

    assigned_to: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="User the event is assigned to"
    )

    customer_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        doc="Customer the event concerns"
    )

    color: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        doc="Display color"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="confirmed",
        doc="Status: 'confirmed', 'tentative', 'cancelled', 'pending', 'completed'"
    )

    recurrence_rule: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        doc="Rule string (e.g., 'FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10')"
    )

    # Renamed from 'metadata' to avoid SQLAlchemy conflict
    event_metadata: Mapped[dict] = mapped_column(
        get_json_type(),
        nullable=False,
        default=dict,
        doc="Additional event metadata"
    )

    exceptions: Mapped[list["CalendarExceptionRecord"]] = relationship(
        "CalendarExceptionRecord",
        back_populates="event",
        cascade="all, delete-orphan",
        doc="Per-date overrides of this recurring event"
    )

    __table_args__ = (
        Index("idx_calendar_event_org_start", "organization_id", "start_at"),
        Index("idx_calendar_event_recurring", "organization_id", "recurrence_rule"),
        Index("idx_calendar_event_deleted", "deleted_at"),
    )

    def __repr__(self) -> str:
        return f"<CalendarEventRecord(title='{self.title}', start='{self.start_at}')>"


class CalendarExceptionRecord(BaseModel):
    """
    Cancellation or modification of one occurrence date of a recurring event.
    """

    __tablename__ = "calendar_exceptions"

    calendar_event_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("calendar_events.id", ondelete="CASCADE"),
        nullable=False,
        doc="Recurring anchor this exception belongs to"
    )

    original_date: Mapped[date] = mapped_column(
        Date,
        nullable=False,
        doc="Calendar date of the occurrence being overridden"
    )

    exception_type: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        doc="Type: 'cancelled' or 'modified'"
    )

    new_start_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    new_end_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    new_title: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
    )

    new_description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    event: Mapped["CalendarEventRecord"] = relationship(
        "CalendarEventRecord",
        back_populates="exceptions",
    )

    __table_args__ = (
        Index("idx_calendar_exception_event_date", "calendar_event_id", "original_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<CalendarExceptionRecord(event={self.calendar_event_id}, "
            f"date={self.original_date}, type='{self.exception_type}')>"
        )


class SourceEventRecord(BaseModel):
    """
    Calendar projection of a record owned by another module.

    The owning module publishes one row per anchor; the calendar only reads
    these. ``attributes`` carries the source-specific columns.
    """

    __tablename__ = "calendar_source_events"

    organization_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
    )

    source_type: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        doc="Owning module: 'task', 'shift', 'leave', ..."
    )

    source_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        doc="Record id inside the owning module"
    )

    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
        default="",
    )

    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    start_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    end_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    all_day: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    recurrence_rule: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    status: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
        doc="Status in the owning module's vocabulary"
    )

    branch_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    assigned_to: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
    )

    color: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
    )

    attributes: Mapped[dict] = mapped_column(
        get_json_type(),
        nullable=False,
        default=dict,
        doc="Source-specific fields (employee_id, room_id, ...)"
    )

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "source_type", "source_id",
            name="uq_source_event_identity",
        ),
        Index("idx_source_event_org_type_start", "organization_id", "source_type", "start_at"),
    )

    def __repr__(self) -> str:
        return f"<SourceEventRecord({self.source_type}:{self.source_id}, start='{self.start_at}')>"
