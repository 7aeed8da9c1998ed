"""
Pydantic request and response models for the calendar API.
"""

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from unified_calendar.integrations.base import (
    CalendarEvent,
    CalendarException,
    EventStatus,
    ExceptionType,
)
from unified_calendar.services.mutations import MutationRecord, MutationState
from unified_calendar.services.view_range import CalendarView


# =============================================================================
# Request Models
# =============================================================================


class CreateCalendarEventRequest(BaseModel):
    """Request to create a manual event."""

    title: str = Field(..., min_length=1, max_length=200, examples=["Team stand-up"])
    start_at: datetime = Field(..., description="Event start (ISO 8601)")
    end_at: Optional[datetime] = Field(None, description="Event end; omit for open-ended events")
    description: Optional[str] = None
    all_day: bool = False
    location: Optional[str] = Field(None, max_length=200)
    assigned_to: Optional[str] = None
    customer_id: Optional[str] = None
    branch_id: Optional[str] = None
    color: Optional[str] = Field(None, max_length=20)
    status: EventStatus = EventStatus.CONFIRMED
    recurrence_rule: Optional[str] = Field(
        None,
        max_length=500,
        examples=["FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10"],
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("title")
    @classmethod
    def validate_title_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Title cannot be empty")
        return v.strip()


class UpdateCalendarEventRequest(BaseModel):
    """Partial update of a manual event; only fields sent are changed."""

    title: Optional[str] = Field(None, min_length=1, max_length=200)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    description: Optional[str] = None
    all_day: Optional[bool] = None
    location: Optional[str] = Field(None, max_length=200)
    assigned_to: Optional[str] = None
    customer_id: Optional[str] = None
    branch_id: Optional[str] = None
    color: Optional[str] = Field(None, max_length=20)
    status: Optional[EventStatus] = None
    recurrence_rule: Optional[str] = Field(None, max_length=500)


class MoveEventRequest(BaseModel):
    """Drop an event on another day/hour cell."""

    new_date: date
    new_hour: int = Field(..., ge=0, le=23)


class ResizeEventRequest(BaseModel):
    start_at: datetime
    end_at: datetime


class CreateExceptionRequest(BaseModel):
    """Cancel or modify one occurrence of a recurring event."""

    original_date: date
    exception_type: ExceptionType
    new_start_at: Optional[datetime] = None
    new_end_at: Optional[datetime] = None
    new_title: Optional[str] = Field(None, max_length=200)
    new_description: Optional[str] = None


class UpdateExceptionRequest(BaseModel):
    original_date: Optional[date] = None
    exception_type: Optional[ExceptionType] = None
    new_start_at: Optional[datetime] = None
    new_end_at: Optional[datetime] = None
    new_title: Optional[str] = Field(None, max_length=200)
    new_description: Optional[str] = None


# =============================================================================
# Response Models
# =============================================================================


class EventResponse(BaseModel):
    """One occurrence as shown on the calendar."""

    source_type: str
    source_id: str
    title: str
    description: Optional[str] = None
    start_at: datetime
    end_at: Optional[datetime] = None
    all_day: bool = False
    status: EventStatus
    recurrence_rule: Optional[str] = None
    organization_id: Optional[str] = None
    branch_id: Optional[str] = None
    assigned_to: Optional[str] = None
    color: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Fields specific to the event's source",
    )
    is_recurrence_instance: bool = False
    editable: bool = Field(False, description="Only manual events can be changed")

    @classmethod
    def from_event(cls, event: CalendarEvent) -> "EventResponse":
        return cls(
            source_type=event.source_type.value,
            source_id=event.source_id,
            title=event.title,
            description=event.description,
            start_at=event.start_at,
            end_at=event.end_at,
            all_day=event.all_day,
            status=event.status,
            recurrence_rule=event.recurrence_rule,
            organization_id=event.organization_id,
            branch_id=event.branch_id,
            assigned_to=event.assigned_to,
            color=event.color,
            metadata=dict(event.metadata),
            details=event.details,
            is_recurrence_instance=event.is_recurrence_instance,
            editable=event.is_manual,
        )


class EventListResponse(BaseModel):
    """Occurrences of one view window."""

    view: CalendarView
    start: datetime
    end: datetime
    events: list[EventResponse]
    total: int


class RangeResponse(BaseModel):
    """Window and navigation targets of a view."""

    view: CalendarView
    start: datetime
    end: datetime
    previous: date
    next: date


class MutationResponse(BaseModel):
    operation: str
    state: MutationState
    event: Optional[EventResponse] = None

    @classmethod
    def from_record(cls, record: MutationRecord) -> "MutationResponse":
        return cls(
            operation=record.operation,
            state=record.state,
            event=EventResponse.from_event(record.after) if record.after else None,
        )


class ExceptionResponse(BaseModel):
    id: Optional[str] = None
    calendar_event_id: str
    original_date: date
    exception_type: ExceptionType
    new_start_at: Optional[datetime] = None
    new_end_at: Optional[datetime] = None
    new_title: Optional[str] = None
    new_description: Optional[str] = None

    @classmethod
    def from_exception(cls, exception: CalendarException) -> "ExceptionResponse":
        return cls(
            id=exception.id,
            calendar_event_id=exception.owner_id,
            original_date=exception.original_date,
            exception_type=exception.exception_type,
            new_start_at=exception.new_start_at,
            new_end_at=exception.new_end_at,
            new_title=exception.new_title,
            new_description=exception.new_description,
        )


class OccurrencePreview(BaseModel):
    start: datetime
    end: Optional[datetime] = None


class RecurrencePreviewResponse(BaseModel):
    """Normalized rule, its description and the next occurrences."""

    rule: str
    description: str
    occurrences: list[OccurrencePreview]


class ErrorResponse(BaseModel):
    """Error response format."""

    error_type: str = Field(..., description="Machine-readable error type")
    message: str = Field(..., description="Human-readable error message")
    retryable: bool = Field(False, description="Whether the request may be retried")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_type": "ownership_violation",
                "message": "shift events are read-only; only manual events can be changed",
                "retryable": False,
            }
        }
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"]
    version: str
    database_connected: bool
    sources: list[str]
