"""
FastAPI application for the unified calendar.

Provides:
- View range and aggregated event endpoints
- Manual event mutations (create, update, delete, move, resize)
- Recurrence exceptions and rule preview
- Health endpoint
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from unified_calendar.api.dependencies import (
    CalendarComponents,
    get_components,
    get_organization_id,
    init_components,
    parse_source_types,
    reset_components,
)
from unified_calendar.api.middleware import RequestLoggingMiddleware, install_log_context
from unified_calendar.api.models import (
    CreateCalendarEventRequest,
    CreateExceptionRequest,
    ErrorResponse,
    EventListResponse,
    EventResponse,
    ExceptionResponse,
    HealthResponse,
    MoveEventRequest,
    MutationResponse,
    OccurrencePreview,
    RangeResponse,
    RecurrencePreviewResponse,
    ResizeEventRequest,
    UpdateCalendarEventRequest,
    UpdateExceptionRequest,
)
from unified_calendar.config import Settings, get_settings
from unified_calendar.database import check_connection, init_db
from unified_calendar.errors import (
    CalendarEngineError,
    EventNotFoundError,
    EventValidationError,
    OwnershipViolationError,
    SourceUnavailableError,
    WriteConflictError,
)
from unified_calendar.integrations.base import (
    CalendarException,
    CalendarFilters,
    EventDraft,
    EventStatus,
    SourceType,
    Window,
)
from unified_calendar.services.mutations import EventProjection, MutationCoordinator
from unified_calendar.services.recurrence import describe_rule, parse_rule, preview, serialize_rule
from unified_calendar.services.view_range import CalendarView, range_for, shift_reference

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


# =============================================================================
# Application Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(request_id)s org=%(organization_id)s] %(name)s: %(message)s",
    )
    install_log_context()

    logger.info("Starting Unified Calendar API")
    init_db()
    init_components(settings=settings)
    logger.info("Unified Calendar API started")

    yield

    logger.info("Shutting down Unified Calendar API")
    reset_components()


# =============================================================================
# FastAPI Application
# =============================================================================


app = FastAPI(
    title="Unified Calendar API",
    description="""
# Unified Calendar API

One calendar over manual events and the events other modules project onto it
(tasks, shifts, leave, reservations, housekeeping, maintenance, gym classes,
trips).

## Reading
- **GET /calendar/range** - Window and navigation targets of a view
- **GET /calendar/events** - Occurrences of a view, recurring series expanded

## Writing
Only manual events can be changed; other sources are read-only here.

## Error Handling
- **403** - Mutation of a read-only source
- **404** - Event or exception not found
- **409** - Write rejected by storage (safe to retry after refreshing)
- **422** - Validation error
- **503** - A calendar source is unavailable (safe to retry)
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Exception Handlers
# =============================================================================


_ERROR_STATUS: list[tuple[type, int, str]] = [
    (EventValidationError, 422, "validation_error"),
    (OwnershipViolationError, 403, "ownership_violation"),
    (EventNotFoundError, 404, "not_found"),
    (WriteConflictError, 409, "write_conflict"),
    (SourceUnavailableError, 503, "source_unavailable"),
]


def _error_status(exc: CalendarEngineError) -> tuple[int, str]:
    for error_class, status_code, error_type in _ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code, error_type
    return 500, "engine_error"


@app.exception_handler(CalendarEngineError)
async def calendar_error_handler(request: Request, exc: CalendarEngineError):
    """Map engine errors to status codes with a consistent body."""
    status_code, error_type = _error_status(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(f"{error_type}: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            error_type=error_type,
            message=exc.message,
            retryable=exc.retryable,
        ).model_dump(),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = [
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "error_type": "validation_error",
            "message": "; ".join(messages),
            "retryable": False,
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_type": "http_error",
            "message": exc.detail,
            "retryable": exc.status_code >= 500,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error_type": "internal_error",
            "message": "An unexpected error occurred",
            "retryable": True,
        },
    )


# =============================================================================
# Helpers
# =============================================================================


def _view_window(view: CalendarView, reference: date, settings: Settings) -> Window:
    """View window as aware instants in the configured timezone."""
    window = range_for(view, reference, settings.week_start_day)
    return Window(
        start=window.start.replace(tzinfo=settings.tzinfo),
        end=window.end.replace(tzinfo=settings.tzinfo),
    )


def _today(settings: Settings) -> date:
    return datetime.now(settings.tzinfo).date()


async def _coordinator(
    components: CalendarComponents,
    organization_id: str,
    event_id: Optional[str] = None,
    source_type: SourceType = SourceType.MANUAL,
) -> MutationCoordinator:
    """Coordinator over a projection holding just the targeted manual event."""
    projection = EventProjection()
    if event_id is not None and source_type == SourceType.MANUAL:
        event = await components.writer.get(organization_id, event_id)
        if event is not None:
            projection.add(event)

    return MutationCoordinator(
        projection,
        components.writer,
        organization_id,
        exception_store=components.exception_store,
        settings=components.settings,
    )


async def _owned_exception(
    components: CalendarComponents,
    organization_id: str,
    exception_id: str,
) -> CalendarException:
    exception = await components.exception_store.get(exception_id)
    if exception is None or await components.writer.get(organization_id, exception.owner_id) is None:
        raise EventNotFoundError(f"Exception {exception_id} not found")
    return exception


# =============================================================================
# Health
# =============================================================================


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    tags=["System"],
)
async def health_check(components: CalendarComponents = Depends(get_components)):
    """Check database connectivity and list the registered sources."""
    database_connected = check_connection(components.engine)
    return HealthResponse(
        status="healthy" if database_connected else "unhealthy",
        version=VERSION,
        database_connected=database_connected,
        sources=[source_type.value for source_type in components.aggregator.source_types],
    )


# =============================================================================
# Calendar Views
# =============================================================================


@app.get(
    "/calendar/range",
    response_model=RangeResponse,
    summary="Window of a calendar view",
    tags=["Calendar"],
)
async def get_view_range(
    view: Optional[CalendarView] = Query(None, description="month, week, day or agenda"),
    reference: Optional[date] = Query(None, alias="date", description="Any day inside the period"),
    settings: Settings = Depends(get_settings),
) -> RangeResponse:
    view = view or CalendarView(settings.default_view)
    reference = reference or _today(settings)
    window = _view_window(view, reference, settings)

    return RangeResponse(
        view=view,
        start=window.start,
        end=window.end,
        previous=shift_reference(view, reference, -1),
        next=shift_reference(view, reference, 1),
    )


@app.get(
    "/calendar/events",
    response_model=EventListResponse,
    summary="List occurrences of a view",
    description="""
Merge every source's events for the view window. Recurring series are
expanded and their exceptions applied; filters apply to all sources alike.
    """,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid filter"},
        503: {"model": ErrorResponse, "description": "A source is unavailable"},
    },
    tags=["Calendar"],
)
async def list_calendar_events(
    view: Optional[CalendarView] = Query(None),
    reference: Optional[date] = Query(None, alias="date"),
    branch_id: Optional[str] = Query(None),
    assigned_to: Optional[str] = Query(None),
    status: str = Query("all", description="'all' or one event status"),
    source_types: Optional[str] = Query(None, description="Comma-separated source types"),
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> EventListResponse:
    settings = components.settings
    view = view or CalendarView(settings.default_view)
    reference = reference or _today(settings)

    if status != "all":
        try:
            status = EventStatus(status).value
        except ValueError:
            raise EventValidationError(f"Unknown status filter: {status}")

    filters = CalendarFilters(
        branch_id=branch_id,
        assigned_to=assigned_to,
        status=status,
        source_types=parse_source_types(source_types),
    )
    window = _view_window(view, reference, settings)
    events = await components.aggregator.query(organization_id, window, filters)

    return EventListResponse(
        view=view,
        start=window.start,
        end=window.end,
        events=[EventResponse.from_event(event) for event in events],
        total=len(events),
    )


# =============================================================================
# Manual Event Mutations
# =============================================================================


@app.post(
    "/calendar/events",
    response_model=EventResponse,
    status_code=201,
    summary="Create manual event",
    tags=["Events"],
)
async def create_calendar_event(
    request: CreateCalendarEventRequest,
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> EventResponse:
    coordinator = await _coordinator(components, organization_id)
    event = await coordinator.create(EventDraft(**request.model_dump()))
    return EventResponse.from_event(event)


@app.patch(
    "/calendar/events/{event_id}",
    response_model=MutationResponse,
    summary="Update manual event",
    tags=["Events"],
)
async def update_calendar_event(
    event_id: str,
    request: UpdateCalendarEventRequest,
    source_type: SourceType = Query(SourceType.MANUAL),
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> MutationResponse:
    coordinator = await _coordinator(components, organization_id, event_id, source_type)
    record = await coordinator.update(
        event_id,
        request.model_dump(exclude_unset=True),
        source_type=source_type,
    )
    return MutationResponse.from_record(record)


@app.delete(
    "/calendar/events/{event_id}",
    response_model=MutationResponse,
    summary="Delete manual event",
    tags=["Events"],
)
async def delete_calendar_event(
    event_id: str,
    source_type: SourceType = Query(SourceType.MANUAL),
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> MutationResponse:
    coordinator = await _coordinator(components, organization_id, event_id, source_type)
    record = await coordinator.delete(event_id, source_type=source_type)
    return MutationResponse.from_record(record)


@app.post(
    "/calendar/events/{event_id}/move",
    response_model=MutationResponse,
    summary="Move event to another day/hour",
    tags=["Events"],
)
async def move_calendar_event(
    event_id: str,
    request: MoveEventRequest,
    source_type: SourceType = Query(SourceType.MANUAL),
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> MutationResponse:
    coordinator = await _coordinator(components, organization_id, event_id, source_type)
    record = await coordinator.move(
        event_id,
        request.new_date,
        request.new_hour,
        source_type=source_type,
    )
    return MutationResponse.from_record(record)


@app.post(
    "/calendar/events/{event_id}/resize",
    response_model=MutationResponse,
    summary="Change event start and end",
    tags=["Events"],
)
async def resize_calendar_event(
    event_id: str,
    request: ResizeEventRequest,
    source_type: SourceType = Query(SourceType.MANUAL),
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> MutationResponse:
    coordinator = await _coordinator(components, organization_id, event_id, source_type)
    record = await coordinator.resize(
        event_id,
        request.start_at,
        request.end_at,
        source_type=source_type,
    )
    return MutationResponse.from_record(record)


# =============================================================================
# Recurrence Exceptions
# =============================================================================


@app.get(
    "/calendar/events/{event_id}/exceptions",
    response_model=list[ExceptionResponse],
    summary="List exceptions of a recurring event",
    tags=["Recurrence"],
)
async def list_event_exceptions(
    event_id: str,
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> list[ExceptionResponse]:
    if await components.writer.get(organization_id, event_id) is None:
        raise EventNotFoundError(f"Event {event_id} not found")
    exceptions = await components.exception_store.list_for_anchor(event_id)
    return [ExceptionResponse.from_exception(exception) for exception in exceptions]


@app.post(
    "/calendar/events/{event_id}/exceptions",
    response_model=ExceptionResponse,
    status_code=201,
    summary="Cancel or modify one occurrence",
    tags=["Recurrence"],
)
async def create_event_exception(
    event_id: str,
    request: CreateExceptionRequest,
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> ExceptionResponse:
    coordinator = await _coordinator(components, organization_id, event_id)
    exception = await coordinator.add_exception(event_id, **request.model_dump())
    return ExceptionResponse.from_exception(exception)


@app.patch(
    "/calendar/exceptions/{exception_id}",
    response_model=ExceptionResponse,
    summary="Update an exception",
    tags=["Recurrence"],
)
async def update_event_exception(
    exception_id: str,
    request: UpdateExceptionRequest,
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> ExceptionResponse:
    await _owned_exception(components, organization_id, exception_id)
    coordinator = await _coordinator(components, organization_id)
    exception = await coordinator.update_exception(
        exception_id,
        request.model_dump(exclude_unset=True),
    )
    return ExceptionResponse.from_exception(exception)


@app.delete(
    "/calendar/exceptions/{exception_id}",
    status_code=204,
    summary="Remove an exception",
    tags=["Recurrence"],
)
async def delete_event_exception(
    exception_id: str,
    organization_id: str = Depends(get_organization_id),
    components: CalendarComponents = Depends(get_components),
) -> Response:
    await _owned_exception(components, organization_id, exception_id)
    coordinator = await _coordinator(components, organization_id)
    await coordinator.remove_exception(exception_id)
    return Response(status_code=204)


@app.get(
    "/calendar/recurrence/preview",
    response_model=RecurrencePreviewResponse,
    summary="Next occurrences of a rule",
    tags=["Recurrence"],
)
async def preview_recurrence(
    rule: str = Query(..., description="Rule string, e.g. FREQ=WEEKLY;BYDAY=MO,WE"),
    start: datetime = Query(..., description="Anchor start"),
    end: Optional[datetime] = Query(None, description="Anchor end"),
    limit: int = Query(10, ge=1),
    settings: Settings = Depends(get_settings),
) -> RecurrencePreviewResponse:
    if end is not None and end <= start:
        raise EventValidationError("end must be after start")

    parsed = parse_rule(rule)
    occurrences = preview(start, end, parsed, min(limit, settings.preview_max_occurrences))

    return RecurrencePreviewResponse(
        rule=serialize_rule(parsed),
        description=describe_rule(parsed),
        occurrences=[
            OccurrencePreview(start=occurrence.start, end=occurrence.end)
            for occurrence in occurrences
        ],
    )


def run_server() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run(
        "unified_calendar.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run_server()
