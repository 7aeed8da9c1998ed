"""
FastAPI dependency injection providers.

Provides the calendar engine components and organization context.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException
from sqlalchemy.engine import Engine

from unified_calendar.config import Settings, get_settings
from unified_calendar.database import create_session_factory
from unified_calendar.errors import EventValidationError
from unified_calendar.integrations.base import ALL_SOURCE_TYPES, SourceReader, SourceType
from unified_calendar.integrations.sql import (
    ManualEventReader,
    ProjectedSourceReader,
    SqlEventWriter,
    SqlExceptionStore,
)
from unified_calendar.services.aggregator import EventAggregator

logger = logging.getLogger(__name__)


@dataclass
class CalendarComponents:
    """Engine pieces shared by every request."""

    engine: Engine
    readers: list[SourceReader]
    aggregator: EventAggregator
    writer: SqlEventWriter
    exception_store: SqlExceptionStore
    executor: ThreadPoolExecutor
    settings: Settings


# Global components (initialized at startup)
_components: Optional[CalendarComponents] = None


def build_components(engine: Engine, settings: Optional[Settings] = None) -> CalendarComponents:
    """
    Wire readers, writer and exception store onto one database.

    All SQL integrations share a single thread pool sized by
    ``source_reader_workers``.
    """
    settings = settings or get_settings()
    session_factory = create_session_factory(engine)
    executor = ThreadPoolExecutor(
        max_workers=settings.source_reader_workers,
        thread_name_prefix="calendar-source",
    )

    readers: list[SourceReader] = [ManualEventReader(session_factory, executor)]
    readers.extend(
        ProjectedSourceReader(source_type, session_factory, executor)
        for source_type in ALL_SOURCE_TYPES
        if source_type != SourceType.MANUAL
    )
    exception_store = SqlExceptionStore(session_factory, executor)

    return CalendarComponents(
        engine=engine,
        readers=readers,
        aggregator=EventAggregator(readers, exception_store, settings),
        writer=SqlEventWriter(session_factory, executor),
        exception_store=exception_store,
        executor=executor,
        settings=settings,
    )


def init_components(engine: Optional[Engine] = None, settings: Optional[Settings] = None) -> CalendarComponents:
    """Initialize components at application startup."""
    global _components
    if engine is None:
        from unified_calendar.database import engine as default_engine
        engine = default_engine
    _components = build_components(engine, settings)
    logger.info(f"Calendar components initialized with {len(_components.readers)} sources")
    return _components


def reset_components() -> None:
    """Release the thread pool and forget the components."""
    global _components
    if _components is not None:
        _components.executor.shutdown(wait=False)
    _components = None


def get_components() -> CalendarComponents:
    """
    Dependency injection for engine components.

    Raises:
        HTTPException: If components are not initialized
    """
    if _components is None:
        logger.error("Calendar components not initialized")
        raise HTTPException(
            status_code=503,
            detail="Service temporarily unavailable - calendar not initialized",
        )
    return _components


def get_organization_id(
    x_organization_id: str = Header(..., description="Organization whose calendar is used"),
) -> str:
    """
    Extract the organization scope from the X-Organization-ID header.

    Raises:
        EventValidationError: If the header is blank
    """
    organization_id = x_organization_id.strip()
    if not organization_id:
        raise EventValidationError("X-Organization-ID header cannot be empty")
    return organization_id


def parse_source_types(value: Optional[str]) -> tuple[SourceType, ...]:
    """
    Parse a comma-separated source type list ("manual,shift").

    Returns:
        Requested source types, or every source when empty
    """
    if value is None or not value.strip():
        return ALL_SOURCE_TYPES
    try:
        return tuple(
            SourceType(part.strip().lower())
            for part in value.split(",")
            if part.strip()
        )
    except ValueError:
        raise EventValidationError(f"Unknown source type in '{value}'")
