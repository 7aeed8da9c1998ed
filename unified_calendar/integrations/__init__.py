"""
Calendar sources.

Provides the read/write boundaries the engine depends on and their
SQLAlchemy implementations.
"""

from unified_calendar.integrations.base import (
    CalendarEvent,
    CalendarException,
    CalendarFilters,
    EventDraft,
    EventWriter,
    ExceptionStore,
    RawEventRow,
    SourceReader,
    SourceType,
    Window,
)

__all__ = [
    "CalendarEvent",
    "CalendarException",
    "CalendarFilters",
    "EventDraft",
    "EventWriter",
    "ExceptionStore",
    "RawEventRow",
    "SourceReader",
    "SourceType",
    "Window",
]
