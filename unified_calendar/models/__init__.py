"""
SQLAlchemy models for the unified calendar.

Importing this package registers every table on Base.metadata.
"""

from unified_calendar.models.base import Base, BaseModel, GUID, get_json_type
from unified_calendar.models.calendar import (
    CalendarEventRecord,
    CalendarExceptionRecord,
    SourceEventRecord,
)

__all__ = [
    # Base classes
    "Base",
    "BaseModel",
    "GUID",
    "get_json_type",
    # Calendar models
    "CalendarEventRecord",
    "CalendarExceptionRecord",
    "SourceEventRecord",
]
