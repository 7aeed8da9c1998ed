"""
Error taxonomy for the calendar engine.

Every error carries a class-level ``retryable`` flag so the API layer and
callers can decide whether to offer a retry without inspecting messages.
"""

from typing import Optional


class CalendarEngineError(Exception):
    """Base exception for calendar engine operations."""

    retryable: bool = False

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class EventValidationError(CalendarEngineError):
    """
    Malformed mutation input.

    Raised before storage or the projection is touched.

    Causes:
    - Resize producing a non-positive or sub-minimum duration
    - Missing title or inverted instants on create
    - Exception overrides that make no sense
    """

    retryable = False


class SourceUnavailableError(CalendarEngineError):
    """
    A source reader failed while answering an aggregation query.

    The whole query fails; partial calendars are never returned.
    Retryable by the caller.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        source_type: Optional[str] = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message, original_error)
        self.source_type = source_type


class OwnershipViolationError(CalendarEngineError):
    """
    Mutation attempted on an event the calendar does not own.

    Only manual events are writable. This indicates a caller bug.
    """

    retryable = False


class WriteConflictError(CalendarEngineError):
    """
    The backing writer rejected a write after the optimistic apply.

    The projection has already been rolled back when this is raised.
    Retryable after the caller refreshes its view.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        mutation=None,
        original_error: Exception | None = None,
    ):
        super().__init__(message, original_error)
        self.mutation = mutation


class EventNotFoundError(CalendarEngineError):
    """
    Mutation target is not present in the projection or the store.
    """

    retryable = False
