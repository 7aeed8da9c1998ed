"""
Pytest configuration and fixtures for unified calendar tests.

Provides settings, a throwaway SQLite database, and helpers for building
events and mocked sources.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Generator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from unified_calendar.config import Settings
from unified_calendar.database import create_db_engine, create_session_factory, init_db
from unified_calendar.integrations.base import (
    CalendarEvent,
    RawEventRow,
    SourceType,
    build_event,
)

ORG_ID = "org-1"


def utc(*args) -> datetime:
    """Aware UTC datetime shorthand."""
    return datetime(*args, tzinfo=timezone.utc)


def make_row(
    source_id: str,
    start_at: datetime,
    end_at: Optional[datetime] = None,
    **kwargs,
) -> RawEventRow:
    """Reader row with sensible defaults for the test organization."""
    kwargs.setdefault("title", f"Event {source_id}")
    kwargs.setdefault("organization_id", ORG_ID)
    return RawEventRow(source_id=source_id, start_at=start_at, end_at=end_at, **kwargs)


def make_event(
    source_type: SourceType,
    source_id: str,
    start_at: datetime,
    end_at: Optional[datetime] = None,
    **kwargs,
) -> CalendarEvent:
    return build_event(source_type, make_row(source_id, start_at, end_at, **kwargs))


@pytest.fixture
def settings() -> Settings:
    """Default settings, ignoring any local .env file."""
    return Settings(_env_file=None)


@pytest.fixture
def make_reader():
    """
    Factory for mocked SourceReaders.

    Usage:
        reader = make_reader(SourceType.TASK, in_window=[row], recurring=[])
    """

    def _make(
        source_type: SourceType,
        in_window: Optional[list[RawEventRow]] = None,
        recurring: Optional[list[RawEventRow]] = None,
        error: Optional[Exception] = None,
    ) -> MagicMock:
        reader = MagicMock()
        reader.source_type = source_type
        reader.fetch_in_window = AsyncMock(return_value=list(in_window or []))
        reader.fetch_recurring_anchors_before = AsyncMock(return_value=list(recurring or []))
        if error is not None:
            reader.fetch_in_window.side_effect = error
        return reader

    return _make


@pytest.fixture
def sqlite_engine(tmp_path) -> Generator[Engine, None, None]:
    """
    File-backed SQLite database with all tables created.

    File-backed so the thread pool used by the SQL sources gets its own
    connections.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'calendar.db'}")
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine: Engine) -> sessionmaker:
    return create_session_factory(sqlite_engine)


@pytest.fixture
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Session for arranging rows directly in the test database."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def executor() -> Generator[ThreadPoolExecutor, None, None]:
    pool = ThreadPoolExecutor(max_workers=2)
    try:
        yield pool
    finally:
        pool.shutdown(wait=True)
