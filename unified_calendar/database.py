"""
Database configuration and session management.

Provides:
- Database engine creation with proper configuration
- SessionLocal factory for creating database sessions
- Database initialization utilities
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from unified_calendar.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

if settings.is_production:
    settings.validate_production_config()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine configured for the database type.

    Source readers query from a thread pool, so file-based SQLite keeps a
    regular connection pool; only in-memory SQLite shares one connection.

    Args:
        database_url: SQLAlchemy database URL
        echo: Log SQL statements

    Returns:
        Configured engine
    """
    if "sqlite" in database_url.lower():
        url = make_url(database_url)
        in_memory = url.database in (None, "", ":memory:")

        if in_memory:
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=echo,
            )
        else:
            engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                echo=echo,
            )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable foreign key constraints in SQLite."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=5,  # Maximum number of connections in pool
        pool_recycle=3600,  # Recycle connections after 1 hour
        pool_pre_ping=True,  # Test connections before using them
        echo=echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory with explicit commits, as used by the SQL integrations."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


engine = create_db_engine(settings.database_url, echo=settings.log_level == "DEBUG")

SessionLocal = create_session_factory(engine)


@contextmanager
def get_db_context(session_factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """
    Context manager for database sessions outside FastAPI.

    Usage for scripts, tests, or background tasks:
        with get_db_context() as db:
            record = db.get(CalendarEventRecord, event_id)
            record.title = "Updated"
            # Automatic commit on context exit

    Args:
        session_factory: Factory to use (defaults to SessionLocal)

    Yields:
        Session: SQLAlchemy database session
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _ensure_sqlite_directory(bind: Engine) -> None:
    if bind.dialect.name != "sqlite":
        return
    database = bind.url.database
    if database and database != ":memory:":
        directory = os.path.dirname(os.path.abspath(database))
        os.makedirs(directory, exist_ok=True)


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Initialize database by creating all tables.

    Args:
        bind: Engine to create tables on (defaults to the configured engine)
    """
    from unified_calendar.models import Base

    bind = bind or engine
    _ensure_sqlite_directory(bind)

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=bind)
    logger.info("Database tables created successfully")


def drop_all_tables(bind: Optional[Engine] = None) -> None:
    """
    Drop all tables from the database.

    WARNING: This will delete all data.
    """
    from unified_calendar.models import Base

    logger.warning("Dropping all database tables...")
    Base.metadata.drop_all(bind=bind or engine)
    logger.info("All database tables dropped")


def check_connection(bind: Optional[Engine] = None) -> bool:
    """
    Test database connection.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        with (bind or engine).connect() as connection:
            connection.execute(text("SELECT 1"))
        logger.info("Database connection successful")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
