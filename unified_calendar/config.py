"""
Configuration management for the Unified Calendar engine.

Uses Pydantic Settings for type-safe environment variable loading.
Configured via .env file in project root.
"""

from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be configured via .env file or environment variables.
    """

    # Python & Application
    python_env: Literal["development", "production"] = Field(
        default="development",
        description="Application environment"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level"
    )

    # Database
    database_url: str = Field(
        default="sqlite:///./data/unified_calendar.db",
        description="Database connection URL"
    )

    # API Configuration
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8000,
        description="API server port"
    )

    # Timezone Configuration
    timezone: str = Field(
        default="UTC",
        description="Timezone used for naive instants (IANA timezone name, e.g., America/Bogota)"
    )

    # Calendar grid
    week_start_day: int = Field(
        default=0,
        ge=0,
        le=6,
        description="First day of the calendar week (0=Monday ... 6=Sunday)"
    )
    default_view: Literal["month", "week", "day", "agenda"] = Field(
        default="month",
        description="View used when a request does not name one"
    )

    # Mutation rules
    min_event_duration_minutes: int = Field(
        default=15,
        ge=1,
        description="Smallest duration a resize may produce"
    )
    default_event_duration_minutes: int = Field(
        default=60,
        ge=1,
        description="Duration assumed for open-ended events when they are moved"
    )

    # Recurrence expansion
    anchor_tolerance_seconds: int = Field(
        default=60,
        ge=0,
        description="Generated instants this close to the anchor are the anchor itself"
    )
    max_occurrences_per_series: int = Field(
        default=1000,
        ge=1,
        description="Safety limit on occurrences generated for one anchor per query"
    )
    preview_max_occurrences: int = Field(
        default=50,
        ge=1,
        description="Upper bound for the 'next N occurrences' preview"
    )

    # Source fan-out
    source_reader_workers: int = Field(
        default=4,
        ge=1,
        description="Thread pool size for database-backed source readers"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.python_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.python_env == "production"

    @property
    def uses_postgresql(self) -> bool:
        """Check if PostgreSQL is the configured database."""
        return "postgresql" in self.database_url.lower()

    @property
    def tzinfo(self) -> ZoneInfo:
        """Timezone object for the configured IANA name."""
        return ZoneInfo(self.timezone)

    def validate_production_config(self) -> None:
        """
        Validate configuration for production environment.

        Raises:
            ValueError: If required production settings are missing or invalid
        """
        if not self.is_production:
            return

        errors = []

        if not self.uses_postgresql:
            errors.append(
                "Production requires PostgreSQL. "
                "Set DATABASE_URL to a PostgreSQL connection string."
            )

        if self.log_level == "DEBUG":
            errors.append("LOG_LEVEL=DEBUG echoes SQL and is not allowed in production.")

        if errors:
            raise ValueError("Production configuration errors:\n- " + "\n- ".join(errors))


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    This function is cached to ensure we only load settings once.
    Use this function throughout the application to access settings.

    Returns:
        Settings instance loaded from environment

    Example:
        >>> from unified_calendar.config import get_settings
        >>> settings = get_settings()
        >>> print(settings.week_start_day)
    """
    return Settings()
