"""
Unified calendar API module.

Provides FastAPI HTTP endpoints over the calendar engine.
"""

from unified_calendar.api.main import app, run_server

__all__ = ["app", "run_server"]
