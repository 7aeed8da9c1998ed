"""
Unified calendar: event aggregation and recurrence expansion.

Merges manual events with the events other modules project onto the
calendar, expands recurring series, and applies optimistic mutations to
manual events.
"""

__version__ = "0.1.0"
