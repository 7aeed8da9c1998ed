"""
Unit tests for grid time selection.
"""

from datetime import date, datetime, timezone

import pytest

from unified_calendar.services.selection import (
    TimeSelection,
    begin_selection,
    contains,
    extend_selection,
    selection_bounds,
)

WEEK = [date(2024, 1, 8 + i) for i in range(7)]


class TestSelection:
    def test_drag_down(self):
        selection = extend_selection(begin_selection(2, 9), 2, 11)

        assert selection == TimeSelection(day_index=2, start_hour=9, end_hour=11)
        assert selection.hours == 3

    def test_drag_up_normalizes(self):
        selection = extend_selection(begin_selection(2, 11), 2, 9)

        assert (selection.first_hour, selection.last_hour) == (9, 11)

    def test_other_column_ignored(self):
        selection = begin_selection(2, 9)

        assert extend_selection(selection, 3, 12) is selection

    def test_extend_without_selection(self):
        assert extend_selection(None, 0, 5) is None

    @pytest.mark.parametrize("hour", [-1, 24])
    def test_hour_out_of_range(self, hour):
        with pytest.raises(ValueError):
            begin_selection(0, hour)

    def test_contains(self):
        selection = extend_selection(begin_selection(1, 10), 1, 12)

        assert contains(selection, 1, 11)
        assert not contains(selection, 1, 13)
        assert not contains(selection, 2, 11)
        assert not contains(None, 1, 11)


class TestSelectionBounds:
    def test_end_is_hour_after_last_cell(self):
        selection = extend_selection(begin_selection(2, 9), 2, 11)

        assert selection_bounds(selection, WEEK) == (datetime(2024, 1, 10, 9), datetime(2024, 1, 10, 12))

    def test_last_hour_ends_at_next_midnight(self):
        start, end = selection_bounds(begin_selection(0, 23), WEEK)

        assert start == datetime(2024, 1, 8, 23)
        assert end == datetime(2024, 1, 9)

    def test_aware_columns(self):
        days = [datetime(2024, 1, 8, tzinfo=timezone.utc)]

        start, end = selection_bounds(begin_selection(0, 9), days)

        assert start == datetime(2024, 1, 8, 9, tzinfo=timezone.utc)
        assert end.tzinfo is timezone.utc
