"""
Unit tests for the recurrence service.

Tests rule parsing, serialization and occurrence expansion.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from unified_calendar.services.recurrence import (
    EndCondition,
    Frequency,
    RecurrenceRule,
    describe_rule,
    expand,
    normalize_rule_string,
    parse_rule,
    preview,
    serialize_rule,
)


def starts(occurrences):
    return [o.start for o in occurrences]


class TestParseRule:
    """Test parse_rule function."""

    def test_parse_weekly_rule(self):
        rule = parse_rule("FREQ=WEEKLY;BYDAY=MO,WE,FR")

        assert rule.frequency == Frequency.WEEKLY
        assert rule.weekdays == frozenset({0, 2, 4})
        assert rule.interval == 1
        assert rule.end_condition == EndCondition.NEVER

    def test_parse_is_case_insensitive_and_accepts_prefix(self):
        rule = parse_rule("RRULE:freq=daily;interval=2;count=5")

        assert rule.frequency == Frequency.DAILY
        assert rule.interval == 2
        assert rule.count == 5

    def test_parse_empty_string_is_disabled(self):
        assert parse_rule("").is_recurring is False
        assert parse_rule(None).is_recurring is False
        assert parse_rule("   ").enabled is False

    def test_unknown_frequency_is_disabled(self):
        """A rule without a usable FREQ means no recurrence."""
        rule = parse_rule("FREQ=HOURLY;COUNT=3")

        assert rule.enabled is False
        assert rule.is_recurring is False

    def test_unknown_keys_and_bad_values_are_ignored(self):
        rule = parse_rule("FREQ=DAILY;FOO=BAR;INTERVAL=abc;COUNT=-2;garbage")

        assert rule.frequency == Frequency.DAILY
        assert rule.interval == 1
        assert rule.count is None

    def test_count_wins_over_until(self):
        rule = parse_rule("FREQ=DAILY;UNTIL=20240131;COUNT=4")

        assert rule.count == 4
        assert rule.until is None
        assert rule.end_condition == EndCondition.COUNT

    @pytest.mark.parametrize(
        "value",
        ["20240131", "2024-01-31", "20240131T235959Z"],
    )
    def test_until_formats(self, value):
        rule = parse_rule(f"FREQ=DAILY;UNTIL={value}")

        assert rule.until == date(2024, 1, 31)
        assert rule.end_condition == EndCondition.UNTIL

    def test_byday_ignored_for_non_weekly(self):
        rule = parse_rule("FREQ=DAILY;BYDAY=MO")

        assert rule.weekdays is None

    def test_bymonthday_ignored_for_non_monthly(self):
        assert parse_rule("FREQ=WEEKLY;BYMONTHDAY=5").month_day is None
        assert parse_rule("FREQ=MONTHLY;BYMONTHDAY=5").month_day == 5

    def test_bymonthday_out_of_range_ignored(self):
        assert parse_rule("FREQ=MONTHLY;BYMONTHDAY=32").month_day is None

    def test_weekday_mask(self):
        rule = parse_rule("FREQ=WEEKLY;BYDAY=MO,SU")

        assert rule.weekday_mask == 0b1000001


class TestRecurrenceRuleValidation:
    """RecurrenceRule rejects impossible values built in code."""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            RecurrenceRule(frequency=Frequency.DAILY, interval=0)

    def test_count_and_until_are_exclusive(self):
        with pytest.raises(ValueError):
            RecurrenceRule(frequency=Frequency.DAILY, count=2, until=date(2024, 1, 1))


class TestSerializeRule:
    """Test canonical serialization."""

    def test_canonical_order(self):
        rule = parse_rule("COUNT=6;BYDAY=FR,MO;INTERVAL=2;FREQ=WEEKLY")

        assert serialize_rule(rule) == "FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,FR;COUNT=6"

    def test_interval_one_omitted(self):
        assert serialize_rule(parse_rule("FREQ=DAILY;INTERVAL=1")) == "FREQ=DAILY"

    def test_until_serialized_as_date(self):
        rule = parse_rule("FREQ=MONTHLY;BYMONTHDAY=31;UNTIL=2024-12-31")

        assert serialize_rule(rule) == "FREQ=MONTHLY;BYMONTHDAY=31;UNTIL=20241231"

    def test_disabled_rule_serializes_empty(self):
        assert serialize_rule(parse_rule("nonsense")) == ""
        assert normalize_rule_string("nonsense") is None

    @pytest.mark.parametrize(
        "canonical",
        [
            "FREQ=DAILY",
            "FREQ=WEEKLY;BYDAY=TU,TH;COUNT=10",
            "FREQ=MONTHLY;INTERVAL=3;BYMONTHDAY=15;UNTIL=20251231",
            "FREQ=YEARLY;INTERVAL=2",
        ],
    )
    def test_canonical_strings_are_stable(self, canonical):
        assert serialize_rule(parse_rule(canonical)) == canonical


class TestDescribeRule:
    def test_does_not_repeat(self):
        assert describe_rule(parse_rule(None)) == "Does not repeat"

    def test_weekly_with_days_and_count(self):
        rule = parse_rule("FREQ=WEEKLY;BYDAY=MO,WE;COUNT=3")

        assert describe_rule(rule) == "Weekly (Mon, Wed) (3 occurrences)"

    def test_interval_and_until(self):
        rule = parse_rule("FREQ=MONTHLY;INTERVAL=2;UNTIL=20240131")

        assert describe_rule(rule) == "Every 2 months until 31/01/2024"


class TestExpand:
    """Test expand function."""

    def test_weekly_count_three(self):
        """Anchor Mon 2024-01-01 09:00, weekly COUNT=3 in a January window."""
        anchor = datetime(2024, 1, 1, 9, 0)
        rule = parse_rule("FREQ=WEEKLY;COUNT=3")

        result = expand(
            anchor, anchor + timedelta(hours=1), rule,
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert starts(result) == [
            datetime(2024, 1, 1, 9, 0),
            datetime(2024, 1, 8, 9, 0),
            datetime(2024, 1, 15, 9, 0),
        ]
        assert result[0].is_anchor is True
        assert not any(o.is_anchor for o in result[1:])

    def test_duration_preserved(self):
        anchor = datetime(2024, 1, 1, 9, 15)
        result = expand(
            anchor, anchor + timedelta(minutes=45), parse_rule("FREQ=DAILY;COUNT=4"),
            datetime(2024, 1, 1), datetime(2024, 1, 31),
        )

        assert len(result) == 4
        assert all(o.end - o.start == timedelta(minutes=45) for o in result)

    def test_open_ended_anchor_gives_open_ended_occurrences(self):
        anchor = datetime(2024, 1, 1, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;COUNT=2"),
            datetime(2024, 1, 1), datetime(2024, 1, 31),
        )

        assert [o.end for o in result] == [None, None]

    def test_non_recurring_returns_only_anchor(self):
        anchor = datetime(2024, 1, 10, 9, 0)
        result = expand(
            anchor, None, parse_rule(None),
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert starts(result) == [anchor]

    def test_anchor_outside_window_not_emitted(self):
        anchor = datetime(2023, 12, 25, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=WEEKLY"),
            datetime(2024, 1, 1), datetime(2024, 1, 15),
        )

        assert starts(result) == [datetime(2024, 1, 1, 9, 0), datetime(2024, 1, 8, 9, 0)]
        assert not any(o.is_anchor for o in result)

    def test_window_is_half_open(self):
        anchor = datetime(2024, 1, 1, 0, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY"),
            datetime(2024, 1, 1), datetime(2024, 1, 3),
        )

        assert starts(result) == [datetime(2024, 1, 1), datetime(2024, 1, 2)]

    def test_until_is_inclusive_through_end_of_day(self):
        anchor = datetime(2024, 1, 1, 18, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;UNTIL=20240103"),
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert starts(result)[-1] == datetime(2024, 1, 3, 18, 0)
        assert len(result) == 3

    def test_count_counts_occurrences_before_window(self):
        """COUNT includes the anchor and occurrences before the window."""
        anchor = datetime(2024, 1, 1, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;COUNT=5"),
            datetime(2024, 1, 4), datetime(2024, 2, 1),
        )

        assert starts(result) == [datetime(2024, 1, 4, 9, 0), datetime(2024, 1, 5, 9, 0)]

    def test_count_one_yields_anchor_only(self):
        anchor = datetime(2024, 1, 1, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;COUNT=1"),
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert starts(result) == [anchor]

    def test_weekly_byday(self):
        anchor = datetime(2024, 1, 1, 10, 0)  # Monday
        result = expand(
            anchor, None, parse_rule("FREQ=WEEKLY;BYDAY=MO,WE,FR"),
            datetime(2024, 1, 1), datetime(2024, 1, 8),
        )

        assert [o.start.day for o in result] == [1, 3, 5]

    def test_weekly_interval_counts_weeks_from_anchor_week(self):
        anchor = datetime(2024, 1, 3, 10, 0)  # Wednesday
        result = expand(
            anchor, None, parse_rule("FREQ=WEEKLY;INTERVAL=2;BYDAY=MO,WE"),
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert [o.start.date() for o in result] == [
            date(2024, 1, 3),
            date(2024, 1, 15),
            date(2024, 1, 17),
            date(2024, 1, 29),
            date(2024, 1, 31),
        ]

    def test_weekly_interval_matches_day_by_day_stepping(self):
        """Week-indexed stepping equals walking day by day from the anchor."""
        anchor = datetime(2024, 1, 4, 8, 0)  # Thursday
        rule = parse_rule("FREQ=WEEKLY;INTERVAL=3;BYDAY=TU,TH,SA")
        window_start, window_end = datetime(2024, 1, 1), datetime(2024, 6, 1)

        expected = []
        day = anchor
        week_zero = anchor - timedelta(days=anchor.weekday())
        while day < window_end:
            weeks = (day - week_zero).days // 7
            if weeks % 3 == 0 and day.weekday() in rule.weekdays:
                expected.append(day)
            day += timedelta(days=1)

        assert starts(expand(anchor, None, rule, window_start, window_end)) == expected

    def test_monthly_day_31_clamps_to_month_end(self):
        """Jan 31 monthly: Feb 29 (leap year), Mar 31, Apr 30, May 31."""
        anchor = datetime(2024, 1, 31, 12, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=MONTHLY"),
            datetime(2024, 1, 1), datetime(2024, 6, 1),
        )

        assert [o.start.date() for o in result] == [
            date(2024, 1, 31),
            date(2024, 2, 29),
            date(2024, 3, 31),
            date(2024, 4, 30),
            date(2024, 5, 31),
        ]

    def test_monthly_bymonthday(self):
        anchor = datetime(2024, 1, 5, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=MONTHLY;BYMONTHDAY=20;COUNT=3"),
            datetime(2024, 1, 1), datetime(2024, 12, 31),
        )

        assert [o.start.date() for o in result] == [
            date(2024, 1, 5),
            date(2024, 1, 20),
            date(2024, 2, 20),
        ]

    def test_yearly_leap_day_clamps(self):
        anchor = datetime(2024, 2, 29, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=YEARLY;COUNT=2"),
            datetime(2024, 1, 1), datetime(2026, 1, 1),
        )

        assert [o.start.date() for o in result] == [date(2024, 2, 29), date(2025, 2, 28)]

    def test_never_duplicates_anchor(self):
        """A candidate within the tolerance of the anchor is the anchor."""
        anchor = datetime(2024, 1, 1, 9, 0, 30)
        result = expand(
            anchor, None, parse_rule("FREQ=WEEKLY;BYDAY=MO"),
            datetime(2024, 1, 1), datetime(2024, 1, 8),
        )

        assert starts(result) == [anchor]

    def test_long_running_series_expands_only_window(self):
        """A daily series anchored years ago yields only the window's days."""
        anchor = datetime(2000, 1, 1, 7, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY"),
            datetime(2024, 3, 1), datetime(2024, 3, 8),
            max_occurrences=10,
        )

        assert [o.start.day for o in result] == [1, 2, 3, 4, 5, 6, 7]

    def test_count_includes_anchor_off_pattern(self):
        """An anchor outside BYDAY still uses up one occurrence of COUNT."""
        anchor = datetime(2024, 1, 2, 9, 0)  # Tuesday
        result = expand(
            anchor, None, parse_rule("FREQ=WEEKLY;BYDAY=MO;COUNT=3"),
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert starts(result) == [
            anchor,
            datetime(2024, 1, 8, 9, 0),
            datetime(2024, 1, 15, 9, 0),
        ]

    def test_monthly_bymonthday_31_with_interval(self):
        anchor = datetime(2024, 1, 10, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=MONTHLY;INTERVAL=2;BYMONTHDAY=31;COUNT=4"),
            datetime(2024, 1, 1), datetime(2025, 1, 1),
        )

        assert [o.start.date() for o in result] == [
            date(2024, 1, 10),
            date(2024, 1, 31),
            date(2024, 3, 31),
            date(2024, 5, 31),
        ]

    def test_yearly_leap_day_returns_in_leap_years(self):
        anchor = datetime(2024, 2, 29, 9, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=YEARLY"),
            datetime(2024, 1, 1), datetime(2029, 1, 1),
        )

        assert [o.start.date() for o in result] == [
            date(2024, 2, 29),
            date(2025, 2, 28),
            date(2026, 2, 28),
            date(2027, 2, 28),
            date(2028, 2, 29),
        ]

    def test_sub_second_anchor_keeps_its_time(self):
        anchor = datetime(2024, 1, 1, 9, 0, 0, 500000)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;COUNT=3"),
            datetime(2024, 1, 1), datetime(2024, 2, 1),
        )

        assert starts(result) == [anchor + timedelta(days=n) for n in range(3)]

    def test_aware_until(self):
        anchor = datetime(2024, 1, 1, 22, 0, tzinfo=timezone.utc)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;UNTIL=20240102T000000Z"),
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 2, 1, tzinfo=timezone.utc),
        )

        assert starts(result) == [anchor, anchor + timedelta(days=1)]

    def test_max_occurrences_caps_output(self):
        anchor = datetime(2024, 1, 1, 7, 0)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY"),
            datetime(2024, 1, 1), datetime(2025, 1, 1),
            max_occurrences=5,
        )

        assert len(result) == 5

    def test_aware_instants(self):
        anchor = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        result = expand(
            anchor, None, parse_rule("FREQ=DAILY;COUNT=2"),
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 1, 31, tzinfo=timezone.utc),
        )

        assert starts(result) == [anchor, anchor + timedelta(days=1)]


class TestPreview:
    def test_first_n_occurrences(self):
        anchor = datetime(2024, 1, 1, 9, 0)
        result = preview(anchor, None, parse_rule("FREQ=WEEKLY;BYDAY=MO,TH"), limit=4)

        assert [o.start.date() for o in result] == [
            date(2024, 1, 1),
            date(2024, 1, 4),
            date(2024, 1, 8),
            date(2024, 1, 11),
        ]

    def test_respects_count(self):
        anchor = datetime(2024, 1, 1, 9, 0)
        result = preview(anchor, None, parse_rule("FREQ=DAILY;COUNT=3"), limit=10)

        assert len(result) == 3

    def test_preview_after(self):
        anchor = datetime(2024, 1, 1, 9, 0)
        result = preview(
            anchor, None, parse_rule("FREQ=DAILY"), limit=2,
            after=datetime(2024, 1, 10),
        )

        assert starts(result) == [datetime(2024, 1, 10, 9, 0), datetime(2024, 1, 11, 9, 0)]
