"""Recurrence rule and calendar arithmetic tests."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from careplan.domain import RecurrenceUnit
from careplan.errors import IncompleteRuleError, InvalidRecurrenceRuleError, ValidationError
from careplan.services.recurrence import (
    MAX_GENERATED,
    RecurrenceRule,
    add_interval,
    compute_next_due,
    date_key,
    due_dates,
    exact_span_days,
    parse_unit,
    to_date,
)


class TestAddInterval:
    def test_month_end_clamps_to_february(self):
        assert add_interval(date(2025, 1, 31), 1, RecurrenceUnit.MONTH) == date(2025, 2, 28)
        assert add_interval(date(2024, 1, 31), 1, RecurrenceUnit.MONTH) == date(2024, 2, 29)

    def test_year_from_leap_day(self):
        assert add_interval(date(2024, 2, 29), 1, RecurrenceUnit.YEAR) == date(2025, 2, 28)

    def test_days_and_weeks(self):
        assert add_interval(date(2025, 12, 30), 3, RecurrenceUnit.DAY) == date(2026, 1, 2)
        assert add_interval(date(2025, 1, 1), 2, RecurrenceUnit.WEEK) == date(2025, 1, 15)

    def test_month_crosses_year(self):
        assert add_interval(date(2025, 11, 15), 3, RecurrenceUnit.MONTH) == date(2026, 2, 15)

    def test_month_end_steps_from_a_thirty_day_month(self):
        assert add_interval(date(2025, 4, 30), 10, RecurrenceUnit.MONTH) == date(2026, 2, 28)
        assert add_interval(date(2025, 8, 31), 1, "months") == date(2025, 9, 30)

    @pytest.mark.parametrize(
        "count, unit",
        [(100_000, RecurrenceUnit.MONTH), (9_000, RecurrenceUnit.YEAR), (4_000_000, RecurrenceUnit.DAY)],
    )
    def test_step_past_the_calendar_is_rejected(self, count, unit):
        with pytest.raises(InvalidRecurrenceRuleError):
            add_interval(date(2025, 1, 1), count, unit)


class TestComputeNextDue:
    def test_month_end_is_calendar_correct(self):
        rule = RecurrenceRule(count=1, unit=RecurrenceUnit.MONTH)
        assert compute_next_due("2025-01-31", rule) == date(2025, 2, 28)

    def test_dental_appointment_every_three_months(self):
        rule = RecurrenceRule.parse(3, "month")
        assert compute_next_due(date(2025, 1, 15), rule) == date(2025, 4, 15)

    def test_without_completion_uses_start_date(self):
        rule = RecurrenceRule.parse(1, "week", start="2025-03-03")
        assert compute_next_due(None, rule) == date(2025, 3, 10)

    def test_past_range_end_returns_none(self):
        rule = RecurrenceRule.parse(1, "month", start="2025-01-01", end="2025-06-30")
        assert compute_next_due("2025-06-15", rule) is None
        assert compute_next_due("2025-05-15", rule) == date(2025, 6, 15)

    def test_missing_anchor_raises(self):
        rule = RecurrenceRule(count=2, unit=RecurrenceUnit.DAY)
        with pytest.raises(IncompleteRuleError):
            compute_next_due(None, rule)

    def test_is_pure(self):
        rule = RecurrenceRule.parse(6, "months")
        first = compute_next_due("2025-08-31", rule)
        second = compute_next_due("2025-08-31", rule)
        assert first == second == date(2026, 2, 28)


class TestRuleParsing:
    @pytest.mark.parametrize("raw", ["month", "MONTH", " Months ", RecurrenceUnit.MONTH])
    def test_unit_is_case_insensitive(self, raw):
        assert parse_unit(raw) is RecurrenceUnit.MONTH

    def test_numeric_string_count(self):
        assert RecurrenceRule.parse("2", "week").count == 2

    @pytest.mark.parametrize("count", [0, -1, "x", None, True])
    def test_rejects_bad_count(self, count):
        with pytest.raises(InvalidRecurrenceRuleError):
            RecurrenceRule.parse(count, "day")

    def test_rejects_unknown_unit(self):
        with pytest.raises(InvalidRecurrenceRuleError):
            RecurrenceRule.parse(1, "fortnight")

    def test_rejects_impossible_date(self):
        with pytest.raises(InvalidRecurrenceRuleError):
            RecurrenceRule.parse(1, "day", start="2025-02-30")

    def test_rejects_end_before_start(self):
        with pytest.raises(InvalidRecurrenceRuleError):
            RecurrenceRule.parse(1, "day", start="2025-05-01", end="2025-04-01")


class TestDueDates:
    def test_twelve_monthly_steps_from_month_end(self):
        rule = RecurrenceRule.parse(1, "month", start="2025-01-31")
        dates = due_dates(rule, window_start="2025-01-01", window_end="2025-12-31")

        assert len(dates) == 12
        assert [d.month for d in dates] == list(range(1, 13))
        # Stepping from the anchor each time keeps month-ends from drifting to the 28th.
        assert dates[1] == date(2025, 2, 28)
        assert dates[2] == date(2025, 3, 31)
        assert dates[11] == date(2025, 12, 31)

    def test_start_date_is_first_occurrence_without_completion(self):
        rule = RecurrenceRule.parse(1, "week", start="2025-01-06")
        dates = due_dates(rule, window_start="2025-01-01", window_end="2025-01-31")
        assert dates == [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 20), date(2025, 1, 27)]

    def test_completion_shifts_the_series(self):
        rule = RecurrenceRule.parse(2, "week", start="2025-01-06")
        dates = due_dates(
            rule,
            window_start="2025-02-01",
            window_end="2025-03-15",
            last_completed="2025-02-03",
        )
        assert dates == [date(2025, 2, 17), date(2025, 3, 3)]

    def test_completion_before_start_is_ignored(self):
        rule = RecurrenceRule.parse(1, "month", start="2025-03-10")
        dates = due_dates(
            rule, window_start="2025-03-01", window_end="2025-04-30", last_completed="2024-12-01"
        )
        assert dates == [date(2025, 3, 10), date(2025, 4, 10)]

    def test_never_past_range_end(self):
        rule = RecurrenceRule.parse(1, "week", start="2025-01-06", end="2025-01-20")
        dates = due_dates(rule, window_start="2025-01-01", window_end="2025-12-31")
        assert dates == [date(2025, 1, 6), date(2025, 1, 13), date(2025, 1, 20)]

    def test_window_far_from_anchor(self):
        rule = RecurrenceRule.parse(1, "day", start="2000-01-01")
        dates = due_dates(rule, window_start="2025-01-01", window_end="2025-01-03")
        assert dates == [date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3)]

    def test_output_is_capped(self):
        rule = RecurrenceRule.parse(1, "day", start="2000-01-01")
        dates = due_dates(rule, window_start="2000-01-01", window_end="2030-01-01")
        assert len(dates) == MAX_GENERATED

    def test_limit(self):
        rule = RecurrenceRule.parse(1, "day", start="2025-01-01")
        assert len(due_dates(rule, window_start="2025-01-01", window_end="2025-12-31", limit=5)) == 5

    def test_requires_anchor(self):
        rule = RecurrenceRule.parse(1, "day")
        with pytest.raises(IncompleteRuleError):
            due_dates(rule, window_start="2025-01-01", window_end="2025-01-31")

    def test_rejects_inverted_window(self):
        rule = RecurrenceRule.parse(1, "day", start="2025-01-01")
        with pytest.raises(ValidationError):
            due_dates(rule, window_start="2025-02-01", window_end="2025-01-01")


class TestHelpers:
    def test_exact_span_days(self):
        assert exact_span_days("2025-01-31", 1, "month") == 28
        assert exact_span_days("2024-01-31", 1, "month") == 29
        assert exact_span_days("2025-01-01", 1, "year") == 365
        assert exact_span_days("2025-01-01", 2, "week") == 14

    def test_date_key_ignores_time_of_day(self):
        assert date_key(datetime(2025, 4, 15, 23, 59)) == "2025-04-15"
        assert date_key("2025-04-15T23:30:00+10:00") == "2025-04-15"
        assert date_key(date(2025, 4, 15)) == "2025-04-15"

    @pytest.mark.parametrize("value", ["15/04/2025", "2025-13-01", "", 20250415, None])
    def test_to_date_rejects_invalid(self, value):
        with pytest.raises(ValidationError):
            to_date(value)
