"""
Unit Tests for Cron Expressions

Tests for parsing and next-occurrence evaluation against fixed clocks.
"""

from datetime import datetime, timezone

import pytest

from amoeba_core.scheduling import (
    CronExpression,
    CronExpressionError,
    SchedulingError,
    next_due_time,
    parse_cron,
    validate_cron,
)

UTC = timezone.utc


def utc(*args):
    return datetime(*args, tzinfo=UTC)


# =============================================================================
# Parsing Tests
# =============================================================================


class TestParsing:
    """Tests for field parsing."""

    def test_wildcards(self):
        cron = CronExpression("* * * * *")

        assert cron.minutes == frozenset(range(60))
        assert cron.hours == frozenset(range(24))
        assert cron.days == frozenset(range(1, 32))
        assert cron.months == frozenset(range(1, 13))
        assert cron.weekdays == frozenset(range(7))
        assert cron.has_seconds is False

    def test_lists_ranges_and_steps(self):
        cron = CronExpression("0,30 9-17 */10 1-6/2 MON-FRI")

        assert cron.minutes == {0, 30}
        assert cron.hours == set(range(9, 18))
        assert cron.days == {1, 11, 21, 31}
        assert cron.months == {1, 3, 5}
        assert cron.weekdays == {1, 2, 3, 4, 5}

    def test_start_with_step(self):
        cron = CronExpression("5/20 * * * *")

        assert cron.minutes == {5, 25, 45}

    def test_month_and_weekday_names(self):
        cron = CronExpression("0 0 1 jan,JUL sun")

        assert cron.months == {1, 7}
        assert cron.weekdays == {0}

    def test_weekday_seven_is_sunday(self):
        assert CronExpression("0 0 * * 7").weekdays == {0}

    def test_trailing_seconds_field(self):
        cron = CronExpression("0 0 * * * 30")

        assert cron.has_seconds is True
        assert cron.seconds == {30}

    def test_whitespace_is_normalized(self):
        assert CronExpression("  0   12 * *  * ").expression == "0 12 * * *"

    @pytest.mark.parametrize(
        "expression",
        [
            "",
            "* * * *",
            "* * * * * * *",
            "60 * * * *",
            "* 24 * * *",
            "* * 0 * *",
            "* * * 13 *",
            "* * * * 8",
            "*/0 * * * *",
            "5-1 * * * *",
            "a * * * *",
            "1,,2 * * * *",
            "0 0 * * * 60",
        ],
    )
    def test_malformed_expressions(self, expression):
        with pytest.raises(CronExpressionError):
            CronExpression(expression)

    def test_error_hierarchy(self):
        """Cron errors are scheduling errors and value errors."""
        with pytest.raises(ValueError):
            CronExpression("bad")
        assert issubclass(CronExpressionError, SchedulingError)

    def test_validate_cron(self):
        assert validate_cron("*/15 * * * *") is True
        assert validate_cron("not a cron") is False

    def test_parse_cron_is_cached(self):
        assert parse_cron("0 * * * *") is parse_cron("0 * * * *")


# =============================================================================
# Matching Tests
# =============================================================================


class TestMatching:
    """Tests for matching wall-clock datetimes."""

    def test_matches(self):
        cron = CronExpression("30 9 * * 1-5")

        assert cron.matches(datetime(2026, 1, 15, 9, 30))  # Thursday
        assert not cron.matches(datetime(2026, 1, 17, 9, 30))  # Saturday
        assert not cron.matches(datetime(2026, 1, 15, 9, 31))

    def test_day_of_month_or_day_of_week(self):
        """When both day fields are restricted either may match."""
        cron = CronExpression("0 0 1 * 1")

        assert cron.matches(datetime(2026, 2, 1))  # Sunday, the 1st
        assert cron.matches(datetime(2026, 1, 19))  # Monday
        assert not cron.matches(datetime(2026, 1, 20))


# =============================================================================
# Next Occurrence Tests
# =============================================================================


class TestNextOccurrence:
    """Tests for next_occurrence against fixed instants."""

    def test_every_fifteen_minutes(self):
        cron = CronExpression("*/15 * * * *")

        assert cron.next_occurrence(utc(2026, 1, 15, 12, 7)) == utc(2026, 1, 15, 12, 15)

    def test_strictly_after(self):
        """A matching instant is never its own next occurrence."""
        cron = CronExpression("0 * * * *")

        assert cron.next_occurrence(utc(2026, 1, 15, 12, 0)) == utc(2026, 1, 15, 13, 0)

    def test_rolls_over_year(self):
        cron = CronExpression("0 0 1 1 *")

        assert cron.next_occurrence(utc(2026, 6, 1)) == utc(2027, 1, 1)

    def test_weekday_schedule(self):
        cron = CronExpression("0 9 * * MON")

        assert cron.next_occurrence(utc(2026, 1, 15, 12)) == utc(2026, 1, 19, 9)

    def test_day_of_month_or_day_of_week(self):
        cron = CronExpression("0 0 1 * 1")

        assert cron.next_occurrence(utc(2026, 1, 15, 12)) == utc(2026, 1, 19)

    def test_seconds_field(self):
        cron = CronExpression("0 0 * * * 30")

        assert cron.next_occurrence(utc(2026, 1, 15, 12)) == utc(2026, 1, 16, 0, 0, 30)

    def test_timezone_wall_clock(self):
        """09:00 in New York during winter is 14:00 UTC."""
        cron = CronExpression("0 9 * * *")

        result = cron.next_occurrence(utc(2026, 1, 15, 12), "America/New_York")

        assert result == utc(2026, 1, 15, 14)
        assert result.tzinfo == UTC

    def test_timezone_ahead_of_utc(self):
        """Midnight in Tokyo is 15:00 UTC the previous day."""
        cron = CronExpression("0 0 * * *")

        assert cron.next_occurrence(utc(2026, 1, 15, 12), "Asia/Tokyo") == utc(2026, 1, 15, 15)

    def test_naive_input_is_utc(self):
        cron = CronExpression("30 12 * * *")

        assert cron.next_occurrence(datetime(2026, 1, 15, 12, 0)) == utc(2026, 1, 15, 12, 30)

    def test_unknown_timezone(self):
        with pytest.raises(CronExpressionError):
            CronExpression("* * * * *").next_occurrence(utc(2026, 1, 15), "Mars/Olympus")

    def test_impossible_date(self):
        """February 30th never comes."""
        with pytest.raises(CronExpressionError):
            CronExpression("0 0 30 2 *").next_occurrence(utc(2026, 1, 15))

    def test_leap_day(self):
        cron = CronExpression("0 0 29 2 *")

        assert cron.next_occurrence(utc(2026, 1, 15)) == utc(2028, 2, 29)

    def test_next_due_time(self):
        assert next_due_time("0 0 * * *", "UTC", utc(2026, 1, 15, 12)) == utc(2026, 1, 16)
