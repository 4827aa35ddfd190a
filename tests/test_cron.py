"""Tests for recurrence descriptors and pay periods."""

from datetime import date, datetime, time, timezone

import pytest

from disbursement_engine.errors import ConfigurationError
from disbursement_engine.scheduling import cron


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestBuilders:
    """Building descriptors from a date and frequency."""

    def test_one_time(self):
        """One-time descriptors pin the year."""
        assert cron.from_one_time(utc(2025, 3, 25, 9, 30)) == "30 9 25 3 * 2025"

    def test_daily(self):
        """Daily descriptors keep only the time of day."""
        assert cron.from_recurring(utc(2025, 3, 25, 9, 0), cron.DAILY) == "0 9 * * *"

    def test_weekly_uses_cron_weekday(self):
        """Weekly descriptors count weekdays from Sunday = 0."""
        # 2025-03-25 is a Tuesday
        assert cron.from_recurring(utc(2025, 3, 25, 9, 0), cron.WEEKLY) == "0 9 * * 2"
        # 2025-03-30 is a Sunday
        assert cron.from_recurring(utc(2025, 3, 30, 9, 0), cron.WEEKLY) == "0 9 * * 0"

    def test_monthly(self):
        """Monthly descriptors keep the day of month."""
        assert cron.from_recurring(utc(2025, 1, 31, 17, 15), cron.MONTHLY) == "15 17 31 * *"

    def test_unknown_frequency_rejected(self):
        """Frequencies other than daily, weekly, monthly raise."""
        with pytest.raises(ConfigurationError):
            cron.from_recurring(utc(2025, 3, 25), "fortnightly")

    def test_non_utc_input_is_converted(self):
        """Aware datetimes in other zones are converted to UTC first."""
        from datetime import timedelta

        sast = timezone(timedelta(hours=2))
        when = datetime(2025, 3, 25, 1, 0, tzinfo=sast)
        assert cron.from_one_time(when) == "0 23 24 3 * 2025"


class TestValidate:
    """Validation and normalization."""

    def test_normalizes_whitespace(self):
        """Extra whitespace is collapsed."""
        assert cron.validate("0  9 * *   *") == "0 9 * * *"

    @pytest.mark.parametrize(
        "descriptor",
        ["", "   ", "not a cron", "61 9 * * *", "0 25 * * *", "0 9 32 * *", "0 9 30 2 * 2025"],
    )
    def test_invalid_descriptors(self, descriptor):
        """Malformed or impossible descriptors raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            cron.validate(descriptor)

    @pytest.mark.parametrize(
        "descriptor", ["*/15 9 * * *", "0 */2 * * *", "0 9,17 * * *", "* * * * *"]
    )
    def test_more_than_once_a_day_rejected(self, descriptor):
        """Jobs are dated by day, so minute and hour must be single values."""
        with pytest.raises(ConfigurationError, match="more than once a day"):
            cron.validate(descriptor)

    def test_hand_authored_cron_accepted(self):
        """Any valid five-field cron expression is accepted."""
        assert cron.validate("0 9 * * 1-5") == "0 9 * * 1-5"

    def test_schedule_type(self):
        """Six-field descriptors are one-time, five-field are recurring."""
        assert cron.schedule_type_of("30 9 25 3 * 2025") == cron.ONE_TIME
        assert cron.schedule_type_of("0 9 25 * *") == cron.RECURRING

    def test_frequency_of(self):
        """Builder shapes map back to their frequency."""
        assert cron.frequency_of("0 9 * * *") == cron.DAILY
        assert cron.frequency_of("0 9 * * 2") == cron.WEEKLY
        assert cron.frequency_of("0 9 25 * *") == cron.MONTHLY
        assert cron.frequency_of("0 9 * * 1-5") is None


class TestNextRun:
    """Next occurrence computation."""

    def test_one_time_in_future(self):
        """A future one-time descriptor returns its instant."""
        assert cron.next_run("30 9 25 3 * 2025", utc(2025, 3, 1)) == utc(2025, 3, 25, 9, 30)

    def test_one_time_in_past(self):
        """A one-time descriptor whose instant has passed has no next run."""
        assert cron.next_run("30 9 25 3 * 2025", utc(2025, 3, 25, 9, 30)) is None
        assert cron.next_run("30 9 25 3 * 2025", utc(2025, 4, 1)) is None

    def test_next_run_is_strictly_after(self):
        """An occurrence exactly at ``after`` is not returned."""
        assert cron.next_run("0 9 * * *", utc(2025, 3, 25, 9, 0)) == utc(2025, 3, 26, 9, 0)

    def test_weekly(self):
        """Weekly descriptors land on the right weekday."""
        # Tuesday 2025-03-25 at 10:00 -> next Tuesday
        assert cron.next_run("0 9 * * 2", utc(2025, 3, 25, 10, 0)) == utc(2025, 4, 1, 9, 0)

    def test_monthly_end_of_month_clamps(self):
        """Day 31 fires on the last day of shorter months."""
        assert cron.next_run("0 9 31 * *", utc(2025, 2, 1)) == utc(2025, 2, 28, 9, 0)
        assert cron.next_run("0 9 31 * *", utc(2024, 2, 1)) == utc(2024, 2, 29, 9, 0)
        assert cron.next_run("0 9 31 * *", utc(2025, 4, 1)) == utc(2025, 4, 30, 9, 0)
        assert cron.next_run("0 9 31 * *", utc(2025, 4, 30, 9, 0)) == utc(2025, 5, 31, 9, 0)

    def test_monthly_rolls_over_year(self):
        """December rolls over into January."""
        assert cron.next_run("0 9 25 * *", utc(2025, 12, 26)) == utc(2026, 1, 25, 9, 0)

    def test_results_are_utc(self):
        """Naive ``after`` values are treated as UTC."""
        result = cron.next_run("0 9 * * *", datetime(2025, 3, 25, 8, 0))
        assert result == utc(2025, 3, 25, 9, 0)
        assert result.tzinfo is not None

    def test_hand_authored(self):
        """Hand-authored expressions are delegated to croniter."""
        # Friday 2025-03-28 at 10:00 -> Monday 2025-03-31 at 09:00
        assert cron.next_run("0 9 * * 1-5", utc(2025, 3, 28, 10, 0)) == utc(2025, 3, 31, 9, 0)


class TestPreviousRun:
    """Latest occurrence at or before an instant."""

    def test_occurrence_itself(self):
        """An instant that is an occurrence is its own previous run."""
        assert cron.previous_run("0 9 * * *", utc(2025, 3, 25, 9, 0)) == utc(2025, 3, 25, 9, 0)

    def test_between_occurrences(self):
        assert cron.previous_run("0 9 * * 5", utc(2025, 3, 25, 12, 0)) == utc(2025, 3, 21, 9, 0)

    def test_monthly_clamps(self):
        """Day 31 resolves to the last day of the previous short month."""
        assert cron.previous_run("0 9 31 * *", utc(2025, 5, 15)) == utc(2025, 4, 30, 9, 0)

    def test_one_time(self):
        assert cron.previous_run("30 9 25 3 * 2025", utc(2025, 3, 24)) is None
        assert cron.previous_run("30 9 25 3 * 2025", utc(2025, 4, 1)) == utc(2025, 3, 25, 9, 30)


class TestBusinessDayRuns:
    """Occurrences moved off weekends and public holidays."""

    def test_weekend_moves_to_monday(self):
        """May 31, 2025 is a Saturday."""
        assert cron.next_run("0 9 31 * *", utc(2025, 5, 1)) == utc(2025, 5, 31, 9, 0)
        assert cron.next_run("0 9 31 * *", utc(2025, 5, 1), business_days=True) == utc(2025, 6, 2, 9, 0)

    def test_easter_weekend_skipped(self):
        """Good Friday and Family Day 2025 push a Friday run to Tuesday."""
        assert cron.next_run("0 9 * * 5", utc(2025, 4, 12), business_days=True) == utc(2025, 4, 22, 9, 0)

    def test_business_day_unchanged(self):
        assert cron.next_run("0 9 25 * *", utc(2025, 3, 1), business_days=True) == utc(2025, 3, 25, 9, 0)

    def test_moved_run_keeps_its_period(self):
        """A run moved into the next month still pays for its nominal month."""
        period = cron.pay_period("0 9 31 * *", utc(2025, 6, 2, 9, 0))
        assert period == cron.PayPeriod(date(2025, 5, 1), date(2025, 5, 31))

    def test_moved_weekly_run_keeps_its_week(self):
        period = cron.pay_period("0 9 * * 5", utc(2025, 4, 22, 9, 0))
        assert period == cron.PayPeriod(date(2025, 4, 12), date(2025, 4, 18))


class TestPayPeriod:
    """Pay period derivation from an occurrence."""

    def test_daily(self):
        """Daily occurrences pay for that day."""
        period = cron.pay_period("0 9 * * *", utc(2025, 3, 25, 9, 0))
        assert period == cron.PayPeriod(date(2025, 3, 25), date(2025, 3, 25))

    def test_weekly(self):
        """Weekly occurrences pay for the seven days ending on the occurrence."""
        period = cron.pay_period("0 9 * * 2", utc(2025, 3, 25, 9, 0))
        assert period == cron.PayPeriod(date(2025, 3, 19), date(2025, 3, 25))

    def test_monthly(self):
        """Monthly occurrences pay for their calendar month."""
        period = cron.pay_period("0 9 25 * *", utc(2025, 2, 25, 9, 0))
        assert period == cron.PayPeriod(date(2025, 2, 1), date(2025, 2, 28))

    def test_one_time_uses_calendar_month(self):
        """One-time payments pay for the month they fall in."""
        period = cron.pay_period("30 9 25 3 * 2025", utc(2025, 3, 25, 9, 30))
        assert period == cron.PayPeriod(date(2025, 3, 1), date(2025, 3, 31))

    def test_hand_authored_runs_from_previous_occurrence(self):
        """Twice-monthly occurrences pay for disjoint spans."""
        first = cron.pay_period("0 9 1,15 * *", utc(2025, 3, 1, 9, 0))
        second = cron.pay_period("0 9 1,15 * *", utc(2025, 3, 15, 9, 0))

        assert first == cron.PayPeriod(date(2025, 2, 16), date(2025, 3, 1))
        assert second == cron.PayPeriod(date(2025, 3, 2), date(2025, 3, 15))

    def test_hand_authored_weekdays(self):
        """Monday's weekday run covers the weekend before it."""
        period = cron.pay_period("0 9 * * 1-5", utc(2025, 3, 31, 9, 0))
        assert period == cron.PayPeriod(date(2025, 3, 29), date(2025, 3, 31))

    def test_overlaps_inclusive(self):
        """Overlap checks include both bounds."""
        period = cron.PayPeriod(date(2025, 3, 1), date(2025, 3, 31))
        assert period.overlaps(date(2025, 3, 31), date(2025, 4, 30))
        assert period.overlaps(date(2025, 2, 1), date(2025, 3, 1))
        assert not period.overlaps(date(2025, 4, 1), date(2025, 4, 30))


class TestDecompose:
    """Best-effort inverse of the builders."""

    def test_one_time(self):
        """One-time descriptors decompose to their instant."""
        result = cron.decompose("30 9 25 3 * 2025")
        assert result == cron.Decomposed(date(2025, 3, 25), time(9, 30), None, cron.ONE_TIME)

    def test_recurring_uses_next_occurrence(self):
        """Recurring descriptors decompose to the next occurrence."""
        result = cron.decompose("0 9 25 * *", reference=utc(2025, 3, 26))
        assert result == cron.Decomposed(date(2025, 4, 25), time(9, 0), cron.MONTHLY, cron.RECURRING)

    def test_round_trip_weekly(self):
        """A built weekly descriptor decomposes back to its weekday and time."""
        descriptor = cron.from_recurring(utc(2025, 3, 25, 7, 45), cron.WEEKLY)
        result = cron.decompose(descriptor, reference=utc(2025, 3, 20))
        assert result is not None
        assert result.date == date(2025, 3, 25)
        assert result.time == time(7, 45)
        assert result.frequency == cron.WEEKLY

    def test_hand_authored_and_invalid_give_none(self):
        """Descriptors no builder produces decompose to None."""
        assert cron.decompose("0 9 * * 1-5") is None
        assert cron.decompose("garbage") is None


class TestMonthlyScenario:
    """A monthly schedule anchored on the first of the month."""

    def test_next_run_and_period(self):
        """The February occurrence pays for February."""
        descriptor = cron.from_recurring(utc(2025, 1, 1, 9, 0), cron.MONTHLY)
        occurrence = cron.next_run(descriptor, utc(2025, 1, 15))

        assert descriptor == "0 9 1 * *"
        assert occurrence == utc(2025, 2, 1, 9, 0)
        assert cron.pay_period(descriptor, occurrence) == cron.PayPeriod(
            date(2025, 2, 1), date(2025, 2, 28)
        )
