"""Tests for billing cycle date arithmetic."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from vendzz.billing import calculator
from vendzz.billing.models import Recurrence

pytestmark = pytest.mark.unit


class TestComputeTrial:
    def test_trial_window(self):
        now = datetime(2025, 1, 15, 10, 30, tzinfo=UTC)

        window = calculator.compute_trial(now, 7)

        assert window.trial_start == now
        assert window.trial_end == datetime(2025, 1, 22, 10, 30, tzinfo=UTC)

    def test_zero_day_trial_ends_immediately(self):
        now = datetime(2025, 1, 15, tzinfo=UTC)

        window = calculator.compute_trial(now, 0)

        assert window.trial_end == window.trial_start

    def test_negative_trial_rejected(self):
        with pytest.raises(ValueError):
            calculator.compute_trial(datetime(2025, 1, 15, tzinfo=UTC), -1)


class TestAdvance:
    @pytest.mark.parametrize(
        ("unit", "expected"),
        [
            (Recurrence.DAILY, datetime(2025, 1, 16, 8, tzinfo=UTC)),
            (Recurrence.WEEKLY, datetime(2025, 1, 22, 8, tzinfo=UTC)),
            (Recurrence.MONTHLY, datetime(2025, 2, 15, 8, tzinfo=UTC)),
            (Recurrence.YEARLY, datetime(2026, 1, 15, 8, tzinfo=UTC)),
        ],
    )
    def test_one_cycle(self, unit, expected):
        assert calculator.advance(datetime(2025, 1, 15, 8, tzinfo=UTC), unit) == expected

    def test_month_end_clamps_and_stays_clamped(self):
        """Jan 31 -> Feb 28 -> Mar 28 under repeated monthly advance."""
        jan = datetime(2025, 1, 31, tzinfo=UTC)

        feb = calculator.advance(jan, Recurrence.MONTHLY)
        mar = calculator.advance(feb, Recurrence.MONTHLY)

        assert feb == datetime(2025, 2, 28, tzinfo=UTC)
        assert mar == datetime(2025, 3, 28, tzinfo=UTC)

    def test_month_end_in_leap_year(self):
        feb = calculator.advance(datetime(2024, 1, 31, tzinfo=UTC), Recurrence.MONTHLY)
        assert feb == datetime(2024, 2, 29, tzinfo=UTC)

    def test_leap_day_yearly(self):
        result = calculator.advance(datetime(2024, 2, 29, tzinfo=UTC), Recurrence.YEARLY)
        assert result == datetime(2025, 2, 28, tzinfo=UTC)

    def test_december_rolls_over_year(self):
        result = calculator.advance(datetime(2025, 12, 31, tzinfo=UTC), Recurrence.MONTHLY)
        assert result == datetime(2026, 1, 31, tzinfo=UTC)

    def test_preserves_time_and_tzinfo(self):
        tz = timezone(timedelta(hours=-3))
        start = datetime(2025, 3, 10, 23, 59, 59, tzinfo=tz)

        result = calculator.advance(start, Recurrence.MONTHLY)

        assert result == datetime(2025, 4, 10, 23, 59, 59, tzinfo=tz)
        assert result.tzinfo is tz

    def test_one_time_recurrence_has_no_cycle(self):
        with pytest.raises(ValueError):
            calculator.advance(datetime(2025, 1, 15, tzinfo=UTC), Recurrence.NONE)

    @pytest.mark.parametrize("unit", [r for r in Recurrence if r != Recurrence.NONE])
    def test_strictly_increasing(self, unit):
        current = datetime(2024, 1, 31, tzinfo=UTC)
        for _ in range(30):
            following = calculator.advance(current, unit)
            assert following > current
            current = following


def test_first_billing_date_is_one_cycle_after_trial():
    trial_end = datetime(2025, 1, 22, tzinfo=UTC)

    assert calculator.first_billing_date(trial_end, Recurrence.MONTHLY) == datetime(
        2025, 2, 22, tzinfo=UTC
    )
