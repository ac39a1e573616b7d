"""
Tests for billing period calculation
"""
import pytest
from datetime import date, datetime, timedelta, timezone

from brainai_bot.services.period_calculator import (
    BillingPeriod,
    clamped_date,
    current_period,
    free_period,
    premium_period,
    to_utc_date,
)


class TestHelpers:
    """Test date helpers"""

    def test_clamped_date_in_short_month(self):
        assert clamped_date(2023, 2, 31) == date(2023, 2, 28)
        assert clamped_date(2024, 2, 31) == date(2024, 2, 29)
        assert clamped_date(2024, 4, 31) == date(2024, 4, 30)

    def test_clamped_date_valid_day_unchanged(self):
        assert clamped_date(2024, 1, 15) == date(2024, 1, 15)

    def test_to_utc_date_converts_aware_datetime(self):
        # 23:30 at UTC-5 is already the next day in UTC
        value = datetime(2024, 1, 3, 23, 30, tzinfo=timezone(timedelta(hours=-5)))
        assert to_utc_date(value) == date(2024, 1, 4)

    def test_to_utc_date_naive_taken_as_utc(self):
        assert to_utc_date(datetime(2024, 1, 3, 23, 59)) == date(2024, 1, 3)

    def test_billing_period_contains_and_days(self):
        period = BillingPeriod(date(2024, 1, 3), date(2024, 1, 9))
        assert period.contains(date(2024, 1, 3))
        assert period.contains(date(2024, 1, 9))
        assert not period.contains(date(2024, 1, 10))
        assert period.days == 7


class TestFreePeriod:
    """Test rolling 7-day free windows"""

    def test_first_week_after_signup(self):
        """Signup on a Wednesday, two days later"""
        period = free_period(datetime(2024, 1, 5, 8, 0), date(2024, 1, 3))
        assert period == BillingPeriod(date(2024, 1, 3), date(2024, 1, 9))

    def test_second_week_starts_on_day_eight(self):
        period = free_period(datetime(2024, 1, 10, 0, 0), date(2024, 1, 3))
        assert period == BillingPeriod(date(2024, 1, 10), date(2024, 1, 16))

    def test_last_day_of_window(self):
        period = free_period(datetime(2024, 1, 9, 23, 59), date(2024, 1, 3))
        assert period.end == date(2024, 1, 9)

    def test_many_weeks_later(self):
        period = free_period(date(2024, 6, 1), date(2024, 1, 3))
        assert period.start.weekday() == date(2024, 1, 3).weekday()
        assert period.contains(date(2024, 6, 1))

    def test_window_is_always_seven_days(self):
        anchor = date(2023, 12, 29)
        for offset in range(0, 120):
            today = anchor + timedelta(days=offset)
            period = free_period(today, anchor)
            assert (period.end - period.start).days == 6
            assert period.start <= today <= period.end

    def test_anchor_in_future_still_contains_now(self):
        period = free_period(date(2024, 1, 1), date(2024, 1, 10))
        assert period.contains(date(2024, 1, 1))
        assert period.days == 7

    def test_datetime_anchor_truncated(self):
        period = free_period(datetime(2024, 1, 5), datetime(2024, 1, 3, 22, 45))
        assert period.start == date(2024, 1, 3)


class TestPremiumPeriod:
    """Test monthly premium windows"""

    def test_anchor_31_in_february(self):
        """Activation on Jan 31, checked mid-February of a leap year"""
        period = premium_period(datetime(2024, 2, 15), datetime(2024, 1, 31, 10, 0))
        assert period == BillingPeriod(date(2024, 1, 31), date(2024, 2, 29))

    def test_clamped_anchor_starts_on_last_day_of_february(self):
        period = premium_period(date(2024, 3, 1), datetime(2024, 1, 31, 10, 0))
        assert period.start == date(2024, 2, 29)
        assert period.end == date(2024, 3, 30)

    def test_clamped_anchor_in_thirty_day_month(self):
        period = premium_period(date(2024, 4, 30), date(2024, 1, 31))
        assert period.start == date(2024, 4, 30)
        assert period.end == date(2024, 5, 30)

    def test_anchor_day_not_yet_reached_uses_previous_month(self):
        period = premium_period(date(2024, 3, 10), date(2024, 1, 15))
        assert period == BillingPeriod(date(2024, 2, 15), date(2024, 3, 14))

    def test_anchor_day_reached(self):
        period = premium_period(date(2024, 3, 15), date(2024, 1, 15))
        assert period == BillingPeriod(date(2024, 3, 15), date(2024, 4, 14))

    def test_year_boundary(self):
        period = premium_period(date(2024, 1, 10), date(2023, 6, 15))
        assert period == BillingPeriod(date(2023, 12, 15), date(2024, 1, 14))

    def test_now_always_inside_window(self):
        for anchor_day in (1, 15, 28, 29, 30, 31):
            anchor = clamped_date(2023, 1, anchor_day)
            today = date(2023, 1, 1)
            while today < date(2025, 1, 1):
                period = premium_period(today, anchor)
                assert period.start <= today <= period.end, (anchor, today, period)
                today += timedelta(days=1)


class TestCurrentPeriod:
    """Test tier dispatch and determinism"""

    def test_dispatches_on_premium_flag(self):
        now = datetime(2024, 2, 15)
        anchor = datetime(2024, 1, 31)
        assert current_period(now, anchor, True) == premium_period(now, anchor)
        assert current_period(now, anchor, False) == free_period(now, anchor)

    @pytest.mark.parametrize("is_premium", [True, False])
    def test_same_inputs_same_output(self, is_premium):
        now = datetime(2024, 5, 17, 13, 0)
        anchor = datetime(2024, 2, 29, 9, 0)
        first = current_period(now, anchor, is_premium)
        second = current_period(now, anchor, is_premium)
        assert first == second
        assert first.contains(now.date())
