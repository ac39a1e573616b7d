"""
Billing period calculation
Pure functions: the current window is derived from (now, anchor, premium status) only
"""
import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Union

FREE_PERIOD_DAYS = 7


@dataclass(frozen=True)
class BillingPeriod:
    """Inclusive window of whole UTC calendar days"""
    start: date
    end: date
    
    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end
    
    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


def to_utc_date(value: Union[date, datetime]) -> date:
    """Truncate a date or datetime to its UTC calendar date (naive datetimes are taken as UTC)"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def clamped_date(year: int, month: int, day: int) -> date:
    """Build a date, clamping the day to the last valid day of the month"""
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def _shift_month(year: int, month: int, delta: int):
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def free_period(now: Union[date, datetime], anchor: Union[date, datetime]) -> BillingPeriod:
    """
    Rolling 7-day window anchored to the signup date
    
    The start advances in fixed 7-day steps until the window contains now.
    An anchor later than now (clock skew) steps backwards the same way.
    """
    today = to_utc_date(now)
    start = to_utc_date(anchor)
    
    # Floor division jumps whole weeks at once
    weeks = (today - start).days // FREE_PERIOD_DAYS
    start = start + timedelta(days=weeks * FREE_PERIOD_DAYS)
    
    return BillingPeriod(start=start, end=start + timedelta(days=FREE_PERIOD_DAYS - 1))


def premium_period(now: Union[date, datetime], anchor: Union[date, datetime]) -> BillingPeriod:
    """
    Rolling calendar-month window anchored to the day-of-month of premium activation
    
    If the anchor day is missing from a month, that month's anchor is its last day.
    The window ends the day before the following month's anchor; when the anchor day
    does not exist in the following month the window runs through that month's last day.
    """
    today = to_utc_date(now)
    anchor_day = to_utc_date(anchor).day
    
    start = clamped_date(today.year, today.month, anchor_day)
    if start > today:
        year, month = _shift_month(today.year, today.month, -1)
        start = clamped_date(year, month, anchor_day)
    
    next_year, next_month = _shift_month(start.year, start.month, 1)
    days_in_next = calendar.monthrange(next_year, next_month)[1]
    if anchor_day <= days_in_next:
        end = date(next_year, next_month, anchor_day) - timedelta(days=1)
    else:
        end = date(next_year, next_month, days_in_next)
    
    return BillingPeriod(start=start, end=end)


def current_period(
    now: Union[date, datetime],
    anchor: Union[date, datetime],
    is_premium: bool,
) -> BillingPeriod:
    """
    Get the billing period containing now
    
    Args:
        now: Current instant (injected, never read from a clock here)
        anchor: Signup date for free users, premium activation for premium users
        is_premium: Selects the monthly (premium) or weekly (free) rule
    
    Returns:
        BillingPeriod with start <= now <= end
    """
    if is_premium:
        return premium_period(now, anchor)
    return free_period(now, anchor)
