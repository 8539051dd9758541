"""
Billing cycle calculator.

Pure date arithmetic for trial windows and billing cycles. Results depend
only on the inputs, never on the wall clock.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta

from vendzz.billing.models import Recurrence


@dataclass(frozen=True)
class TrialWindow:
    trial_start: datetime
    trial_end: datetime


def compute_trial(now: datetime, trial_days: int) -> TrialWindow:
    """
    Compute the trial window starting at ``now``.

    A zero-day trial yields ``trial_end == trial_start``, i.e. the
    subscription is billable immediately.
    """
    if trial_days < 0:
        raise ValueError(f"trial_days must be >= 0, got {trial_days}")
    return TrialWindow(trial_start=now, trial_end=now + timedelta(days=trial_days))


def _add_months(date: datetime, months: int) -> datetime:
    # Keep the day of month, clamped to the target month's last day.
    month_index = date.month - 1 + months
    year = date.year + month_index // 12
    month = month_index % 12 + 1
    day = min(date.day, calendar.monthrange(year, month)[1])
    return date.replace(year=year, month=month, day=day)


def advance(date: datetime, unit: Recurrence) -> datetime:
    """
    Advance ``date`` by one billing cycle.

    - daily: +1 day
    - weekly: +7 days
    - monthly: +1 calendar month, clamped to the last day of a shorter month
      (Jan 31 -> Feb 28/29 -> Mar 28/29)
    - yearly: +1 calendar year (Feb 29 -> Feb 28 on non-leap years)

    Time of day and tzinfo are preserved.
    """
    if unit == Recurrence.DAILY:
        return date + timedelta(days=1)
    if unit == Recurrence.WEEKLY:
        return date + timedelta(days=7)
    if unit == Recurrence.MONTHLY:
        return _add_months(date, 1)
    if unit == Recurrence.YEARLY:
        return _add_months(date, 12)
    raise ValueError(f"Recurrence {unit!r} has no billing cycle")


def first_billing_date(trial_end: datetime, unit: Recurrence) -> datetime:
    """First recurring charge falls one full cycle after the trial ends."""
    return advance(trial_end, unit)
