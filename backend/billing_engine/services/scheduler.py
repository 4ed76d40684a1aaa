"""Billing cycle date arithmetic.

Pure functions only: safe to call from any task or thread.
"""

from calendar import monthrange
from datetime import date, datetime, timedelta

from billing_engine.constants import BILLING_PERIOD_FORMAT
from billing_engine.exceptions import BillingValidationError, ConfigurationError
from billing_engine.models.billing import (
    MONTH_ANCHORED_CADENCES,
    BillingCycleConfig,
    Cadence,
)

_MONTHS_PER_CADENCE = {
    Cadence.MONTHLY: 1,
    Cadence.QUARTERLY: 3,
    Cadence.YEARLY: 12,
}


def add_months(value: datetime, months: int, day_of_month: int | None = None) -> datetime:
    """Shift ``value`` by whole months, keeping the time of day.

    The target day is ``day_of_month`` when given, else the day of ``value``;
    it is clamped to the last day of the target month (31 -> Feb 28/29).
    """
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    wanted_day = day_of_month or value.day
    day = min(wanted_day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_next_billing_date(from_date: datetime, cycle: BillingCycleConfig) -> datetime:
    """Return the billing date that follows ``from_date`` for ``cycle``.

    Raises:
        ConfigurationError: If the cycle's cadence is not schedulable.
    """
    cadence = cycle.cadence
    if cadence == Cadence.DAILY:
        return from_date + timedelta(days=1)
    if cadence == Cadence.WEEKLY:
        return from_date + timedelta(days=7)
    months = _MONTHS_PER_CADENCE.get(cadence)
    if months is None:
        raise ConfigurationError(
            f"Unknown billing cadence: {cadence!r}",
            details={"billing_cycle_id": cycle.id},
        )
    return add_months(from_date, months, cycle.day_of_month)


def billing_period_label(value: date | datetime) -> str:
    """Calendar-month bucket that usage and invoices are attributed to."""
    return BILLING_PERIOD_FORMAT.format(year=value.year, month=value.month)


def validate_anchor(
    cadence: Cadence, day_of_month: int | None, day_of_week: int | None
) -> None:
    """Check that only the anchor field meaningful for ``cadence`` is set."""
    if cadence in MONTH_ANCHORED_CADENCES:
        if day_of_week is not None:
            raise BillingValidationError(
                f"{cadence.value} cycles are anchored by day_of_month, not day_of_week"
            )
    elif cadence == Cadence.WEEKLY:
        if day_of_month is not None:
            raise BillingValidationError(
                "weekly cycles are anchored by day_of_week, not day_of_month"
            )
    elif day_of_month is not None or day_of_week is not None:
        raise BillingValidationError(f"{cadence.value} cycles take no anchor")
