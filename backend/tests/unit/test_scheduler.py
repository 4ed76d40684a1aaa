"""Unit tests for billing cycle date arithmetic."""

from datetime import UTC, datetime, timedelta

import pytest

from billing_engine.exceptions import BillingValidationError, ConfigurationError
from billing_engine.models.billing import BillingCycleConfig, Cadence
from billing_engine.services.scheduler import (
    add_months,
    billing_period_label,
    compute_next_billing_date,
    validate_anchor,
)


def _cycle(cadence: Cadence, **kwargs) -> BillingCycleConfig:
    return BillingCycleConfig(id="cycle-1", tenant_id="tenant-a", name="c", cadence=cadence, **kwargs)


class TestComputeNextBillingDate:
    def test_daily_adds_one_day(self):
        start = datetime(2026, 3, 31, 10, 30, tzinfo=UTC)
        assert compute_next_billing_date(start, _cycle(Cadence.DAILY)) == datetime(
            2026, 4, 1, 10, 30, tzinfo=UTC
        )

    def test_weekly_adds_seven_days(self):
        start = datetime(2026, 12, 28, tzinfo=UTC)
        cycle = _cycle(Cadence.WEEKLY, day_of_week=1)
        assert compute_next_billing_date(start, cycle) == datetime(2027, 1, 4, tzinfo=UTC)

    def test_monthly_day_31_clamps_to_end_of_february(self):
        cycle = _cycle(Cadence.MONTHLY, day_of_month=31)
        assert compute_next_billing_date(datetime(2026, 1, 31, tzinfo=UTC), cycle) == datetime(
            2026, 2, 28, tzinfo=UTC
        )

    def test_monthly_day_31_clamps_to_leap_day(self):
        cycle = _cycle(Cadence.MONTHLY, day_of_month=31)
        assert compute_next_billing_date(datetime(2024, 1, 31, tzinfo=UTC), cycle) == datetime(
            2024, 2, 29, tzinfo=UTC
        )

    def test_monthly_anchor_recovers_after_short_month(self):
        cycle = _cycle(Cadence.MONTHLY, day_of_month=31)
        assert compute_next_billing_date(datetime(2026, 2, 28, tzinfo=UTC), cycle) == datetime(
            2026, 3, 31, tzinfo=UTC
        )

    def test_monthly_without_anchor_keeps_day_and_clamps(self):
        cycle = _cycle(Cadence.MONTHLY)
        assert compute_next_billing_date(datetime(2026, 1, 15, tzinfo=UTC), cycle) == datetime(
            2026, 2, 15, tzinfo=UTC
        )
        assert compute_next_billing_date(datetime(2026, 3, 31, tzinfo=UTC), cycle) == datetime(
            2026, 4, 30, tzinfo=UTC
        )

    def test_monthly_anchor_moves_to_configured_day(self):
        cycle = _cycle(Cadence.MONTHLY, day_of_month=1)
        assert compute_next_billing_date(datetime(2026, 1, 20, tzinfo=UTC), cycle) == datetime(
            2026, 2, 1, tzinfo=UTC
        )

    def test_quarterly_crosses_year_and_clamps(self):
        cycle = _cycle(Cadence.QUARTERLY, day_of_month=31)
        assert compute_next_billing_date(datetime(2025, 11, 30, tzinfo=UTC), cycle) == datetime(
            2026, 2, 28, tzinfo=UTC
        )

    def test_yearly_from_leap_day(self):
        cycle = _cycle(Cadence.YEARLY)
        assert compute_next_billing_date(datetime(2024, 2, 29, tzinfo=UTC), cycle) == datetime(
            2025, 2, 28, tzinfo=UTC
        )

    def test_unknown_cadence_raises_configuration_error(self):
        cycle = BillingCycleConfig.model_construct(
            id="cycle-x", tenant_id="tenant-a", name="broken", cadence="hourly", day_of_month=None
        )
        with pytest.raises(ConfigurationError):
            compute_next_billing_date(datetime(2026, 1, 1, tzinfo=UTC), cycle)

    @pytest.mark.parametrize("cadence", list(Cadence))
    def test_next_date_is_always_after_from_date(self, cadence: Cadence):
        anchors = [None] if cadence not in (Cadence.MONTHLY, Cadence.QUARTERLY, Cadence.YEARLY) else [
            None, 1, 15, 28, 29, 30, 31
        ]
        start = datetime(2024, 1, 1, 23, 59, tzinfo=UTC)
        for anchor in anchors:
            cycle = _cycle(cadence, day_of_month=anchor)
            for offset in range(366):
                day = start + timedelta(days=offset)
                assert compute_next_billing_date(day, cycle) > day


class TestAddMonths:
    def test_keeps_time_of_day(self):
        value = datetime(2026, 5, 31, 17, 45, tzinfo=UTC)
        assert add_months(value, 1) == datetime(2026, 6, 30, 17, 45, tzinfo=UTC)

    def test_twelve_months_is_next_year(self):
        assert add_months(datetime(2026, 12, 1, tzinfo=UTC), 12) == datetime(2027, 12, 1, tzinfo=UTC)


class TestBillingPeriodLabel:
    def test_calendar_month_label(self):
        assert billing_period_label(datetime(2026, 3, 5, tzinfo=UTC)) == "2026-03"

    def test_pads_year_and_month(self):
        assert billing_period_label(datetime(987, 1, 1)) == "0987-01"


class TestValidateAnchor:
    def test_monthly_accepts_day_of_month(self):
        validate_anchor(Cadence.MONTHLY, 15, None)

    def test_weekly_accepts_day_of_week(self):
        validate_anchor(Cadence.WEEKLY, None, 3)

    def test_monthly_rejects_day_of_week(self):
        with pytest.raises(BillingValidationError):
            validate_anchor(Cadence.MONTHLY, None, 2)

    def test_weekly_rejects_day_of_month(self):
        with pytest.raises(BillingValidationError):
            validate_anchor(Cadence.WEEKLY, 10, None)

    def test_daily_rejects_any_anchor(self):
        with pytest.raises(BillingValidationError):
            validate_anchor(Cadence.DAILY, None, 0)
