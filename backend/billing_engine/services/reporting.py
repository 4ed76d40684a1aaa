"""Financial rollups: revenue, MRR, churn and ARPU for a reporting window."""

from collections import Counter
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

import structlog

from billing_engine.constants import MONEY_QUANTUM, ZERO
from billing_engine.exceptions import BillingValidationError
from billing_engine.models.billing import Cadence, SubscriptionStatus, as_utc
from billing_engine.models.invoicing import (
    BillingReport,
    InvoiceStatus,
    PaymentStatus,
)
from billing_engine.services.repository import BillingRepository

logger = structlog.get_logger(__name__)


def compute_churn_rate(previous_revenue: Decimal, current_revenue: Decimal) -> float:
    """Percentage revenue decline versus the previous window; never negative."""
    if previous_revenue <= 0:
        return 0.0
    decline = (previous_revenue - current_revenue) / previous_revenue * 100
    return max(0.0, float(decline))


class ReportingEngine:
    def __init__(self, repository: BillingRepository) -> None:
        self.repository = repository

    async def _completed_revenue(
        self, tenant_id: str, since: datetime, until: datetime, *, include_until: bool = True
    ) -> Decimal:
        payments = await self.repository.list_payments(
            tenant_id, status=PaymentStatus.COMPLETED, since=since, until=until
        )
        return sum(
            (p.amount for p in payments if include_until or p.processed_at < until),
            ZERO,
        )

    async def get_billing_report(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> BillingReport:
        """
        Build the billing report for [start, end].

        Churn compares against the window of equal length ending at ``start``
        (exclusive).

        Raises:
            BillingValidationError: If start is after end.
        """
        start, end = as_utc(start), as_utc(end)
        if start > end:
            raise BillingValidationError("Report start must not be after end")

        current_revenue = await self._completed_revenue(tenant_id, start, end)
        previous_revenue = await self._completed_revenue(
            tenant_id, start - (end - start), start, include_until=False
        )

        subscriptions = await self.repository.list_subscriptions(tenant_id)
        by_status = Counter(sub.status.value for sub in subscriptions)
        active = [sub for sub in subscriptions if sub.status == SubscriptionStatus.ACTIVE]

        # Plan price over ACTIVE subscriptions on a monthly cycle
        plans = {plan.id: plan for plan in await self.repository.list_plans(tenant_id)}
        monthly_cycles = {
            cycle.id
            for cycle in await self.repository.list_billing_cycles(tenant_id, active_only=False)
            if cycle.cadence == Cadence.MONTHLY
        }
        mrr = sum(
            (
                plans[sub.plan_id].price
                for sub in active
                if sub.billing_cycle_id in monthly_cycles and sub.plan_id in plans
            ),
            ZERO,
        )

        overdue = await self.repository.list_invoices(tenant_id, status=InvoiceStatus.OVERDUE)
        unpaid_amount = sum((invoice.total for invoice in overdue), ZERO)

        arpu = ZERO
        if active:
            arpu = (current_revenue / len(active)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)

        report = BillingReport(
            total_revenue=current_revenue,
            total_subscriptions=len(subscriptions),
            active_subscriptions=len(active),
            subscriptions_by_status=dict(by_status),
            overdue_invoices=len(overdue),
            unpaid_amount=unpaid_amount,
            monthly_recurring_revenue=mrr,
            churn_rate=compute_churn_rate(previous_revenue, current_revenue),
            average_revenue_per_user=arpu,
        )
        logger.info(
            "billing_report_built",
            tenant_id=tenant_id,
            start=start.isoformat(),
            end=end.isoformat(),
            total_revenue=report.total_revenue,
            churn_rate=report.churn_rate,
        )
        return report
