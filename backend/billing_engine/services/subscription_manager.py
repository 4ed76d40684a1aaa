"""Subscription lifecycle: create, update, cancel and period rollover."""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime

import structlog

from billing_engine.exceptions import BillingValidationError, SubscriptionNotFoundError
from billing_engine.models.billing import (
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
    SubscriptionUpdate,
    as_utc,
)
from billing_engine.services.catalog import BillingCatalog
from billing_engine.services.repository import BillingRepository
from billing_engine.services.scheduler import compute_next_billing_date

logger = structlog.get_logger(__name__)

# Fields a partial update may explicitly clear
_NULLABLE_FIELDS = frozenset({"description", "end_date"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionManager:
    """
    Manages tenant subscriptions.

    States are ACTIVE and CANCELLED; CANCELLED is terminal and only cancel()
    reaches it. Billing periods are always seeded by the scheduler, so
    ``current_period_end == next_billing_date`` holds after every write.
    """

    def __init__(
        self,
        repository: BillingRepository,
        catalog: BillingCatalog,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.now_provider = now_provider
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, tenant_id: str, data: SubscriptionCreate) -> Subscription:
        """
        Create a subscription whose first period starts at ``data.start_date``.

        Raises:
            BillingCycleNotFoundError: Cycle does not exist for the tenant.
            PlanNotFoundError: Plan does not exist for the tenant.
        """
        cycle = await self.catalog.get_billing_cycle(tenant_id, data.billing_cycle_id)
        await self.catalog.get_plan(tenant_id, data.plan_id)

        next_billing_date = compute_next_billing_date(data.start_date, cycle)
        now = self.now_provider()
        subscription = Subscription(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            **data.model_dump(),
            status=SubscriptionStatus.ACTIVE,
            current_period_start=data.start_date,
            current_period_end=next_billing_date,
            next_billing_date=next_billing_date,
            created_at=now,
            updated_at=now,
        )
        subscription = await self.repository.save_subscription(subscription)
        logger.info(
            "subscription_created",
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            client_id=subscription.client_id,
            next_billing_date=subscription.next_billing_date.isoformat(),
        )
        return subscription

    async def get(self, tenant_id: str, subscription_id: str) -> Subscription:
        subscription = await self.repository.get_subscription(tenant_id, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        return subscription

    async def get_subscriptions(
        self,
        tenant_id: str,
        *,
        client_id: str | None = None,
        status: SubscriptionStatus | None = None,
    ) -> list[Subscription]:
        return await self.repository.list_subscriptions(
            tenant_id, client_id=client_id, status=status
        )

    async def update(
        self, tenant_id: str, subscription_id: str, patch: SubscriptionUpdate
    ) -> Subscription:
        async with self._locks[subscription_id]:
            subscription = await self.get(tenant_id, subscription_id)
            changes = {
                key: value
                for key, value in patch.model_dump(exclude_unset=True).items()
                if value is not None or key in _NULLABLE_FIELDS
            }
            end_date = changes.get("end_date")
            if end_date is not None and end_date < subscription.start_date:
                raise BillingValidationError("end_date must not precede start_date")

            updated = subscription.model_copy(update=changes)
            updated.updated_at = self.now_provider()
            return await self.repository.save_subscription(updated)

    async def cancel(
        self, tenant_id: str, subscription_id: str, end_date: datetime | None = None
    ) -> Subscription:
        """Cancel a subscription. Cancelling twice returns the stored state."""
        async with self._locks[subscription_id]:
            subscription = await self.get(tenant_id, subscription_id)
            if subscription.status == SubscriptionStatus.CANCELLED:
                return subscription
            return await self._cancel(subscription, as_utc(end_date or self.now_provider()))

    async def _cancel(self, subscription: Subscription, end_date: datetime) -> Subscription:
        if end_date < subscription.start_date:
            raise BillingValidationError("end_date must not precede start_date")

        subscription.status = SubscriptionStatus.CANCELLED
        subscription.end_date = end_date
        subscription.auto_renew = False
        subscription.updated_at = self.now_provider()
        subscription = await self.repository.save_subscription(subscription)
        logger.info(
            "subscription_cancelled",
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            end_date=end_date.isoformat(),
        )
        return subscription

    async def rollover(self, tenant_id: str, subscription_id: str) -> Subscription:
        """
        Advance an ACTIVE subscription to its next billing period.

        A subscription that will not renew (auto_renew off, or the next period
        would start at/after end_date) is cancelled at the end of its current
        period instead. Cancelled subscriptions are returned unchanged.
        """
        async with self._locks[subscription_id]:
            subscription = await self.get(tenant_id, subscription_id)
            if subscription.status == SubscriptionStatus.CANCELLED:
                return subscription

            period_start = subscription.current_period_end
            if subscription.end_date is not None and period_start >= subscription.end_date:
                return await self._cancel(subscription, subscription.end_date)
            if not subscription.auto_renew:
                return await self._cancel(subscription, period_start)

            cycle = await self.catalog.get_billing_cycle(tenant_id, subscription.billing_cycle_id)
            next_billing_date = compute_next_billing_date(period_start, cycle)
            now = self.now_provider()
            subscription.current_period_start = period_start
            subscription.current_period_end = next_billing_date
            subscription.next_billing_date = next_billing_date
            subscription.last_billing_date = now
            subscription.updated_at = now
            subscription = await self.repository.save_subscription(subscription)
            logger.info(
                "subscription_rolled_over",
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                current_period_start=period_start.isoformat(),
                next_billing_date=next_billing_date.isoformat(),
            )
            return subscription
