"""Billing cycles and plans a tenant sells subscriptions from."""

import uuid
from datetime import UTC, datetime

import structlog

from billing_engine.exceptions import BillingCycleNotFoundError, PlanNotFoundError
from billing_engine.models.billing import (
    BillingCycleConfig,
    BillingCycleCreate,
    BillingCycleUpdate,
    Plan,
    PlanCreate,
)
from billing_engine.services.repository import BillingRepository
from billing_engine.services.scheduler import validate_anchor

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BillingCatalog:
    def __init__(self, repository: BillingRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    async def create_billing_cycle(
        self, tenant_id: str, data: BillingCycleCreate
    ) -> BillingCycleConfig:
        validate_anchor(data.cadence, data.day_of_month, data.day_of_week)
        now = self.now_provider()
        cycle = BillingCycleConfig(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            **data.model_dump(),
            created_at=now,
            updated_at=now,
        )
        cycle = await self.repository.save_billing_cycle(cycle)
        logger.info(
            "billing_cycle_created",
            tenant_id=tenant_id,
            billing_cycle_id=cycle.id,
            cadence=cycle.cadence.value,
        )
        return cycle

    async def get_billing_cycles(self, tenant_id: str) -> list[BillingCycleConfig]:
        return await self.repository.list_billing_cycles(tenant_id, active_only=True)

    async def get_billing_cycle(self, tenant_id: str, cycle_id: str) -> BillingCycleConfig:
        cycle = await self.repository.get_billing_cycle(tenant_id, cycle_id)
        if cycle is None:
            raise BillingCycleNotFoundError(cycle_id)
        return cycle

    async def update_billing_cycle(
        self, tenant_id: str, cycle_id: str, patch: BillingCycleUpdate
    ) -> BillingCycleConfig:
        cycle = await self.get_billing_cycle(tenant_id, cycle_id)
        changes = {
            key: value
            for key, value in patch.model_dump(exclude_unset=True).items()
            if value is not None or key in ("description", "day_of_month", "day_of_week")
        }

        # Switching cadence category drops the anchor that no longer applies
        # unless the caller supplied one explicitly.
        if "cadence" in changes and changes["cadence"] != cycle.cadence:
            changes.setdefault("day_of_month", None)
            changes.setdefault("day_of_week", None)

        updated = cycle.model_copy(update=changes)
        validate_anchor(updated.cadence, updated.day_of_month, updated.day_of_week)
        updated.updated_at = self.now_provider()
        return await self.repository.save_billing_cycle(updated)

    async def create_plan(self, tenant_id: str, data: PlanCreate) -> Plan:
        plan = Plan(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            **data.model_dump(),
            created_at=self.now_provider(),
        )
        plan = await self.repository.save_plan(plan)
        logger.info("plan_created", tenant_id=tenant_id, plan_id=plan.id, price=plan.price)
        return plan

    async def get_plans(self, tenant_id: str) -> list[Plan]:
        return await self.repository.list_plans(tenant_id)

    async def get_plan(self, tenant_id: str, plan_id: str) -> Plan:
        plan = await self.repository.get_plan(tenant_id, plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan
