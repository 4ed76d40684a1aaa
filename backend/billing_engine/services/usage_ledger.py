"""
Usage ledger.

Records priced consumption events from metering collaborators and
aggregates what has not been billed yet. A record is claimed by at most one
invoice; summaries only ever look at unclaimed records.
"""

import uuid
from datetime import UTC, datetime

import structlog

from billing_engine.models.invoicing import (
    UsageFilters,
    UsageKey,
    UsageRecord,
    UsageRecordCreate,
    UsageSummaryLine,
)
from billing_engine.services.repository import BillingRepository
from billing_engine.services.scheduler import billing_period_label

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageLedger:
    def __init__(self, repository: BillingRepository, now_provider=_utcnow) -> None:
        self.repository = repository
        self.now_provider = now_provider

    async def record(self, tenant_id: str, data: UsageRecordCreate) -> UsageRecord:
        """Persist a usage event, priced and bucketed into its billing period."""
        record = UsageRecord(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            **data.model_dump(),
            total_cost=data.quantity * data.unit_price,
            billing_period=billing_period_label(data.usage_date),
            invoiced=False,
            invoice_id=None,
            created_at=self.now_provider(),
        )
        record = await self.repository.insert_usage_record(record)
        logger.info(
            "usage_recorded",
            tenant_id=tenant_id,
            usage_record_id=record.id,
            client_id=record.client_id,
            resource_type=record.resource_type.value,
            total_cost=record.total_cost,
            billing_period=record.billing_period,
        )
        return record

    async def query(self, tenant_id: str, filters: UsageFilters | None = None) -> list[UsageRecord]:
        return await self.repository.list_usage_records(tenant_id, filters or UsageFilters())

    async def uninvoiced_for_subscription(
        self, tenant_id: str, client_id: str, subscription_id: str, billing_period: str
    ) -> list[UsageRecord]:
        """Records an invoice for this subscription and period may claim."""
        return await self.query(
            tenant_id,
            UsageFilters(
                client_id=client_id,
                subscription_id=subscription_id,
                billing_period=billing_period,
                invoiced=False,
            ),
        )

    async def summarize(
        self, tenant_id: str, client_id: str, billing_period: str
    ) -> list[UsageSummaryLine]:
        """Group a client's uninvoiced usage by (resource_type, resource_id)."""
        records = await self.query(
            tenant_id,
            UsageFilters(client_id=client_id, billing_period=billing_period, invoiced=False),
        )

        lines: dict[UsageKey, UsageSummaryLine] = {}
        for record in records:
            # Guard the exactly-once invariant even if a backend ignores the filter
            if record.invoiced:
                continue
            key = UsageKey(record.resource_type, record.resource_id)
            line = lines.get(key)
            if line is None:
                line = lines[key] = UsageSummaryLine(
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    unit=record.unit,
                )
            line.total_quantity += record.quantity
            line.total_cost += record.total_cost
            line.record_ids.append(record.id)

        return list(lines.values())
