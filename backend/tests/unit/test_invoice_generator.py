"""Unit tests for invoice generation and exactly-once usage billing."""

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from billing_engine.config import BillingConfig
from billing_engine.dependencies import build_services
from billing_engine.exceptions import (
    BillingValidationError,
    ConflictError,
    SubscriptionNotFoundError,
    TransientInfrastructureError,
)
from billing_engine.models.billing import (
    BillingCycleCreate,
    BillingSettingsUpdate,
    Cadence,
    PlanCreate,
    Principal,
    PrincipalKind,
    Subscription,
    SubscriptionCreate,
)
from billing_engine.models.invoicing import (
    InvoiceGenerationOptions,
    InvoiceStatus,
    UsageFilters,
    UsageRecord,
    UsageRecordCreate,
    UsageResourceType,
)
from billing_engine.services.invoice_generator import compute_tax, format_invoice_number
from billing_engine.services.repository import InMemoryBillingRepository

TENANT = "tenant-a"
WITH_USAGE = InvoiceGenerationOptions(include_usage=True)


class RacingRepository(InMemoryBillingRepository):
    """Lets another invoice claim the usage between the read and the write."""

    async def create_invoice_with_usage(self, invoice, usage_record_ids):
        for record_id in usage_record_ids:
            self.usage_records[record_id] = self.usage_records[record_id].model_copy(
                update={"invoiced": True, "invoice_id": "inv-concurrent"}
            )
        return await super().create_invoice_with_usage(invoice, usage_record_ids)


class FlakyRepository(InMemoryBillingRepository):
    """Fails the invoice write a fixed number of times before succeeding."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def create_invoice_with_usage(self, invoice, usage_record_ids):
        self.attempts += 1
        if self.attempts <= self.failures:
            raise TransientInfrastructureError("connection reset")
        return await super().create_invoice_with_usage(invoice, usage_record_ids)


async def _record_usage(services, subscription, **overrides) -> UsageRecord:
    data = {
        "client_id": subscription.client_id,
        "subscription_id": subscription.id,
        "resource_type": UsageResourceType.SPACE_BOOKING,
        "resource_id": "meeting-room",
        "quantity": Decimal("3"),
        "unit": "hour",
        "unit_price": Decimal("10"),
        "usage_date": datetime(2026, 1, 12, tzinfo=UTC),
    }
    data.update(overrides)
    return await services.ledger.record(TENANT, UsageRecordCreate(**data))


async def _set_tax(services, rate: str) -> None:
    await services.settings_store.update(TENANT, BillingSettingsUpdate(tax_rate=Decimal(rate)))


async def _seed_subscription(services, tenant_id: str) -> Subscription:
    cycle = await services.catalog.create_billing_cycle(
        tenant_id, BillingCycleCreate(name="Monthly", cadence=Cadence.MONTHLY)
    )
    plan = await services.catalog.create_plan(tenant_id, PlanCreate(name="Hot desk", price=Decimal("50")))
    return await services.subscriptions.create(
        tenant_id,
        SubscriptionCreate(
            client_id="client-1",
            plan_id=plan.id,
            billing_cycle_id=cycle.id,
            name="Hot desk membership",
            start_date=datetime(2026, 1, 1, tzinfo=UTC),
        ),
    )


class TestInvoiceTotals:
    async def test_plan_plus_usage_with_tax(self, services, subscription):
        await _set_tax(services, "0.1")
        await _record_usage(services, subscription)

        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        assert invoice.subtotal == Decimal("80")
        assert invoice.tax == Decimal("8")
        assert invoice.total == Decimal("88")

    async def test_items_sum_to_subtotal(self, services, subscription):
        await _set_tax(services, "0.21")
        await _record_usage(services, subscription)
        await _record_usage(services, subscription, quantity=Decimal("1.5"), unit_price=Decimal("7.33"))

        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        assert sum(item.total for item in invoice.items) == invoice.subtotal
        assert invoice.total == invoice.subtotal + invoice.tax
        assert abs(invoice.subtotal * Decimal("1.21") - invoice.total) < Decimal("0.01")

    async def test_line_items_describe_plan_and_usage(self, services, subscription, desk_plan):
        usage = await _record_usage(services, subscription)

        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        plan_line, usage_line = invoice.items
        assert plan_line.description == f"{desk_plan.name} - 2026-01"
        assert plan_line.quantity == Decimal("1")
        assert plan_line.usage_record_id is None
        assert usage_line.description == "space_booking - hour"
        assert usage_line.usage_record_id == usage.id
        assert invoice.title == f"{subscription.name} - 2026-01"

    async def test_without_usage_bills_plan_only(self, services, subscription):
        usage = await _record_usage(services, subscription)

        invoice = await services.generator.generate_for_subscription(TENANT, subscription.id)

        assert invoice.subtotal == Decimal("50")
        stored = await services.ledger.query(TENANT, UsageFilters(invoiced=False))
        assert [r.id for r in stored] == [usage.id]

    def test_tax_rounds_half_up_to_cents(self):
        assert compute_tax(Decimal("10.05"), Decimal("0.5")) == Decimal("5.03")


class TestInvoiceDefaults:
    async def test_draft_due_after_payment_terms(self, services, subscription, clock):
        invoice = await services.generator.generate_for_subscription(TENANT, subscription.id)

        assert invoice.status == InvoiceStatus.DRAFT
        assert invoice.due_date == clock.now() + timedelta(days=30)
        assert invoice.currency == "EUR"
        assert invoice.billing_period == "2026-01"

    async def test_created_by_defaults_to_system_principal(self, services, subscription):
        invoice = await services.generator.generate_for_subscription(TENANT, subscription.id)

        assert invoice.created_by.kind == PrincipalKind.SYSTEM
        assert invoice.created_by.is_system

    async def test_records_requesting_actor(self, services, subscription):
        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, actor=Principal.user("staff-7")
        )
        assert invoice.created_by == Principal.user("staff-7")

    async def test_options_override_period_due_date_and_status(self, services, subscription):
        due = datetime(2026, 3, 1, tzinfo=UTC)

        invoice = await services.generator.generate_for_subscription(
            TENANT,
            subscription.id,
            InvoiceGenerationOptions(billing_period="2025-12", due_date=due, auto_send=True),
        )

        assert invoice.billing_period == "2025-12"
        assert invoice.due_date == due
        assert invoice.status == InvoiceStatus.SENT


class TestInvoiceNumbering:
    async def test_numbers_start_at_configured_value_and_increase(self, services, subscription):
        first = await services.generator.generate_for_subscription(TENANT, subscription.id)
        second = await services.generator.generate_for_subscription(TENANT, subscription.id)

        assert first.number == "INV-1000"
        assert second.number == "INV-1001"

    async def test_raising_start_skips_ahead_without_reuse(self, services, subscription):
        await services.generator.generate_for_subscription(TENANT, subscription.id)
        await services.settings_store.update(
            TENANT, BillingSettingsUpdate(invoice_number_start=5000, invoice_prefix="CW-")
        )

        invoice = await services.generator.generate_for_subscription(TENANT, subscription.id)

        assert invoice.number == "CW-5000"

    async def test_lowering_start_never_rewinds(self, services, subscription):
        await services.generator.generate_for_subscription(TENANT, subscription.id)
        await services.settings_store.update(
            TENANT, BillingSettingsUpdate(invoice_number_start=1)
        )

        invoice = await services.generator.generate_for_subscription(TENANT, subscription.id)

        assert invoice.number == "INV-1001"

    async def test_counters_are_per_tenant(self, services, subscription):
        other = await _seed_subscription(services, "tenant-b")

        await services.generator.generate_for_subscription(TENANT, subscription.id)
        invoice = await services.generator.generate_for_subscription("tenant-b", other.id)

        assert invoice.number == "INV-1000"

    def test_format_invoice_number(self):
        assert format_invoice_number("INV-", 1042) == "INV-1042"


class TestExactlyOnceBilling:
    async def test_usage_marked_invoiced_with_invoice_ref(self, services, subscription):
        usage = await _record_usage(services, subscription)

        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        [stored] = await services.ledger.query(TENANT)
        assert stored.id == usage.id
        assert stored.invoiced is True
        assert stored.invoice_id == invoice.id

    async def test_second_generation_adds_no_usage(self, services, subscription):
        await _record_usage(services, subscription)

        first = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )
        second = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        assert first.usage_record_ids != []
        assert second.usage_record_ids == []
        assert second.subtotal == Decimal("50")

    async def test_concurrent_generation_claims_usage_once(self, services, subscription):
        for _ in range(5):
            await _record_usage(services, subscription)

        invoices = await asyncio.gather(
            *(
                services.generator.generate_for_subscription(TENANT, subscription.id, WITH_USAGE)
                for _ in range(4)
            )
        )

        claimed = [rid for invoice in invoices for rid in invoice.usage_record_ids]
        assert len(claimed) == 5
        assert len(set(claimed)) == 5
        assert len({invoice.number for invoice in invoices}) == 4

    async def test_other_subscription_usage_is_not_billed(self, services, subscription):
        await _record_usage(services, subscription, subscription_id="sub-other")

        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        assert invoice.usage_record_ids == []

    async def test_lost_claim_raises_conflict_and_commits_nothing(self, config, clock):
        repo = RacingRepository()
        services = build_services(repo, config, now_provider=clock.now)
        subscription = await _seed_subscription(services, TENANT)
        await _record_usage(services, subscription)

        with pytest.raises(ConflictError):
            await services.generator.generate_for_subscription(TENANT, subscription.id, WITH_USAGE)

        assert repo.invoices == {}


class TestTransientFailures:
    async def test_retries_whole_unit_then_succeeds(self, clock):
        repo = FlakyRepository(failures=2)
        services = build_services(
            repo,
            BillingConfig(write_max_attempts=3, write_backoff_seconds=0, write_backoff_max_seconds=0),
            now_provider=clock.now,
        )
        subscription = await _seed_subscription(services, TENANT)
        usage = await _record_usage(services, subscription)

        invoice = await services.generator.generate_for_subscription(
            TENANT, subscription.id, WITH_USAGE
        )

        assert repo.attempts == 3
        assert invoice.usage_record_ids == [usage.id]
        # Numbers handed out to failed attempts are skipped, never reused
        assert invoice.number == "INV-1002"
        assert list(repo.invoices) == [invoice.id]

    async def test_gives_up_after_max_attempts(self, clock):
        repo = FlakyRepository(failures=5)
        services = build_services(
            repo,
            BillingConfig(write_max_attempts=2, write_backoff_seconds=0, write_backoff_max_seconds=0),
            now_provider=clock.now,
        )
        subscription = await _seed_subscription(services, TENANT)
        await _record_usage(services, subscription)

        with pytest.raises(TransientInfrastructureError):
            await services.generator.generate_for_subscription(TENANT, subscription.id, WITH_USAGE)

        assert repo.attempts == 2
        assert repo.invoices == {}
        assert all(not r.invoiced for r in repo.usage_records.values())


class TestGenerationErrors:
    async def test_unknown_subscription(self, services):
        with pytest.raises(SubscriptionNotFoundError):
            await services.generator.generate_for_subscription(TENANT, "missing")

    async def test_tax_rate_outside_unit_interval(self, services, subscription, repo):
        settings = await services.settings_store.get(TENANT)
        repo.settings[TENANT] = settings.model_copy(update={"tax_rate": Decimal("1.5")})

        with pytest.raises(BillingValidationError):
            await services.generator.generate_for_subscription(TENANT, subscription.id)

    async def test_non_positive_usage_quantity(self, services, subscription, repo):
        usage = await _record_usage(services, subscription)
        repo.usage_records[usage.id] = usage.model_copy(update={"quantity": Decimal("0")})

        with pytest.raises(BillingValidationError):
            await services.generator.generate_for_subscription(
                TENANT, subscription.id, WITH_USAGE
            )

        assert repo.invoices == {}
