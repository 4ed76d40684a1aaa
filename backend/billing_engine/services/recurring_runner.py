"""
Batch invoice generation.

Two drivers share one contract: every selected item produces exactly one
GenerationResult, and an exception raised while processing one item never
reaches the others or the caller.

- run_due(): recurring invoice entries whose next_generation has passed.
- run_due_subscriptions(): ACTIVE subscriptions whose next_billing_date has
  passed; each successful invoice rolls the subscription into its next period.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime

import structlog

from billing_engine.config import BillingConfig
from billing_engine.exceptions import RecurringEntryNotFoundError, SubscriptionCancelledError
from billing_engine.models.billing import Principal, Subscription, SubscriptionStatus
from billing_engine.models.invoicing import (
    GenerationResult,
    InvoiceGenerationOptions,
    InvoiceWorkflowResult,
    RecurringEntryStatus,
    RecurringInvoiceEntry,
    RecurringInvoiceEntryCreate,
)
from billing_engine.services.catalog import BillingCatalog
from billing_engine.services.invoice_generator import InvoiceGenerator
from billing_engine.services.repository import BillingRepository
from billing_engine.services.scheduler import billing_period_label, compute_next_billing_date
from billing_engine.services.settings_store import BillingSettingsStore
from billing_engine.services.subscription_manager import SubscriptionManager

logger = structlog.get_logger(__name__)

AUTO_GENERATION_DISABLED = "Auto invoice generation is disabled"

# Marks a subscription whose billing cycle has auto_generate off
_GENERATION_OFF = object()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RecurringInvoiceRunner:
    def __init__(
        self,
        repository: BillingRepository,
        catalog: BillingCatalog,
        subscriptions: SubscriptionManager,
        settings_store: BillingSettingsStore,
        generator: InvoiceGenerator,
        config: BillingConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.settings_store = settings_store
        self.generator = generator
        self.config = config or BillingConfig()
        self.now_provider = now_provider
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    # Entry management
    # ------------------------------------------------------------------

    async def create_entry(
        self, tenant_id: str, data: RecurringInvoiceEntryCreate
    ) -> RecurringInvoiceEntry:
        subscription = await self.subscriptions.get(tenant_id, data.subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise SubscriptionCancelledError(subscription.id)

        now = self.now_provider()
        entry = RecurringInvoiceEntry(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            subscription_id=subscription.id,
            include_previous_usage=data.include_previous_usage,
            auto_send=data.auto_send,
            next_generation=data.next_generation or now,
            created_at=now,
            updated_at=now,
        )
        entry = await self.repository.save_recurring_entry(entry)
        logger.info(
            "recurring_entry_created",
            tenant_id=tenant_id,
            entry_id=entry.id,
            subscription_id=entry.subscription_id,
            next_generation=entry.next_generation.isoformat(),
        )
        return entry

    async def get_entry(self, tenant_id: str, entry_id: str) -> RecurringInvoiceEntry:
        entry = await self.repository.get_recurring_entry(tenant_id, entry_id)
        if entry is None:
            raise RecurringEntryNotFoundError(entry_id)
        return entry

    async def list_entries(
        self, tenant_id: str, *, status: RecurringEntryStatus | None = None
    ) -> list[RecurringInvoiceEntry]:
        return await self.repository.list_recurring_entries(tenant_id, status=status)

    async def pause(self, tenant_id: str, entry_id: str) -> RecurringInvoiceEntry:
        return await self._set_status(tenant_id, entry_id, RecurringEntryStatus.PAUSED)

    async def resume(self, tenant_id: str, entry_id: str) -> RecurringInvoiceEntry:
        return await self._set_status(tenant_id, entry_id, RecurringEntryStatus.ACTIVE)

    async def _set_status(
        self, tenant_id: str, entry_id: str, status: RecurringEntryStatus
    ) -> RecurringInvoiceEntry:
        async with self._locks[f"entry:{entry_id}"]:
            entry = await self.get_entry(tenant_id, entry_id)
            if entry.status == status:
                return entry
            entry.status = status
            entry.updated_at = self.now_provider()
            entry = await self.repository.save_recurring_entry(entry)
        logger.info(
            "recurring_entry_status_changed",
            tenant_id=tenant_id,
            entry_id=entry_id,
            status=status.value,
        )
        return entry

    # ------------------------------------------------------------------
    # Batch drivers
    # ------------------------------------------------------------------

    async def run_due(self, tenant_id: str) -> list[GenerationResult]:
        """
        Generate invoices for every ACTIVE entry whose next_generation <= now.

        An entry whose subscription has been cancelled is paused and reported
        as a SUBSCRIPTION_CANCELLED failure, so later runs no longer select it.
        Returns one result per processed entry, in selection order.
        """
        now = self.now_provider()
        entries = await self.repository.list_recurring_entries(
            tenant_id, status=RecurringEntryStatus.ACTIVE, due_before=now
        )
        logger.info("recurring_run_started", tenant_id=tenant_id, due_entries=len(entries))

        semaphore = asyncio.Semaphore(self.config.runner_max_concurrency)

        async def run_one(entry: RecurringInvoiceEntry) -> GenerationResult | None:
            async with semaphore:
                return await self._process_entry(tenant_id, entry, now)

        outcomes = await asyncio.gather(*(run_one(entry) for entry in entries))
        results = [outcome for outcome in outcomes if outcome is not None]

        logger.info(
            "recurring_run_completed",
            tenant_id=tenant_id,
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    async def _process_entry(
        self, tenant_id: str, selected: RecurringInvoiceEntry, now: datetime
    ) -> GenerationResult | None:
        """Process one entry; returns None when it is no longer eligible."""
        async with self._locks[f"entry:{selected.id}"]:
            try:
                entry = await self.repository.get_recurring_entry(tenant_id, selected.id)
                # A concurrent run or a pause may have got here first
                if (
                    entry is None
                    or entry.status != RecurringEntryStatus.ACTIVE
                    or entry.next_generation > now
                ):
                    return None

                subscription = await self.subscriptions.get(tenant_id, entry.subscription_id)
                if subscription.status == SubscriptionStatus.CANCELLED:
                    entry.status = RecurringEntryStatus.PAUSED
                    entry.updated_at = now
                    await self.repository.save_recurring_entry(entry)
                    logger.info(
                        "recurring_entry_paused",
                        tenant_id=tenant_id,
                        entry_id=entry.id,
                        subscription_id=subscription.id,
                        reason="subscription_cancelled",
                    )
                    return GenerationResult.failed(
                        SubscriptionCancelledError(subscription.id),
                        subscription_id=subscription.id,
                        entry_id=entry.id,
                    )

                invoice = await self.generator.generate_for_subscription(
                    tenant_id,
                    subscription.id,
                    InvoiceGenerationOptions(
                        include_usage=entry.include_previous_usage,
                        auto_send=entry.auto_send,
                    ),
                    actor=Principal.system(),
                )

                cycle = await self.catalog.get_billing_cycle(
                    tenant_id, subscription.billing_cycle_id
                )
                entry.last_generated = now
                entry.next_generation = compute_next_billing_date(now, cycle)
                entry.updated_at = now
                await self.repository.save_recurring_entry(entry)
            except Exception as exc:
                logger.warning(
                    "recurring_entry_failed",
                    tenant_id=tenant_id,
                    entry_id=selected.id,
                    subscription_id=selected.subscription_id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                return GenerationResult.failed(
                    exc, subscription_id=selected.subscription_id, entry_id=selected.id
                )

        return GenerationResult.ok(
            invoice, subscription_id=entry.subscription_id, entry_id=entry.id
        )

    async def run_due_subscriptions(self, tenant_id: str) -> InvoiceWorkflowResult:
        """
        Invoice every ACTIVE subscription whose next_billing_date <= now and
        roll it into its next period.

        Skipped with a warning when the tenant has auto_generate_invoices off,
        or per subscription when its billing cycle has auto_generate off.
        """
        settings = await self.settings_store.get(tenant_id)
        if not settings.auto_generate_invoices:
            logger.info("subscription_run_skipped", tenant_id=tenant_id, reason="disabled")
            return InvoiceWorkflowResult(warnings=[AUTO_GENERATION_DISABLED])

        now = self.now_provider()
        due = await self.repository.list_subscriptions(
            tenant_id, status=SubscriptionStatus.ACTIVE, billing_due_before=now
        )
        workflow = InvoiceWorkflowResult()

        semaphore = asyncio.Semaphore(self.config.runner_max_concurrency)

        async def run_one(subscription: Subscription) -> GenerationResult | object | None:
            async with semaphore:
                return await self._process_subscription(
                    tenant_id, subscription, now, settings.auto_send_invoices
                )

        outcomes = await asyncio.gather(*(run_one(s) for s in due))
        for subscription, outcome in zip(due, outcomes):
            if outcome is _GENERATION_OFF:
                workflow.warnings.append(
                    f"Automatic generation is off for subscription {subscription.id}"
                )
            elif outcome is not None:
                workflow.results.append(outcome)
        logger.info(
            "subscription_run_completed",
            tenant_id=tenant_id,
            invoices_generated=workflow.invoices_generated,
            failed=len(workflow.results) - workflow.invoices_generated,
        )
        return workflow

    async def _process_subscription(
        self, tenant_id: str, selected: Subscription, now: datetime, auto_send: bool
    ) -> GenerationResult | object | None:
        """
        Invoice and roll over one subscription.

        Returns None when it is no longer due and _GENERATION_OFF when its
        billing cycle has automatic generation switched off.
        """
        async with self._locks[f"subscription:{selected.id}"]:
            try:
                cycle = await self.repository.get_billing_cycle(
                    tenant_id, selected.billing_cycle_id
                )
                if cycle is not None and not cycle.auto_generate:
                    return _GENERATION_OFF

                subscription = await self.repository.get_subscription(tenant_id, selected.id)
                # Already rolled over or cancelled since selection
                if (
                    subscription is None
                    or subscription.status != SubscriptionStatus.ACTIVE
                    or subscription.next_billing_date > now
                ):
                    return None

                invoice = await self.generator.generate_for_subscription(
                    tenant_id,
                    subscription.id,
                    InvoiceGenerationOptions(
                        include_usage=True,
                        billing_period=billing_period_label(subscription.current_period_start),
                        auto_send=auto_send,
                    ),
                    actor=Principal.system(),
                )
                await self.subscriptions.rollover(tenant_id, subscription.id)
            except Exception as exc:
                logger.warning(
                    "subscription_invoice_failed",
                    tenant_id=tenant_id,
                    subscription_id=selected.id,
                    error=str(exc),
                    error_type=exc.__class__.__name__,
                )
                return GenerationResult.failed(exc, subscription_id=selected.id)

        return GenerationResult.ok(invoice, subscription_id=selected.id)
