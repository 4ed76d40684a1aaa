"""Billing storage contract and the in-memory implementation."""

import asyncio
from datetime import UTC, datetime
from typing import Protocol

from billing_engine.exceptions import ConflictError, NotFoundError
from billing_engine.models.billing import (
    BillingCycleConfig,
    BillingSettings,
    Plan,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.models.invoicing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentStatus,
    RecurringEntryStatus,
    RecurringInvoiceEntry,
    UsageFilters,
    UsageRecord,
)


class BillingRepository(Protocol):
    """Storage contract for billing state. Every read is tenant-scoped."""

    async def save_billing_cycle(self, cycle: BillingCycleConfig) -> BillingCycleConfig:
        """Insert or replace a billing cycle."""

    async def get_billing_cycle(self, tenant_id: str, cycle_id: str) -> BillingCycleConfig | None:
        """Fetch a billing cycle."""

    async def list_billing_cycles(
        self, tenant_id: str, *, active_only: bool = True
    ) -> list[BillingCycleConfig]:
        """List billing cycles, newest first."""

    async def save_plan(self, plan: Plan) -> Plan:
        """Insert or replace a plan."""

    async def get_plan(self, tenant_id: str, plan_id: str) -> Plan | None:
        """Fetch a plan."""

    async def list_plans(self, tenant_id: str) -> list[Plan]:
        """List plans, newest first."""

    async def save_subscription(self, subscription: Subscription) -> Subscription:
        """Insert or replace a subscription."""

    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        """Fetch a subscription."""

    async def list_subscriptions(
        self,
        tenant_id: str,
        *,
        client_id: str | None = None,
        status: SubscriptionStatus | None = None,
        billing_due_before: datetime | None = None,
    ) -> list[Subscription]:
        """List subscriptions, newest first."""

    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        """Persist a new usage record."""

    async def list_usage_records(self, tenant_id: str, filters: UsageFilters) -> list[UsageRecord]:
        """List usage records matching ``filters``, most recent usage first."""

    async def create_invoice_with_usage(
        self, invoice: Invoice, usage_record_ids: list[str]
    ) -> Invoice:
        """Insert ``invoice`` and mark the usage records invoiced, atomically.

        Raises ConflictError (and commits nothing) when any record is missing
        or already invoiced.
        """

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice | None:
        """Fetch an invoice."""

    async def list_invoices(
        self,
        tenant_id: str,
        *,
        status: InvoiceStatus | None = None,
        subscription_id: str | None = None,
    ) -> list[Invoice]:
        """List invoices, newest first."""

    async def update_invoice_status(
        self,
        tenant_id: str,
        invoice_id: str,
        status: InvoiceStatus,
        *,
        paid_at: datetime | None = None,
    ) -> Invoice | None:
        """Apply an externally driven status transition."""

    async def get_billing_settings(self, tenant_id: str) -> BillingSettings | None:
        """Fetch tenant settings."""

    async def save_billing_settings(self, settings: BillingSettings) -> BillingSettings:
        """Insert or replace tenant settings."""

    async def next_invoice_number(self, tenant_id: str) -> int:
        """Atomically hand out the tenant's next invoice-number suffix."""

    async def save_recurring_entry(self, entry: RecurringInvoiceEntry) -> RecurringInvoiceEntry:
        """Insert or replace a recurring invoice entry."""

    async def get_recurring_entry(
        self, tenant_id: str, entry_id: str
    ) -> RecurringInvoiceEntry | None:
        """Fetch a recurring invoice entry."""

    async def list_recurring_entries(
        self,
        tenant_id: str,
        *,
        status: RecurringEntryStatus | None = None,
        due_before: datetime | None = None,
    ) -> list[RecurringInvoiceEntry]:
        """List recurring entries, earliest next_generation first."""

    async def record_payment(self, payment: Payment) -> bool:
        """Record a payment event.

        Returns True when the event is new; False if already seen.
        """

    async def get_payment_by_event(self, tenant_id: str, event_id: str) -> Payment | None:
        """Return the payment recorded for a provider event, if any."""

    async def list_payments(
        self,
        tenant_id: str,
        *,
        status: PaymentStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Payment]:
        """List payments processed within [since, until]."""


_EPOCH = datetime.min.replace(tzinfo=UTC)


def _newest_first(items: list, attr: str = "created_at") -> list:
    return sorted(items, key=lambda item: getattr(item, attr) or _EPOCH, reverse=True)


class InMemoryBillingRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.billing_cycles: dict[str, BillingCycleConfig] = {}
        self.plans: dict[str, Plan] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.usage_records: dict[str, UsageRecord] = {}
        self.invoices: dict[str, Invoice] = {}
        self.settings: dict[str, BillingSettings] = {}
        self.recurring_entries: dict[str, RecurringInvoiceEntry] = {}
        self.payments: dict[str, Payment] = {}
        self.processed_payment_events: set[tuple[str, str]] = set()
        self._write_lock = asyncio.Lock()

    @staticmethod
    def _scoped(item, tenant_id: str):
        if item is None or item.tenant_id != tenant_id:
            return None
        return item.model_copy(deep=True)

    async def save_billing_cycle(self, cycle: BillingCycleConfig) -> BillingCycleConfig:
        self.billing_cycles[cycle.id] = cycle.model_copy(deep=True)
        return cycle.model_copy(deep=True)

    async def get_billing_cycle(self, tenant_id: str, cycle_id: str) -> BillingCycleConfig | None:
        return self._scoped(self.billing_cycles.get(cycle_id), tenant_id)

    async def list_billing_cycles(
        self, tenant_id: str, *, active_only: bool = True
    ) -> list[BillingCycleConfig]:
        cycles = [
            c.model_copy(deep=True)
            for c in self.billing_cycles.values()
            if c.tenant_id == tenant_id and (c.is_active or not active_only)
        ]
        return _newest_first(cycles)

    async def save_plan(self, plan: Plan) -> Plan:
        self.plans[plan.id] = plan.model_copy(deep=True)
        return plan.model_copy(deep=True)

    async def get_plan(self, tenant_id: str, plan_id: str) -> Plan | None:
        return self._scoped(self.plans.get(plan_id), tenant_id)

    async def list_plans(self, tenant_id: str) -> list[Plan]:
        return _newest_first(
            [p.model_copy(deep=True) for p in self.plans.values() if p.tenant_id == tenant_id]
        )

    async def save_subscription(self, subscription: Subscription) -> Subscription:
        self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription.model_copy(deep=True)

    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        return self._scoped(self.subscriptions.get(subscription_id), tenant_id)

    async def list_subscriptions(
        self,
        tenant_id: str,
        *,
        client_id: str | None = None,
        status: SubscriptionStatus | None = None,
        billing_due_before: datetime | None = None,
    ) -> list[Subscription]:
        matches = []
        for sub in self.subscriptions.values():
            if sub.tenant_id != tenant_id:
                continue
            if client_id is not None and sub.client_id != client_id:
                continue
            if status is not None and sub.status != status:
                continue
            if billing_due_before is not None and sub.next_billing_date > billing_due_before:
                continue
            matches.append(sub.model_copy(deep=True))
        return _newest_first(matches)

    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        self.usage_records[record.id] = record.model_copy(deep=True)
        return record.model_copy(deep=True)

    async def list_usage_records(self, tenant_id: str, filters: UsageFilters) -> list[UsageRecord]:
        matches = [
            r.model_copy(deep=True)
            for r in self.usage_records.values()
            if r.tenant_id == tenant_id and filters.matches(r)
        ]
        return _newest_first(matches, attr="usage_date")

    async def create_invoice_with_usage(
        self, invoice: Invoice, usage_record_ids: list[str]
    ) -> Invoice:
        async with self._write_lock:
            if invoice.id in self.invoices:
                raise ConflictError(f"Invoice {invoice.id} already exists")

            # Validate every claim before touching anything
            claimed: list[UsageRecord] = []
            for record_id in usage_record_ids:
                record = self.usage_records.get(record_id)
                if record is None or record.tenant_id != invoice.tenant_id:
                    raise ConflictError(
                        f"Usage record {record_id} is no longer available",
                        details={"usage_record_id": record_id},
                    )
                if record.invoiced:
                    raise ConflictError(
                        f"Usage record {record_id} was already billed on invoice {record.invoice_id}",
                        details={"usage_record_id": record_id, "invoice_id": record.invoice_id},
                    )
                claimed.append(record)

            self.invoices[invoice.id] = invoice.model_copy(deep=True)
            for record in claimed:
                self.usage_records[record.id] = record.model_copy(
                    update={"invoiced": True, "invoice_id": invoice.id}
                )
            return invoice.model_copy(deep=True)

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice | None:
        return self._scoped(self.invoices.get(invoice_id), tenant_id)

    async def list_invoices(
        self,
        tenant_id: str,
        *,
        status: InvoiceStatus | None = None,
        subscription_id: str | None = None,
    ) -> list[Invoice]:
        matches = [
            inv.model_copy(deep=True)
            for inv in self.invoices.values()
            if inv.tenant_id == tenant_id
            and (status is None or inv.status == status)
            and (subscription_id is None or inv.subscription_id == subscription_id)
        ]
        return _newest_first(matches)

    async def update_invoice_status(
        self,
        tenant_id: str,
        invoice_id: str,
        status: InvoiceStatus,
        *,
        paid_at: datetime | None = None,
    ) -> Invoice | None:
        invoice = self._scoped(self.invoices.get(invoice_id), tenant_id)
        if invoice is None:
            return None
        invoice.status = status
        if paid_at is not None:
            invoice.paid_at = paid_at
        self.invoices[invoice_id] = invoice.model_copy(deep=True)
        return invoice

    async def get_billing_settings(self, tenant_id: str) -> BillingSettings | None:
        settings = self.settings.get(tenant_id)
        return settings.model_copy(deep=True) if settings else None

    async def save_billing_settings(self, settings: BillingSettings) -> BillingSettings:
        stored = settings.model_copy(deep=True)
        existing = self.settings.get(stored.tenant_id)
        # The counter is owned by next_invoice_number(); a settings update never rewinds it
        if existing is not None:
            stored.next_invoice_number = existing.next_invoice_number
        self.settings[stored.tenant_id] = stored
        return stored.model_copy(deep=True)

    async def next_invoice_number(self, tenant_id: str) -> int:
        async with self._write_lock:
            settings = self.settings.get(tenant_id)
            if settings is None:
                raise NotFoundError("Billing settings", tenant_id)
            current = max(
                settings.next_invoice_number or settings.invoice_number_start,
                settings.invoice_number_start,
            )
            settings.next_invoice_number = current + 1
            return current

    async def save_recurring_entry(self, entry: RecurringInvoiceEntry) -> RecurringInvoiceEntry:
        self.recurring_entries[entry.id] = entry.model_copy(deep=True)
        return entry.model_copy(deep=True)

    async def get_recurring_entry(
        self, tenant_id: str, entry_id: str
    ) -> RecurringInvoiceEntry | None:
        return self._scoped(self.recurring_entries.get(entry_id), tenant_id)

    async def list_recurring_entries(
        self,
        tenant_id: str,
        *,
        status: RecurringEntryStatus | None = None,
        due_before: datetime | None = None,
    ) -> list[RecurringInvoiceEntry]:
        matches = [
            e.model_copy(deep=True)
            for e in self.recurring_entries.values()
            if e.tenant_id == tenant_id
            and (status is None or e.status == status)
            and (due_before is None or e.next_generation <= due_before)
        ]
        return sorted(matches, key=lambda e: e.next_generation)

    async def record_payment(self, payment: Payment) -> bool:
        key = (payment.tenant_id, payment.event_id)
        if key in self.processed_payment_events:
            return False
        self.processed_payment_events.add(key)
        self.payments[payment.id] = payment.model_copy(deep=True)
        return True

    async def get_payment_by_event(self, tenant_id: str, event_id: str) -> Payment | None:
        for payment in self.payments.values():
            if payment.tenant_id == tenant_id and payment.event_id == event_id:
                return payment.model_copy(deep=True)
        return None

    async def list_payments(
        self,
        tenant_id: str,
        *,
        status: PaymentStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Payment]:
        return [
            p.model_copy(deep=True)
            for p in self.payments.values()
            if p.tenant_id == tenant_id
            and (status is None or p.status == status)
            and (since is None or p.processed_at >= since)
            and (until is None or p.processed_at <= until)
        ]
