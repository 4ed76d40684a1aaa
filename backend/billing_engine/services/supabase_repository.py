"""
Supabase-backed billing repository.

Plain tables for entity state; the two operations that need transactional
scope (invoice + usage claim, invoice-number counter) are Postgres functions
invoked through RPC. See backend/supabase/migrations/001_billing_core.sql.
"""

from datetime import datetime

import httpx
import structlog
from postgrest.exceptions import APIError

from billing_engine.config import BillingConfig
from billing_engine.exceptions import ConflictError, NotFoundError, TransientInfrastructureError
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

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION = "23505"
# Raised by create_invoice_with_usage when a usage row is gone or already billed
USAGE_CLAIM_CONFLICT = "P0409"
SETTINGS_MISSING = "P0404"
# Connection failures, serialization failures and deadlocks are safe to retry
_TRANSIENT_SQLSTATE_PREFIXES = ("08", "40", "53", "57P")


def _is_transient(error: APIError) -> bool:
    code = error.code or ""
    return code.startswith(_TRANSIENT_SQLSTATE_PREFIXES)


async def _execute(query, operation: str):
    """Run a PostgREST query, translating transport and database errors."""
    try:
        return await query.execute()
    except httpx.TransportError as exc:
        logger.warning("supabase_transport_error", operation=operation, error=str(exc))
        raise TransientInfrastructureError(
            f"Storage unavailable during {operation}", details={"operation": operation}
        ) from exc
    except APIError as exc:
        if _is_transient(exc):
            logger.warning(
                "supabase_transient_error", operation=operation, code=exc.code, error=exc.message
            )
            raise TransientInfrastructureError(
                f"Storage failed during {operation}: {exc.message}",
                details={"operation": operation, "sqlstate": exc.code},
            ) from exc
        raise


def _rows(response) -> list[dict]:
    return response.data or []


def _first(response) -> dict | None:
    rows = _rows(response)
    return rows[0] if rows else None


class SupabaseBillingRepository:
    """Supabase-backed repository for billing state."""

    def __init__(self, client, config: BillingConfig | None = None):
        self.client = client
        self.config = config or BillingConfig()

    def _table(self, name: str):
        return self.client.table(name)

    async def _upsert(self, table: str, payload: dict, operation: str, on_conflict: str = "id"):
        response = await _execute(
            self._table(table).upsert(payload, on_conflict=on_conflict), operation
        )
        return _first(response)

    async def _get(self, table: str, tenant_id: str, entity_id: str, operation: str):
        response = await _execute(
            self._table(table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("id", entity_id)
            .limit(1),
            operation,
        )
        return _first(response)

    # ------------------------------------------------------------------
    # Billing cycles and plans
    # ------------------------------------------------------------------

    async def save_billing_cycle(self, cycle: BillingCycleConfig) -> BillingCycleConfig:
        row = await self._upsert(
            self.config.billing_cycles_table, cycle.model_dump(mode="json"), "save_billing_cycle"
        )
        # Some Supabase responses return no data unless `returning=representation`.
        return BillingCycleConfig.model_validate(row) if row else cycle

    async def get_billing_cycle(self, tenant_id: str, cycle_id: str) -> BillingCycleConfig | None:
        row = await self._get(
            self.config.billing_cycles_table, tenant_id, cycle_id, "get_billing_cycle"
        )
        return BillingCycleConfig.model_validate(row) if row else None

    async def list_billing_cycles(
        self, tenant_id: str, *, active_only: bool = True
    ) -> list[BillingCycleConfig]:
        query = self._table(self.config.billing_cycles_table).select("*").eq("tenant_id", tenant_id)
        if active_only:
            query = query.eq("is_active", True)
        response = await _execute(query.order("created_at", desc=True), "list_billing_cycles")
        return [BillingCycleConfig.model_validate(row) for row in _rows(response)]

    async def save_plan(self, plan: Plan) -> Plan:
        row = await self._upsert(self.config.plans_table, plan.model_dump(mode="json"), "save_plan")
        return Plan.model_validate(row) if row else plan

    async def get_plan(self, tenant_id: str, plan_id: str) -> Plan | None:
        row = await self._get(self.config.plans_table, tenant_id, plan_id, "get_plan")
        return Plan.model_validate(row) if row else None

    async def list_plans(self, tenant_id: str) -> list[Plan]:
        response = await _execute(
            self._table(self.config.plans_table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .order("created_at", desc=True),
            "list_plans",
        )
        return [Plan.model_validate(row) for row in _rows(response)]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def save_subscription(self, subscription: Subscription) -> Subscription:
        row = await self._upsert(
            self.config.subscriptions_table,
            subscription.model_dump(mode="json"),
            "save_subscription",
        )
        return Subscription.model_validate(row) if row else subscription

    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        row = await self._get(
            self.config.subscriptions_table, tenant_id, subscription_id, "get_subscription"
        )
        return Subscription.model_validate(row) if row else None

    async def list_subscriptions(
        self,
        tenant_id: str,
        *,
        client_id: str | None = None,
        status: SubscriptionStatus | None = None,
        billing_due_before: datetime | None = None,
    ) -> list[Subscription]:
        query = self._table(self.config.subscriptions_table).select("*").eq("tenant_id", tenant_id)
        if client_id is not None:
            query = query.eq("client_id", client_id)
        if status is not None:
            query = query.eq("status", status.value)
        if billing_due_before is not None:
            query = query.lte("next_billing_date", billing_due_before.isoformat())
        response = await _execute(query.order("created_at", desc=True), "list_subscriptions")
        return [Subscription.model_validate(row) for row in _rows(response)]

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------

    async def insert_usage_record(self, record: UsageRecord) -> UsageRecord:
        response = await _execute(
            self._table(self.config.usage_records_table).insert(record.model_dump(mode="json")),
            "insert_usage_record",
        )
        row = _first(response)
        return UsageRecord.model_validate(row) if row else record

    async def list_usage_records(self, tenant_id: str, filters: UsageFilters) -> list[UsageRecord]:
        query = self._table(self.config.usage_records_table).select("*").eq("tenant_id", tenant_id)
        if filters.client_id is not None:
            query = query.eq("client_id", filters.client_id)
        if filters.subscription_id is not None:
            query = query.eq("subscription_id", filters.subscription_id)
        if filters.resource_type is not None:
            query = query.eq("resource_type", filters.resource_type.value)
        if filters.billing_period is not None:
            query = query.eq("billing_period", filters.billing_period)
        if filters.invoiced is not None:
            query = query.eq("invoiced", filters.invoiced)
        if filters.start_date is not None:
            query = query.gte("usage_date", filters.start_date.isoformat())
        if filters.end_date is not None:
            query = query.lte("usage_date", filters.end_date.isoformat())
        response = await _execute(query.order("usage_date", desc=True), "list_usage_records")
        return [UsageRecord.model_validate(row) for row in _rows(response)]

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    async def create_invoice_with_usage(
        self, invoice: Invoice, usage_record_ids: list[str]
    ) -> Invoice:
        try:
            response = await _execute(
                self.client.rpc(
                    "create_invoice_with_usage",
                    {
                        "p_invoice": invoice.model_dump(mode="json"),
                        "p_usage_record_ids": usage_record_ids,
                    },
                ),
                "create_invoice_with_usage",
            )
        except APIError as exc:
            if exc.code in (USAGE_CLAIM_CONFLICT, UNIQUE_VIOLATION):
                raise ConflictError(
                    exc.message or "Usage already claimed by another invoice",
                    details={"invoice_id": invoice.id, "sqlstate": exc.code},
                ) from exc
            raise

        if isinstance(response.data, dict):
            return Invoice.model_validate(response.data)
        return invoice

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice | None:
        row = await self._get(self.config.invoices_table, tenant_id, invoice_id, "get_invoice")
        return Invoice.model_validate(row) if row else None

    async def list_invoices(
        self,
        tenant_id: str,
        *,
        status: InvoiceStatus | None = None,
        subscription_id: str | None = None,
    ) -> list[Invoice]:
        query = self._table(self.config.invoices_table).select("*").eq("tenant_id", tenant_id)
        if status is not None:
            query = query.eq("status", status.value)
        if subscription_id is not None:
            query = query.eq("subscription_id", subscription_id)
        response = await _execute(query.order("created_at", desc=True), "list_invoices")
        return [Invoice.model_validate(row) for row in _rows(response)]

    async def update_invoice_status(
        self,
        tenant_id: str,
        invoice_id: str,
        status: InvoiceStatus,
        *,
        paid_at: datetime | None = None,
    ) -> Invoice | None:
        updates: dict = {"status": status.value}
        if paid_at is not None:
            updates["paid_at"] = paid_at.isoformat()
        response = await _execute(
            self._table(self.config.invoices_table)
            .update(updates)
            .eq("tenant_id", tenant_id)
            .eq("id", invoice_id),
            "update_invoice_status",
        )
        row = _first(response)
        return Invoice.model_validate(row) if row else None

    # ------------------------------------------------------------------
    # Settings and numbering
    # ------------------------------------------------------------------

    async def get_billing_settings(self, tenant_id: str) -> BillingSettings | None:
        response = await _execute(
            self._table(self.config.billing_settings_table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .limit(1),
            "get_billing_settings",
        )
        row = _first(response)
        return BillingSettings.model_validate(row) if row else None

    async def save_billing_settings(self, settings: BillingSettings) -> BillingSettings:
        # The counter column is only ever written by next_invoice_number()
        payload = settings.model_dump(mode="json", exclude={"next_invoice_number"})
        row = await self._upsert(
            self.config.billing_settings_table,
            payload,
            "save_billing_settings",
            on_conflict="tenant_id",
        )
        return BillingSettings.model_validate(row) if row else settings

    async def next_invoice_number(self, tenant_id: str) -> int:
        try:
            response = await _execute(
                self.client.rpc("next_invoice_number", {"p_tenant_id": tenant_id}),
                "next_invoice_number",
            )
        except APIError as exc:
            if exc.code == SETTINGS_MISSING:
                raise NotFoundError("Billing settings", tenant_id) from exc
            raise
        return int(response.data)

    # ------------------------------------------------------------------
    # Recurring entries
    # ------------------------------------------------------------------

    async def save_recurring_entry(self, entry: RecurringInvoiceEntry) -> RecurringInvoiceEntry:
        row = await self._upsert(
            self.config.recurring_invoices_table,
            entry.model_dump(mode="json"),
            "save_recurring_entry",
        )
        return RecurringInvoiceEntry.model_validate(row) if row else entry

    async def get_recurring_entry(
        self, tenant_id: str, entry_id: str
    ) -> RecurringInvoiceEntry | None:
        row = await self._get(
            self.config.recurring_invoices_table, tenant_id, entry_id, "get_recurring_entry"
        )
        return RecurringInvoiceEntry.model_validate(row) if row else None

    async def list_recurring_entries(
        self,
        tenant_id: str,
        *,
        status: RecurringEntryStatus | None = None,
        due_before: datetime | None = None,
    ) -> list[RecurringInvoiceEntry]:
        query = (
            self._table(self.config.recurring_invoices_table)
            .select("*")
            .eq("tenant_id", tenant_id)
        )
        if status is not None:
            query = query.eq("status", status.value)
        if due_before is not None:
            query = query.lte("next_generation", due_before.isoformat())
        response = await _execute(query.order("next_generation"), "list_recurring_entries")
        return [RecurringInvoiceEntry.model_validate(row) for row in _rows(response)]

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    async def record_payment(self, payment: Payment) -> bool:
        try:
            await _execute(
                self._table(self.config.payments_table).insert(payment.model_dump(mode="json")),
                "record_payment",
            )
        except APIError as exc:
            # (tenant_id, event_id) is unique: a redelivered event
            if exc.code == UNIQUE_VIOLATION:
                return False
            raise
        return True

    async def get_payment_by_event(self, tenant_id: str, event_id: str) -> Payment | None:
        response = await _execute(
            self._table(self.config.payments_table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .eq("event_id", event_id)
            .limit(1),
            "get_payment_by_event",
        )
        row = _first(response)
        return Payment.model_validate(row) if row else None

    async def list_payments(
        self,
        tenant_id: str,
        *,
        status: PaymentStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> list[Payment]:
        query = self._table(self.config.payments_table).select("*").eq("tenant_id", tenant_id)
        if status is not None:
            query = query.eq("status", status.value)
        if since is not None:
            query = query.gte("processed_at", since.isoformat())
        if until is not None:
            query = query.lte("processed_at", until.isoformat())
        response = await _execute(query, "list_payments")
        return [Payment.model_validate(row) for row in _rows(response)]
