"""
Billing API endpoints.

Every route is tenant-scoped through the CurrentTenant dependency. Domain
errors propagate to the application's BillingError handler.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from billing_engine.auth import CurrentTenant
from billing_engine.dependencies import BillingServices
from billing_engine.models.billing import (
    BillingCycleConfig,
    BillingCycleCreate,
    BillingCycleUpdate,
    BillingSettings,
    BillingSettingsUpdate,
    Plan,
    PlanCreate,
    Subscription,
    SubscriptionCreate,
    SubscriptionStatus,
    SubscriptionUpdate,
    UtcDatetime,
)
from billing_engine.models.invoicing import (
    BillingReport,
    GenerationResult,
    Invoice,
    InvoiceGenerationOptions,
    InvoiceStatus,
    InvoiceWorkflowResult,
    Payment,
    PaymentEvent,
    RecurringEntryStatus,
    RecurringInvoiceEntry,
    RecurringInvoiceEntryCreate,
    UsageFilters,
    UsageRecord,
    UsageRecordCreate,
    UsageResourceType,
    UsageSummaryLine,
)

router = APIRouter(prefix="/billing", tags=["billing"])


class CancelRequest(BaseModel):
    """Subscription cancellation request."""

    end_date: UtcDatetime | None = None


def _get_services(request: Request) -> BillingServices:
    services = getattr(request.app.state, "billing", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return services


# ---------------------------------------------------------------------------
# Billing cycles and plans
# ---------------------------------------------------------------------------


@router.post("/cycles", response_model=BillingCycleConfig, status_code=201)
async def create_billing_cycle(
    body: BillingCycleCreate, request: Request, tenant: CurrentTenant
) -> BillingCycleConfig:
    return await _get_services(request).catalog.create_billing_cycle(tenant.tenant_id, body)


@router.get("/cycles", response_model=list[BillingCycleConfig])
async def get_billing_cycles(request: Request, tenant: CurrentTenant) -> list[BillingCycleConfig]:
    """Active billing cycles, newest first."""
    return await _get_services(request).catalog.get_billing_cycles(tenant.tenant_id)


@router.get("/cycles/{cycle_id}", response_model=BillingCycleConfig)
async def get_billing_cycle(
    cycle_id: str, request: Request, tenant: CurrentTenant
) -> BillingCycleConfig:
    return await _get_services(request).catalog.get_billing_cycle(tenant.tenant_id, cycle_id)


@router.patch("/cycles/{cycle_id}", response_model=BillingCycleConfig)
async def update_billing_cycle(
    cycle_id: str, body: BillingCycleUpdate, request: Request, tenant: CurrentTenant
) -> BillingCycleConfig:
    return await _get_services(request).catalog.update_billing_cycle(
        tenant.tenant_id, cycle_id, body
    )


@router.post("/plans", response_model=Plan, status_code=201)
async def create_plan(body: PlanCreate, request: Request, tenant: CurrentTenant) -> Plan:
    return await _get_services(request).catalog.create_plan(tenant.tenant_id, body)


@router.get("/plans", response_model=list[Plan])
async def get_plans(request: Request, tenant: CurrentTenant) -> list[Plan]:
    return await _get_services(request).catalog.get_plans(tenant.tenant_id)


@router.get("/plans/{plan_id}", response_model=Plan)
async def get_plan(plan_id: str, request: Request, tenant: CurrentTenant) -> Plan:
    return await _get_services(request).catalog.get_plan(tenant.tenant_id, plan_id)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


@router.post("/subscriptions", response_model=Subscription, status_code=201)
async def create_subscription(
    body: SubscriptionCreate, request: Request, tenant: CurrentTenant
) -> Subscription:
    return await _get_services(request).subscriptions.create(tenant.tenant_id, body)


@router.get("/subscriptions", response_model=list[Subscription])
async def get_subscriptions(
    request: Request,
    tenant: CurrentTenant,
    client_id: str | None = None,
    status: SubscriptionStatus | None = None,
) -> list[Subscription]:
    return await _get_services(request).subscriptions.get_subscriptions(
        tenant.tenant_id, client_id=client_id, status=status
    )


@router.post("/subscriptions/run", response_model=InvoiceWorkflowResult)
async def run_due_subscriptions(request: Request, tenant: CurrentTenant) -> InvoiceWorkflowResult:
    """Invoice and roll over every subscription whose billing date has passed."""
    return await _get_services(request).runner.run_due_subscriptions(tenant.tenant_id)


@router.get("/subscriptions/{subscription_id}", response_model=Subscription)
async def get_subscription(
    subscription_id: str, request: Request, tenant: CurrentTenant
) -> Subscription:
    return await _get_services(request).subscriptions.get(tenant.tenant_id, subscription_id)


@router.patch("/subscriptions/{subscription_id}", response_model=Subscription)
async def update_subscription(
    subscription_id: str, body: SubscriptionUpdate, request: Request, tenant: CurrentTenant
) -> Subscription:
    return await _get_services(request).subscriptions.update(
        tenant.tenant_id, subscription_id, body
    )


@router.post("/subscriptions/{subscription_id}/cancel", response_model=Subscription)
async def cancel_subscription(
    subscription_id: str,
    request: Request,
    tenant: CurrentTenant,
    body: CancelRequest | None = None,
) -> Subscription:
    """Cancel a subscription. Repeated calls return the cancelled state."""
    end_date = body.end_date if body else None
    return await _get_services(request).subscriptions.cancel(
        tenant.tenant_id, subscription_id, end_date
    )


@router.post(
    "/subscriptions/{subscription_id}/invoices", response_model=Invoice, status_code=201
)
async def generate_invoice_for_subscription(
    subscription_id: str,
    request: Request,
    tenant: CurrentTenant,
    body: InvoiceGenerationOptions | None = None,
) -> Invoice:
    return await _get_services(request).generator.generate_for_subscription(
        tenant.tenant_id, subscription_id, body, actor=tenant.principal
    )


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@router.post("/usage", response_model=UsageRecord, status_code=201)
async def record_usage(
    body: UsageRecordCreate, request: Request, tenant: CurrentTenant
) -> UsageRecord:
    return await _get_services(request).ledger.record(tenant.tenant_id, body)


@router.get("/usage", response_model=list[UsageRecord])
async def get_usage_records(
    request: Request,
    tenant: CurrentTenant,
    client_id: str | None = None,
    subscription_id: str | None = None,
    resource_type: UsageResourceType | None = None,
    billing_period: str | None = None,
    invoiced: bool | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[UsageRecord]:
    filters = UsageFilters(
        client_id=client_id,
        subscription_id=subscription_id,
        resource_type=resource_type,
        billing_period=billing_period,
        invoiced=invoiced,
        start_date=start_date,
        end_date=end_date,
    )
    return await _get_services(request).ledger.query(tenant.tenant_id, filters)


@router.get("/usage/summary", response_model=list[UsageSummaryLine])
async def get_usage_summary(
    request: Request,
    tenant: CurrentTenant,
    client_id: str = Query(...),
    billing_period: str = Query(...),
) -> list[UsageSummaryLine]:
    """Uninvoiced usage grouped by resource."""
    return await _get_services(request).ledger.summarize(
        tenant.tenant_id, client_id, billing_period
    )


# ---------------------------------------------------------------------------
# Invoices and payments
# ---------------------------------------------------------------------------


@router.get("/invoices", response_model=list[Invoice])
async def list_invoices(
    request: Request,
    tenant: CurrentTenant,
    status: InvoiceStatus | None = None,
    subscription_id: str | None = None,
) -> list[Invoice]:
    return await _get_services(request).generator.list_invoices(
        tenant.tenant_id, status=status, subscription_id=subscription_id
    )


@router.post("/invoices/mark-overdue", response_model=list[Invoice])
async def mark_overdue_invoices(request: Request, tenant: CurrentTenant) -> list[Invoice]:
    return await _get_services(request).payments.mark_overdue_invoices(tenant.tenant_id)


@router.get("/invoices/{invoice_id}", response_model=Invoice)
async def get_invoice(invoice_id: str, request: Request, tenant: CurrentTenant) -> Invoice:
    return await _get_services(request).generator.get_invoice(tenant.tenant_id, invoice_id)


@router.post("/payments/events", response_model=Payment)
async def record_payment_event(
    body: PaymentEvent, request: Request, tenant: CurrentTenant
) -> Payment:
    """Ingest a COMPLETED/FAILED event from the payment collaborator."""
    return await _get_services(request).payments.record_payment_event(tenant.tenant_id, body)


# ---------------------------------------------------------------------------
# Recurring invoices
# ---------------------------------------------------------------------------


@router.post("/recurring", response_model=RecurringInvoiceEntry, status_code=201)
async def create_recurring_entry(
    body: RecurringInvoiceEntryCreate, request: Request, tenant: CurrentTenant
) -> RecurringInvoiceEntry:
    return await _get_services(request).runner.create_entry(tenant.tenant_id, body)


@router.get("/recurring", response_model=list[RecurringInvoiceEntry])
async def list_recurring_entries(
    request: Request,
    tenant: CurrentTenant,
    status: RecurringEntryStatus | None = None,
) -> list[RecurringInvoiceEntry]:
    return await _get_services(request).runner.list_entries(tenant.tenant_id, status=status)


@router.post("/recurring/run", response_model=list[GenerationResult])
async def generate_recurring_invoices(
    request: Request, tenant: CurrentTenant
) -> list[GenerationResult]:
    """Run every due recurring entry; one result per entry, failures included."""
    return await _get_services(request).runner.run_due(tenant.tenant_id)


@router.post("/recurring/{entry_id}/pause", response_model=RecurringInvoiceEntry)
async def pause_recurring_entry(
    entry_id: str, request: Request, tenant: CurrentTenant
) -> RecurringInvoiceEntry:
    return await _get_services(request).runner.pause(tenant.tenant_id, entry_id)


@router.post("/recurring/{entry_id}/resume", response_model=RecurringInvoiceEntry)
async def resume_recurring_entry(
    entry_id: str, request: Request, tenant: CurrentTenant
) -> RecurringInvoiceEntry:
    return await _get_services(request).runner.resume(tenant.tenant_id, entry_id)


# ---------------------------------------------------------------------------
# Settings and reports
# ---------------------------------------------------------------------------


@router.get("/settings", response_model=BillingSettings)
async def get_billing_settings(request: Request, tenant: CurrentTenant) -> BillingSettings:
    return await _get_services(request).settings_store.get(tenant.tenant_id)


@router.patch("/settings", response_model=BillingSettings)
async def update_billing_settings(
    body: BillingSettingsUpdate, request: Request, tenant: CurrentTenant
) -> BillingSettings:
    return await _get_services(request).settings_store.update(tenant.tenant_id, body)


@router.get("/reports", response_model=BillingReport)
async def get_billing_report(
    request: Request,
    tenant: CurrentTenant,
    start: datetime = Query(...),
    end: datetime = Query(...),
) -> BillingReport:
    return await _get_services(request).reporting.get_billing_report(
        tenant.tenant_id, start, end
    )
