"""Usage, invoice, recurring-generation, payment and report models."""

from decimal import Decimal
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field, model_validator

from billing_engine.models.billing import Principal, UtcDatetime


class UsageResourceType(str, Enum):
    """Metered coworking resources."""

    SPACE_BOOKING = "space_booking"
    SERVICE_CONSUMPTION = "service_consumption"
    MEMBERSHIP_PLAN = "membership_plan"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class RecurringEntryStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"


class PaymentStatus(str, Enum):
    """Outcomes reported by the payment collaborator."""

    COMPLETED = "completed"
    FAILED = "failed"


class UsageRecordCreate(BaseModel):
    """Metered consumption event reported by a metering collaborator."""

    client_id: str
    subscription_id: str | None = None
    resource_type: UsageResourceType
    resource_id: str
    quantity: Decimal = Field(gt=0)
    unit: str
    unit_price: Decimal = Field(ge=0)
    usage_date: UtcDatetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class UsageRecord(BaseModel):
    """Priced usage attributed to one billing period."""

    id: str
    tenant_id: str
    client_id: str
    subscription_id: str | None = None
    resource_type: UsageResourceType
    resource_id: str
    quantity: Decimal
    unit: str
    unit_price: Decimal
    total_cost: Decimal
    usage_date: UtcDatetime
    billing_period: str
    invoiced: bool = False
    invoice_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime | None = None

    @model_validator(mode="after")
    def _invoiced_has_invoice(self) -> "UsageRecord":
        if self.invoiced != (self.invoice_id is not None):
            raise ValueError("invoiced must be set exactly when invoice_id is set")
        return self


class UsageFilters(BaseModel):
    """Query filters for usage records. Date bounds are inclusive."""

    client_id: str | None = None
    subscription_id: str | None = None
    resource_type: UsageResourceType | None = None
    billing_period: str | None = None
    invoiced: bool | None = None
    start_date: UtcDatetime | None = None
    end_date: UtcDatetime | None = None

    def matches(self, record: UsageRecord) -> bool:
        if self.client_id is not None and record.client_id != self.client_id:
            return False
        if self.subscription_id is not None and record.subscription_id != self.subscription_id:
            return False
        if self.resource_type is not None and record.resource_type != self.resource_type:
            return False
        if self.billing_period is not None and record.billing_period != self.billing_period:
            return False
        if self.invoiced is not None and record.invoiced != self.invoiced:
            return False
        if self.start_date is not None and record.usage_date < self.start_date:
            return False
        if self.end_date is not None and record.usage_date > self.end_date:
            return False
        return True


class UsageKey(NamedTuple):
    """Grouping key for usage aggregation."""

    resource_type: UsageResourceType
    resource_id: str


class UsageSummaryLine(BaseModel):
    """Aggregated uninvoiced usage for one resource."""

    resource_type: UsageResourceType
    resource_id: str
    unit: str
    total_quantity: Decimal = Decimal("0")
    total_cost: Decimal = Decimal("0")
    record_ids: list[str] = Field(default_factory=list)

    @property
    def key(self) -> UsageKey:
        return UsageKey(self.resource_type, self.resource_id)


class InvoiceLineItem(BaseModel):
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal
    usage_record_id: str | None = None


class Invoice(BaseModel):
    """Invoice produced by one successful generation call."""

    id: str
    tenant_id: str
    client_id: str
    subscription_id: str | None = None
    number: str
    title: str
    description: str | None = None
    billing_period: str
    items: list[InvoiceLineItem] = Field(default_factory=list)
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    currency: str
    due_date: UtcDatetime
    status: InvoiceStatus = InvoiceStatus.DRAFT
    created_by: Principal = Field(default_factory=Principal.system)
    created_at: UtcDatetime | None = None
    paid_at: UtcDatetime | None = None

    @property
    def usage_record_ids(self) -> list[str]:
        return [item.usage_record_id for item in self.items if item.usage_record_id]


class InvoiceGenerationOptions(BaseModel):
    include_usage: bool = False
    billing_period: str | None = None
    due_date: UtcDatetime | None = None
    auto_send: bool = False


class RecurringInvoiceEntryCreate(BaseModel):
    subscription_id: str
    include_previous_usage: bool = True
    auto_send: bool = False
    # Defaults to "now", i.e. due on the next run
    next_generation: UtcDatetime | None = None


class RecurringInvoiceEntry(BaseModel):
    """Schedule for generating a subscription's invoices automatically."""

    id: str
    tenant_id: str
    subscription_id: str
    status: RecurringEntryStatus = RecurringEntryStatus.ACTIVE
    include_previous_usage: bool = True
    auto_send: bool = False
    last_generated: UtcDatetime | None = None
    next_generation: UtcDatetime
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class GenerationResult(BaseModel):
    """Tagged outcome of one generation attempt inside a batch run."""

    success: bool
    subscription_id: str
    entry_id: str | None = None
    invoice: Invoice | None = None
    error: str | None = None
    error_code: str | None = None

    @classmethod
    def ok(cls, invoice: Invoice, *, subscription_id: str, entry_id: str | None = None) -> "GenerationResult":
        return cls(success=True, subscription_id=subscription_id, entry_id=entry_id, invoice=invoice)

    @classmethod
    def failed(
        cls,
        error: Exception,
        *,
        subscription_id: str,
        entry_id: str | None = None,
    ) -> "GenerationResult":
        return cls(
            success=False,
            subscription_id=subscription_id,
            entry_id=entry_id,
            error=str(error) or error.__class__.__name__,
            error_code=getattr(error, "code", error.__class__.__name__),
        )


class InvoiceWorkflowResult(BaseModel):
    """Outcome of generating invoices for every due subscription."""

    results: list[GenerationResult] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def invoices_generated(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)


class PaymentEvent(BaseModel):
    """COMPLETED/FAILED notification from the payment collaborator."""

    event_id: str
    invoice_id: str | None = None
    client_id: str | None = None
    amount: Decimal = Field(ge=0)
    currency: str = "EUR"
    status: PaymentStatus
    processed_at: UtcDatetime


class Payment(BaseModel):
    id: str
    tenant_id: str
    event_id: str
    invoice_id: str | None = None
    client_id: str | None = None
    amount: Decimal
    currency: str
    status: PaymentStatus
    processed_at: UtcDatetime


class BillingReport(BaseModel):
    """Aggregate financial metrics for a reporting window."""

    total_revenue: Decimal
    total_subscriptions: int
    active_subscriptions: int
    subscriptions_by_status: dict[str, int] = Field(default_factory=dict)
    overdue_invoices: int
    unpaid_amount: Decimal
    monthly_recurring_revenue: Decimal
    churn_rate: float
    average_revenue_per_user: Decimal
