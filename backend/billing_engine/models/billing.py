"""Billing catalog, subscription and tenant settings models."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, Field, model_validator


def as_utc(value: datetime) -> datetime:
    """Read a datetime without tzinfo as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# Every stored or compared instant is timezone-aware
UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class Cadence(str, Enum):
    """How often a billing cycle recurs."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


# Cadences anchored on a day of the month rather than a weekday
MONTH_ANCHORED_CADENCES = frozenset({Cadence.MONTHLY, Cadence.QUARTERLY, Cadence.YEARLY})


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class PrincipalKind(str, Enum):
    USER = "user"
    SYSTEM = "system"


class Principal(BaseModel):
    """Actor on whose behalf an operation runs."""

    kind: PrincipalKind = PrincipalKind.USER
    id: str | None = None

    @classmethod
    def system(cls) -> "Principal":
        return cls(kind=PrincipalKind.SYSTEM, id=None)

    @classmethod
    def user(cls, user_id: str) -> "Principal":
        return cls(kind=PrincipalKind.USER, id=user_id)

    @property
    def is_system(self) -> bool:
        return self.kind == PrincipalKind.SYSTEM


class TenantContext(BaseModel):
    """Tenant and actor resolved by the identity layer for one call."""

    tenant_id: str
    principal: Principal = Field(default_factory=Principal.system)


class BillingCycleCreate(BaseModel):
    """Billing cycle creation payload."""

    name: str
    description: str | None = None
    cadence: Cadence
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    cutoff_days: int = Field(default=0, ge=0)
    grace_period_days: int = Field(default=0, ge=0)
    auto_generate: bool = True


class BillingCycleUpdate(BaseModel):
    """Partial billing cycle update."""

    name: str | None = None
    description: str | None = None
    cadence: Cadence | None = None
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    cutoff_days: int | None = Field(default=None, ge=0)
    grace_period_days: int | None = Field(default=None, ge=0)
    auto_generate: bool | None = None
    is_active: bool | None = None


class BillingCycleConfig(BaseModel):
    """Persisted billing cycle configuration."""

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    cadence: Cadence
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    day_of_week: int | None = Field(default=None, ge=0, le=6)
    cutoff_days: int = Field(default=0, ge=0)
    grace_period_days: int = Field(default=0, ge=0)
    auto_generate: bool = True
    is_active: bool = True
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class PlanCreate(BaseModel):
    """Plan creation payload."""

    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)


class Plan(BaseModel):
    """Flat-priced plan a subscription is billed for each period."""

    id: str
    tenant_id: str
    name: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    is_active: bool = True
    created_at: UtcDatetime | None = None


class SubscriptionCreate(BaseModel):
    """Subscription creation payload."""

    client_id: str
    plan_id: str
    billing_cycle_id: str
    name: str
    description: str | None = None
    start_date: UtcDatetime
    end_date: UtcDatetime | None = None
    auto_renew: bool = True
    # Partial-period adjustment is not computed yet; the flag is stored only.
    proration: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _end_after_start(self) -> "SubscriptionCreate":
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date must not precede start_date")
        return self


class SubscriptionUpdate(BaseModel):
    """Partial subscription update. Status changes go through cancel()."""

    name: str | None = None
    description: str | None = None
    end_date: UtcDatetime | None = None
    auto_renew: bool | None = None
    proration: bool | None = None
    metadata: dict[str, Any] | None = None


class Subscription(BaseModel):
    """Persisted subscription state."""

    id: str
    tenant_id: str
    client_id: str
    plan_id: str
    billing_cycle_id: str
    name: str
    description: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    start_date: UtcDatetime
    end_date: UtcDatetime | None = None
    current_period_start: UtcDatetime
    current_period_end: UtcDatetime
    next_billing_date: UtcDatetime
    last_billing_date: UtcDatetime | None = None
    auto_renew: bool = True
    proration: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class BillingSettings(BaseModel):
    """Per-tenant billing settings, created lazily on first read."""

    tenant_id: str
    currency: str = "EUR"
    tax_rate: Decimal = Decimal("0")
    invoice_prefix: str = "INV-"
    invoice_number_start: int = Field(default=1000, ge=0)
    # Next value handed out by the tenant's invoice-number counter
    next_invoice_number: int | None = None
    payment_terms_days: int = Field(default=30, ge=0)
    grace_period_days: int = Field(default=0, ge=0)
    auto_generate_invoices: bool = True
    auto_send_invoices: bool = False
    retry_failed_payments: bool = True
    max_retry_attempts: int = Field(default=3, ge=0)
    retry_interval_days: int = Field(default=3, ge=0)
    dunning_enabled: bool = False
    created_at: UtcDatetime | None = None
    updated_at: UtcDatetime | None = None


class BillingSettingsUpdate(BaseModel):
    """Partial billing settings update."""

    currency: str | None = None
    tax_rate: Decimal | None = None
    invoice_prefix: str | None = None
    invoice_number_start: int | None = Field(default=None, ge=0)
    payment_terms_days: int | None = Field(default=None, ge=0)
    grace_period_days: int | None = Field(default=None, ge=0)
    auto_generate_invoices: bool | None = None
    auto_send_invoices: bool | None = None
    retry_failed_payments: bool | None = None
    max_retry_attempts: int | None = Field(default=None, ge=0)
    retry_interval_days: int | None = Field(default=None, ge=0)
    dunning_enabled: bool | None = None
