"""
Invoice generation.

Combines a subscription's flat plan price with its outstanding usage into a
single invoice. Reading the claimable usage, allocating the number and
writing invoice plus usage claims form one atomic unit: it runs under a
per-(tenant, subscription, billing_period) lock and is retried as a whole
on transient persistence failures.
"""

import asyncio
import uuid
from collections import defaultdict
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from billing_engine.config import BillingConfig
from billing_engine.constants import MONEY_QUANTUM, ZERO
from billing_engine.exceptions import (
    BillingValidationError,
    InvoiceNotFoundError,
    TransientInfrastructureError,
)
from billing_engine.models.billing import (
    BillingSettings,
    Plan,
    Principal,
    Subscription,
)
from billing_engine.models.invoicing import (
    Invoice,
    InvoiceGenerationOptions,
    InvoiceLineItem,
    InvoiceStatus,
    UsageRecord,
)
from billing_engine.services.catalog import BillingCatalog
from billing_engine.services.repository import BillingRepository
from billing_engine.services.scheduler import billing_period_label
from billing_engine.services.settings_store import BillingSettingsStore, validate_tax_rate
from billing_engine.services.subscription_manager import SubscriptionManager
from billing_engine.services.usage_ledger import UsageLedger

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def compute_tax(subtotal: Decimal, tax_rate: Decimal) -> Decimal:
    """Tax on ``subtotal``, rounded half-up to cents."""
    return (subtotal * tax_rate).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def format_invoice_number(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence}"


class InvoiceGenerator:
    """Builds and persists subscription invoices exactly once per usage record."""

    def __init__(
        self,
        repository: BillingRepository,
        catalog: BillingCatalog,
        subscriptions: SubscriptionManager,
        settings_store: BillingSettingsStore,
        ledger: UsageLedger,
        config: BillingConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.settings_store = settings_store
        self.ledger = ledger
        self.config = config or BillingConfig()
        self.now_provider = now_provider
        self._locks: dict[tuple[str, str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    async def generate_for_subscription(
        self,
        tenant_id: str,
        subscription_id: str,
        options: InvoiceGenerationOptions | None = None,
        *,
        actor: Principal | None = None,
    ) -> Invoice:
        """
        Generate one invoice for a subscription's billing period.

        Args:
            tenant_id: Owning tenant.
            subscription_id: Subscription to bill.
            options: Usage inclusion, billing period, due date and send flag.
            actor: Who requested the invoice; the system principal when omitted.

        Returns:
            The persisted invoice.

        Raises:
            SubscriptionNotFoundError: Subscription does not exist for the tenant.
            PlanNotFoundError: The subscription's plan does not exist.
            BillingValidationError: Tax rate outside [0, 1] or a non-positive
                usage quantity.
            ConflictError: Usage read by this call was claimed by another invoice.
            TransientInfrastructureError: The write kept failing after retries.
        """
        options = options or InvoiceGenerationOptions()
        subscription = await self.subscriptions.get(tenant_id, subscription_id)
        plan = await self.catalog.get_plan(tenant_id, subscription.plan_id)
        settings = await self.settings_store.get(tenant_id)
        tax_rate = validate_tax_rate(settings.tax_rate)

        billing_period = options.billing_period or billing_period_label(self.now_provider())

        write_once = retry(
            stop=stop_after_attempt(self.config.write_max_attempts),
            wait=wait_exponential(
                multiplier=self.config.write_backoff_seconds,
                max=self.config.write_backoff_max_seconds,
            ),
            retry=retry_if_exception_type(TransientInfrastructureError),
            reraise=True,
        )(self._write_invoice)

        async with self._locks[(tenant_id, subscription_id, billing_period)]:
            invoice = await write_once(
                subscription,
                plan,
                settings,
                tax_rate,
                billing_period,
                options,
                actor or Principal.system(),
            )

        logger.info(
            "invoice_generated",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            invoice_id=invoice.id,
            invoice_number=invoice.number,
            billing_period=billing_period,
            usage_records=len(invoice.usage_record_ids),
            total=invoice.total,
        )
        return invoice

    async def _write_invoice(
        self,
        subscription: Subscription,
        plan: Plan,
        settings: BillingSettings,
        tax_rate: Decimal,
        billing_period: str,
        options: InvoiceGenerationOptions,
        actor: Principal,
    ) -> Invoice:
        tenant_id = subscription.tenant_id
        usage_records: list[UsageRecord] = []
        if options.include_usage:
            usage_records = await self.ledger.uninvoiced_for_subscription(
                tenant_id, subscription.client_id, subscription.id, billing_period
            )
        for record in usage_records:
            if record.quantity <= 0:
                raise BillingValidationError(
                    f"Usage record {record.id} has non-positive quantity {record.quantity}",
                    details={"usage_record_id": record.id},
                )

        items = [
            InvoiceLineItem(
                description=f"{plan.name} - {billing_period}",
                quantity=Decimal("1"),
                unit_price=plan.price,
                total=plan.price,
            )
        ]
        items.extend(
            InvoiceLineItem(
                description=f"{record.resource_type.value} - {record.unit}",
                quantity=record.quantity,
                unit_price=record.unit_price,
                total=record.total_cost,
                usage_record_id=record.id,
            )
            for record in usage_records
        )

        subtotal = sum((item.total for item in items), ZERO)
        tax = compute_tax(subtotal, tax_rate)
        now = self.now_provider()

        sequence = await self.repository.next_invoice_number(tenant_id)
        invoice = Invoice(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            client_id=subscription.client_id,
            subscription_id=subscription.id,
            number=format_invoice_number(settings.invoice_prefix, sequence),
            title=f"{subscription.name} - {billing_period}",
            description=f"Invoice for {subscription.name} subscription",
            billing_period=billing_period,
            items=items,
            subtotal=subtotal,
            tax=tax,
            total=subtotal + tax,
            currency=settings.currency,
            due_date=options.due_date or now + timedelta(days=settings.payment_terms_days),
            status=InvoiceStatus.SENT if options.auto_send else InvoiceStatus.DRAFT,
            created_by=actor,
            created_at=now,
        )
        return await self.repository.create_invoice_with_usage(
            invoice, [record.id for record in usage_records]
        )

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = await self.repository.get_invoice(tenant_id, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    async def list_invoices(
        self,
        tenant_id: str,
        *,
        status: InvoiceStatus | None = None,
        subscription_id: str | None = None,
    ) -> list[Invoice]:
        return await self.repository.list_invoices(
            tenant_id, status=status, subscription_id=subscription_id
        )
