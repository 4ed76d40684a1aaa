"""Payment events from the payment collaborator and overdue invoice sweeps."""

import uuid
from datetime import UTC, datetime, timedelta

import structlog

from billing_engine.exceptions import InvoiceNotFoundError
from billing_engine.models.invoicing import (
    Invoice,
    InvoiceStatus,
    Payment,
    PaymentEvent,
    PaymentStatus,
)
from billing_engine.services.repository import BillingRepository
from billing_engine.services.settings_store import BillingSettingsStore

logger = structlog.get_logger(__name__)

# Invoices a COMPLETED payment may settle
_PAYABLE_STATUSES = frozenset({InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class PaymentProcessor:
    def __init__(
        self,
        repository: BillingRepository,
        settings_store: BillingSettingsStore,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.settings_store = settings_store
        self.now_provider = now_provider

    async def record_payment_event(self, tenant_id: str, event: PaymentEvent) -> Payment:
        """
        Ingest a COMPLETED/FAILED event.

        A redelivered event changes nothing and returns the payment stored
        on first delivery.

        A COMPLETED event for an unpaid invoice marks it PAID.

        Raises:
            InvoiceNotFoundError: The event references an unknown invoice.
        """
        invoice: Invoice | None = None
        if event.invoice_id is not None:
            invoice = await self.repository.get_invoice(tenant_id, event.invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(event.invoice_id)

        payment = Payment(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            event_id=event.event_id,
            invoice_id=event.invoice_id,
            client_id=event.client_id or (invoice.client_id if invoice else None),
            amount=event.amount,
            currency=event.currency,
            status=event.status,
            processed_at=event.processed_at,
        )
        if not await self.repository.record_payment(payment):
            logger.info("payment_event_duplicate", tenant_id=tenant_id, event_id=event.event_id)
            stored = await self.repository.get_payment_by_event(tenant_id, event.event_id)
            return stored or payment

        logger.info(
            "payment_recorded",
            tenant_id=tenant_id,
            event_id=event.event_id,
            invoice_id=event.invoice_id,
            status=event.status.value,
            amount=event.amount,
        )

        if (
            invoice is not None
            and event.status == PaymentStatus.COMPLETED
            and invoice.status in _PAYABLE_STATUSES
        ):
            await self.repository.update_invoice_status(
                tenant_id, invoice.id, InvoiceStatus.PAID, paid_at=event.processed_at
            )
            logger.info("invoice_paid", tenant_id=tenant_id, invoice_id=invoice.id)

        return payment

    async def mark_overdue_invoices(self, tenant_id: str) -> list[Invoice]:
        """Move SENT invoices past due date plus grace period to OVERDUE."""
        settings = await self.settings_store.get(tenant_id)
        cutoff = self.now_provider() - timedelta(days=settings.grace_period_days)

        sent = await self.repository.list_invoices(tenant_id, status=InvoiceStatus.SENT)
        overdue: list[Invoice] = []
        for invoice in sent:
            if invoice.due_date >= cutoff:
                continue
            updated = await self.repository.update_invoice_status(
                tenant_id, invoice.id, InvoiceStatus.OVERDUE
            )
            if updated is not None:
                overdue.append(updated)

        if overdue:
            logger.info("invoices_marked_overdue", tenant_id=tenant_id, count=len(overdue))
        return overdue
