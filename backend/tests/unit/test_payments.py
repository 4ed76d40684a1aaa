"""Unit tests for payment events and overdue sweeps."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from billing_engine.exceptions import InvoiceNotFoundError
from billing_engine.models.billing import BillingSettingsUpdate
from billing_engine.models.invoicing import (
    InvoiceGenerationOptions,
    InvoiceStatus,
    PaymentEvent,
    PaymentStatus,
)

TENANT = "tenant-a"


def _event(invoice_id: str | None, event_id: str = "evt-1", status=PaymentStatus.COMPLETED) -> PaymentEvent:
    return PaymentEvent(
        event_id=event_id,
        invoice_id=invoice_id,
        amount=Decimal("50"),
        status=status,
        processed_at=datetime(2026, 1, 20, tzinfo=UTC),
    )


@pytest.fixture
async def sent_invoice(services, subscription):
    return await services.generator.generate_for_subscription(
        TENANT, subscription.id, InvoiceGenerationOptions(auto_send=True)
    )


class TestRecordPaymentEvent:
    async def test_completed_payment_marks_invoice_paid(self, services, sent_invoice):
        payment = await services.payments.record_payment_event(TENANT, _event(sent_invoice.id))

        invoice = await services.generator.get_invoice(TENANT, sent_invoice.id)
        assert invoice.status == InvoiceStatus.PAID
        assert invoice.paid_at == datetime(2026, 1, 20, tzinfo=UTC)
        assert payment.client_id == "client-1"

    async def test_failed_payment_leaves_invoice_unpaid(self, services, sent_invoice):
        await services.payments.record_payment_event(
            TENANT, _event(sent_invoice.id, status=PaymentStatus.FAILED)
        )

        invoice = await services.generator.get_invoice(TENANT, sent_invoice.id)
        assert invoice.status == InvoiceStatus.SENT

    async def test_redelivered_event_is_recorded_once(self, services, repo, sent_invoice):
        first = await services.payments.record_payment_event(TENANT, _event(sent_invoice.id))
        again = await services.payments.record_payment_event(TENANT, _event(sent_invoice.id))

        assert len(repo.payments) == 1
        assert again.id == first.id
        assert again == repo.payments[first.id]

    async def test_same_event_id_in_other_tenant_is_distinct(self, services, repo):
        await services.payments.record_payment_event(TENANT, _event(None))
        await services.payments.record_payment_event("tenant-b", _event(None))

        assert len(repo.payments) == 2

    async def test_unknown_invoice(self, services):
        with pytest.raises(InvoiceNotFoundError):
            await services.payments.record_payment_event(TENANT, _event("missing"))

    async def test_invoice_of_other_tenant_is_unknown(self, services, sent_invoice):
        with pytest.raises(InvoiceNotFoundError):
            await services.payments.record_payment_event("tenant-b", _event(sent_invoice.id))


class TestMarkOverdue:
    async def test_sent_invoice_past_due_becomes_overdue(self, services, sent_invoice, clock):
        clock.set(datetime(2026, 2, 15, tzinfo=UTC))

        overdue = await services.payments.mark_overdue_invoices(TENANT)

        assert [inv.id for inv in overdue] == [sent_invoice.id]
        assert overdue[0].status == InvoiceStatus.OVERDUE

    async def test_not_yet_due(self, services, sent_invoice, clock):
        clock.set(datetime(2026, 2, 10, tzinfo=UTC))

        assert await services.payments.mark_overdue_invoices(TENANT) == []

    async def test_grace_period_delays_overdue(self, services, sent_invoice, clock):
        await services.settings_store.update(TENANT, BillingSettingsUpdate(grace_period_days=7))
        clock.set(datetime(2026, 2, 18, tzinfo=UTC))

        assert await services.payments.mark_overdue_invoices(TENANT) == []

        clock.set(datetime(2026, 2, 22, tzinfo=UTC))
        assert len(await services.payments.mark_overdue_invoices(TENANT)) == 1

    async def test_drafts_and_paid_invoices_untouched(self, services, subscription, sent_invoice, clock):
        await services.generator.generate_for_subscription(TENANT, subscription.id)
        await services.payments.record_payment_event(TENANT, _event(sent_invoice.id))
        clock.set(datetime(2026, 6, 1, tzinfo=UTC))

        assert await services.payments.mark_overdue_invoices(TENANT) == []
