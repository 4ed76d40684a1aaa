"""Wiring of the billing services around one repository."""

from dataclasses import dataclass
from datetime import UTC, datetime

from billing_engine.config import BillingConfig
from billing_engine.services.catalog import BillingCatalog
from billing_engine.services.invoice_generator import InvoiceGenerator
from billing_engine.services.payments import PaymentProcessor
from billing_engine.services.recurring_runner import RecurringInvoiceRunner
from billing_engine.services.reporting import ReportingEngine
from billing_engine.services.repository import BillingRepository
from billing_engine.services.settings_store import BillingSettingsStore
from billing_engine.services.subscription_manager import SubscriptionManager
from billing_engine.services.usage_ledger import UsageLedger


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class BillingServices:
    """Services created once at startup and shared by every request."""

    repository: BillingRepository
    catalog: BillingCatalog
    subscriptions: SubscriptionManager
    ledger: UsageLedger
    settings_store: BillingSettingsStore
    generator: InvoiceGenerator
    runner: RecurringInvoiceRunner
    reporting: ReportingEngine
    payments: PaymentProcessor


def build_services(
    repository: BillingRepository,
    config: BillingConfig | None = None,
    now_provider=_utcnow,
) -> BillingServices:
    config = config or BillingConfig()
    catalog = BillingCatalog(repository, now_provider=now_provider)
    subscriptions = SubscriptionManager(repository, catalog, now_provider=now_provider)
    ledger = UsageLedger(repository, now_provider=now_provider)
    settings_store = BillingSettingsStore(
        repository, defaults=config.defaults, now_provider=now_provider
    )
    generator = InvoiceGenerator(
        repository,
        catalog,
        subscriptions,
        settings_store,
        ledger,
        config=config,
        now_provider=now_provider,
    )
    runner = RecurringInvoiceRunner(
        repository,
        catalog,
        subscriptions,
        settings_store,
        generator,
        config=config,
        now_provider=now_provider,
    )
    return BillingServices(
        repository=repository,
        catalog=catalog,
        subscriptions=subscriptions,
        ledger=ledger,
        settings_store=settings_store,
        generator=generator,
        runner=runner,
        reporting=ReportingEngine(repository),
        payments=PaymentProcessor(repository, settings_store, now_provider=now_provider),
    )
