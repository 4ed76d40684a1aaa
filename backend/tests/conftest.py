"""
Shared test fixtures for the billing engine test suite.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import structlog
from fastapi.testclient import TestClient

from billing_engine.config import BillingConfig
from billing_engine.dependencies import BillingServices, build_services
from billing_engine.models.billing import (
    BillingCycleConfig,
    BillingCycleCreate,
    Cadence,
    Plan,
    PlanCreate,
    Subscription,
    SubscriptionCreate,
)
from billing_engine.services.repository import InMemoryBillingRepository

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def set(self, now: datetime) -> None:
        self._now = now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep tests on in-memory storage regardless of the developer's .env."""
    monkeypatch.setenv("BILLING__STORAGE_BACKEND", "memory")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 1, 15, 9, 0, tzinfo=UTC))


@pytest.fixture
def repo() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def config() -> BillingConfig:
    """No backoff between write retries so retry tests stay fast."""
    return BillingConfig(write_backoff_seconds=0, write_backoff_max_seconds=0)


@pytest.fixture
def services(repo, config, clock) -> BillingServices:
    return build_services(repo, config, now_provider=clock.now)


@pytest.fixture
async def monthly_cycle(services: BillingServices) -> BillingCycleConfig:
    return await services.catalog.create_billing_cycle(
        TENANT, BillingCycleCreate(name="Monthly", cadence=Cadence.MONTHLY)
    )


@pytest.fixture
async def desk_plan(services: BillingServices) -> Plan:
    return await services.catalog.create_plan(
        TENANT, PlanCreate(name="Hot desk", price=Decimal("50"))
    )


@pytest.fixture
async def subscription(
    services: BillingServices, monthly_cycle: BillingCycleConfig, desk_plan: Plan
) -> Subscription:
    """ACTIVE monthly subscription for client-1 starting 2026-01-01."""
    return await services.subscriptions.create(
        TENANT,
        SubscriptionCreate(
            client_id="client-1",
            plan_id=desk_plan.id,
            billing_cycle_id=monthly_cycle.id,
            name="Hot desk membership",
            start_date=datetime(2026, 1, 1, tzinfo=UTC),
        ),
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from billing_engine.config import get_settings

    get_settings.cache_clear()

    from billing_engine.main import app

    return TestClient(app)
