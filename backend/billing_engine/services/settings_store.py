"""Per-tenant billing settings, created lazily on first read."""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from decimal import Decimal

import structlog

from billing_engine.config import SettingsDefaults
from billing_engine.constants import MAX_TAX_RATE, MIN_TAX_RATE
from billing_engine.exceptions import BillingValidationError
from billing_engine.models.billing import BillingSettings, BillingSettingsUpdate
from billing_engine.services.repository import BillingRepository

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def validate_tax_rate(tax_rate: Decimal) -> Decimal:
    """Return ``tax_rate`` if it lies in [0, 1], else raise."""
    rate = Decimal(tax_rate)
    if not MIN_TAX_RATE <= rate <= MAX_TAX_RATE:
        raise BillingValidationError(
            f"Tax rate must be between {MIN_TAX_RATE} and {MAX_TAX_RATE}, got {rate}",
            details={"tax_rate": str(rate)},
        )
    return rate


class BillingSettingsStore:
    """Reads and updates tenant billing settings."""

    def __init__(
        self,
        repository: BillingRepository,
        defaults: SettingsDefaults | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.defaults = defaults or SettingsDefaults()
        self.now_provider = now_provider
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get(self, tenant_id: str) -> BillingSettings:
        settings = await self.repository.get_billing_settings(tenant_id)
        if settings is not None:
            return settings

        async with self._locks[tenant_id]:
            # Another task may have created it while we waited
            settings = await self.repository.get_billing_settings(tenant_id)
            if settings is not None:
                return settings

            now = self.now_provider()
            settings = BillingSettings(
                tenant_id=tenant_id,
                **self.defaults.model_dump(),
                created_at=now,
                updated_at=now,
            )
            settings = await self.repository.save_billing_settings(settings)
            logger.info("billing_settings_created", tenant_id=tenant_id)
            return settings

    async def update(self, tenant_id: str, patch: BillingSettingsUpdate) -> BillingSettings:
        changes = patch.model_dump(exclude_unset=True)
        if changes.get("tax_rate") is not None:
            changes["tax_rate"] = validate_tax_rate(changes["tax_rate"])
        if "currency" in changes and not changes["currency"]:
            raise BillingValidationError("Currency must not be empty")

        settings = await self.get(tenant_id)
        updated = settings.model_copy(
            update={k: v for k, v in changes.items() if v is not None}
        )
        updated.updated_at = self.now_provider()
        updated = await self.repository.save_billing_settings(updated)
        logger.info("billing_settings_updated", tenant_id=tenant_id, fields=sorted(changes))
        return updated
