"""
Billing error taxonomy.

Services raise these; the API layer maps them to HTTP responses and the
recurring runner folds them into per-entry failure results.
"""


class BillingError(Exception):
    """Base exception for billing operations."""

    code = "BILLING_ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.details = details or {}


class NotFoundError(BillingError):
    """A tenant-scoped entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str, **kwargs):
        super().__init__(f"{entity} not found: {entity_id}", **kwargs)
        self.entity = entity
        self.entity_id = entity_id


class SubscriptionNotFoundError(NotFoundError):
    code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id: str, **kwargs):
        super().__init__("Subscription", subscription_id, **kwargs)


class BillingCycleNotFoundError(NotFoundError):
    code = "BILLING_CYCLE_NOT_FOUND"

    def __init__(self, cycle_id: str, **kwargs):
        super().__init__("Billing cycle", cycle_id, **kwargs)


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"

    def __init__(self, plan_id: str, **kwargs):
        super().__init__("Plan", plan_id, **kwargs)


class RecurringEntryNotFoundError(NotFoundError):
    code = "RECURRING_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str, **kwargs):
        super().__init__("Recurring invoice entry", entry_id, **kwargs)


class InvoiceNotFoundError(NotFoundError):
    code = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str, **kwargs):
        super().__init__("Invoice", invoice_id, **kwargs)


class BillingValidationError(BillingError):
    """Input violates a billing rule (anchor pairing, tax rate, quantities)."""

    code = "VALIDATION_ERROR"


class ConfigurationError(BillingValidationError):
    """A billing cycle configuration cannot be scheduled."""

    code = "CONFIGURATION_ERROR"


class ConflictError(BillingError):
    """Another invoice already claimed the usage this one tried to bill."""

    code = "CONFLICT"


class TransientInfrastructureError(BillingError):
    """Persistence failed mid-write; the atomic unit was not committed."""

    code = "TRANSIENT_INFRASTRUCTURE_ERROR"


class SubscriptionCancelledError(BillingValidationError):
    """The subscription can no longer be invoiced on a schedule."""

    code = "SUBSCRIPTION_CANCELLED"

    def __init__(self, subscription_id: str, **kwargs):
        kwargs.setdefault("details", {"subscription_id": subscription_id})
        super().__init__(f"Subscription {subscription_id} is cancelled", **kwargs)
        self.subscription_id = subscription_id
