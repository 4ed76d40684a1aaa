"""Unit tests for billing error to HTTP status mapping."""

import pytest

from billing_engine.api.errors import status_code_for
from billing_engine.exceptions import (
    BillingError,
    BillingValidationError,
    ConfigurationError,
    ConflictError,
    InvoiceNotFoundError,
    SubscriptionCancelledError,
    SubscriptionNotFoundError,
    TransientInfrastructureError,
)


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (SubscriptionNotFoundError("sub-1"), 404),
        (InvoiceNotFoundError("inv-1"), 404),
        (BillingValidationError("bad"), 400),
        (ConfigurationError("unknown cadence"), 400),
        (SubscriptionCancelledError("sub-1"), 400),
        (ConflictError("claimed"), 409),
        (TransientInfrastructureError("down"), 503),
        (BillingError("unexpected"), 500),
    ],
)
def test_status_code_for(error, status_code):
    assert status_code_for(error) == status_code


def test_not_found_message_names_entity():
    error = SubscriptionNotFoundError("sub-1")
    assert error.message == "Subscription not found: sub-1"
    assert error.code == "SUBSCRIPTION_NOT_FOUND"


def test_code_override():
    assert BillingValidationError("bad", code="TAX_RATE_OUT_OF_RANGE").code == "TAX_RATE_OUT_OF_RANGE"
