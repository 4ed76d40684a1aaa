"""Translate billing errors into HTTP responses."""

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from billing_engine.exceptions import (
    BillingError,
    BillingValidationError,
    ConflictError,
    NotFoundError,
    TransientInfrastructureError,
)

logger = structlog.get_logger(__name__)

# First match wins, so subclasses must precede their bases
_STATUS_BY_ERROR: list[tuple[type[BillingError], int]] = [
    (NotFoundError, 404),
    (BillingValidationError, 400),
    (ConflictError, 409),
    (TransientInfrastructureError, 503),
]


def status_code_for(exc: BillingError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    status_code = status_code_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "billing_error",
        path=request.url.path,
        status_code=status_code,
        code=exc.code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, "details": exc.details},
    )
