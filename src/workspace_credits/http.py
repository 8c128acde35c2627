"""FastAPI integration: user-visible billing errors as JSON responses."""

from typing import cast

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from workspace_credits.exceptions import (
    CreditError,
    InsufficientCreditsError,
    InvalidPlanError,
    LimitExceededError,
    SpendingLimitExceededError,
)

logger = structlog.get_logger()

ADD_CREDITS_URL = "/settings/billing"
UPGRADE_URL = "/settings/plans"

# Only these reach end users; every other CreditError stays internal.
USER_VISIBLE_ERRORS: dict[type[CreditError], int] = {
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    SpendingLimitExceededError: status.HTTP_402_PAYMENT_REQUIRED,
    LimitExceededError: status.HTTP_400_BAD_REQUEST,
    InvalidPlanError: status.HTTP_400_BAD_REQUEST,
}


def create_billing_error_detail(exc: CreditError) -> dict[str, object]:
    """Build the JSON body for a billing error response."""
    detail: dict[str, object] = exc.to_detail()
    if isinstance(exc, InsufficientCreditsError | SpendingLimitExceededError):
        detail["add_credits_url"] = ADD_CREDITS_URL
    if isinstance(exc, LimitExceededError):
        detail["upgrade_url"] = UPGRADE_URL
    return detail


def status_code_for(exc: CreditError) -> int | None:
    """HTTP status for a user-visible error, None for internal ones."""
    for error_type, status_code in USER_VISIBLE_ERRORS.items():
        if isinstance(exc, error_type):
            return status_code
    return None


async def _billing_error_handler(request: Request, exc: Exception) -> JSONResponse:
    credit_error = cast("CreditError", exc)
    status_code = status_code_for(credit_error) or status.HTTP_400_BAD_REQUEST
    logger.info(
        "Billing error returned to client",
        path=str(request.url.path),
        method=request.method,
        error_code=credit_error.error_code,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=create_billing_error_detail(credit_error))


def register_exception_handlers(app: FastAPI) -> None:
    """Map user-visible credit errors to 402/400 responses on ``app``."""
    for error_type in USER_VISIBLE_ERRORS:
        app.add_exception_handler(error_type, _billing_error_handler)
