"""
Domain exceptions for the billing core and their HTTP translation.

Services raise these; only the handlers registered in app.main turn them into
responses. Every error carries a stable machine-readable code so clients can
branch without parsing messages.
"""
import logging
from datetime import datetime

from fastapi import Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class BillingError(Exception):
    """Base class for every error the billing core surfaces to callers."""

    code = "BILLING_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, code: str | None = None, **extra):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        for key, value in self.extra.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body

    def headers(self) -> dict[str, str]:
        return {}


class NotFoundError(BillingError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"


class UnknownMetricError(NotFoundError):
    code = "UNKNOWN_METRIC"


class UnknownFeatureError(NotFoundError):
    code = "UNKNOWN_FEATURE"


class SupportCaseNotFoundError(NotFoundError):
    code = "CASE_NOT_FOUND"


class UnauthorizedError(BillingError):
    code = "AUTH_REQUIRED"
    status_code = status.HTTP_401_UNAUTHORIZED

    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class ForbiddenError(BillingError):
    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN


class FeatureNotAvailableError(ForbiddenError):
    code = "PLAN_REQUIRED"


class StepUpRequiredError(BillingError):
    """Session is valid but the last strong authentication is too old."""

    code = "ADMIN_STEP_UP_REQUIRED"
    status_code = status.HTTP_401_UNAUTHORIZED


class RateLimitedError(BillingError):
    """
    Quota or admin rate limit exhausted.

    Always reports limit, remaining and reset_at so the client can render an
    accurate countdown.
    """

    code = "USAGE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(
        self,
        message: str,
        limit: int,
        remaining: int,
        reset_at: datetime,
        code: str | None = None,
        **extra,
    ):
        super().__init__(message, code=code, limit=limit, remaining=remaining, reset_at=reset_at, **extra)
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    def headers(self) -> dict[str, str]:
        reset_epoch = int(self.reset_at.timestamp())
        retry_after = max(0, reset_epoch - int(datetime.now(self.reset_at.tzinfo).timestamp()))
        return {
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(reset_epoch),
        }


class StorageConflictError(BillingError):
    """The atomic operation could not commit. Retry the request, not the primitive."""

    code = "STORAGE_CONFLICT"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidTransitionError(BillingError):
    code = "INVALID_TRANSITION"
    status_code = status.HTTP_400_BAD_REQUEST


class ReopenWindowExpiredError(InvalidTransitionError):
    code = "SUPPORT_REOPEN_WINDOW_EXPIRED"


class NoBillingAccountError(BillingError):
    code = "NO_BILLING_ACCOUNT"
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentProviderError(BillingError):
    code = "PAYMENT_PROVIDER_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY


class PaymentProviderConfigError(PaymentProviderError):
    code = "PAYMENT_PROVIDER_MISCONFIGURED"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


async def billing_exception_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Translate a domain error into its JSON body, status and headers."""
    if exc.status_code >= 500:
        logger.error(f"[ERROR] {exc.code}: {exc.message}")
    else:
        logger.info(f"[DENIED] {exc.code}: {exc.message} ({request.method} {request.url.path})")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers(),
    )


async def sqlalchemy_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Handle SQLAlchemy database errors."""
    logger.error(f"[ERROR] Database error: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Database error occurred", "code": "DATABASE_ERROR"},
    )
