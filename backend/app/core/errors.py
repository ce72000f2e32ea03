"""Payment service error taxonomy and their HTTP translation.

Gateway-facing failures carry a generic user-facing message; the provider's
own text is only exposed outside production.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import settings

logger = logging.getLogger(__name__)


class PaymentServiceError(Exception):
    """Base class for all payment service errors."""

    status_code = 500
    user_message = "An unexpected error occurred. Please try again later."

    def __init__(self, message: str, provider_message: str | None = None):
        super().__init__(message)
        self.message = message
        self.provider_message = provider_message


class ConfigurationError(PaymentServiceError):
    """Gateway configuration is missing or invalid."""

    user_message = "Payments are temporarily unavailable."


class GatewayAuthError(PaymentServiceError):
    """The gateway refused or failed the credential exchange."""

    status_code = 502
    user_message = "Payments are temporarily unavailable."


class GatewayRequestError(PaymentServiceError):
    """The gateway answered a push or query request with a non-success response."""

    status_code = 502
    user_message = "The payment request was not accepted by M-Pesa."


class PaymentOutcomeUnknownError(PaymentServiceError):
    """The push request was sent but its response was lost.

    The gateway may or may not have prompted the payer, so the request must
    not be resubmitted automatically.
    """

    status_code = 504
    user_message = (
        "We could not confirm whether the payment prompt was sent. "
        "Check your phone before trying again."
    )


class CallbackParseError(PaymentServiceError):
    """A gateway callback body could not be understood."""

    status_code = 400
    user_message = "Malformed callback."


class NotFoundError(PaymentServiceError):
    status_code = 404
    user_message = "Not found."

    def __init__(self, message: str):
        super().__init__(message)
        self.user_message = message


class AuthorizationError(PaymentServiceError):
    status_code = 403
    user_message = "Not authorized."


def error_body(exc: PaymentServiceError) -> dict[str, str]:
    """Build the JSON error body for a service error."""
    body = {"error": type(exc).__name__, "detail": exc.user_message}
    if exc.status_code >= 500 and not settings.is_production:
        body["provider_detail"] = exc.provider_message or exc.message
    return body


async def payment_service_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, PaymentServiceError)
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentServiceError, payment_service_error_handler)
