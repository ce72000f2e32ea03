"""Shared M-Pesa Daraja configuration and call policy.

Holds the gateway endpoints, the ``MpesaConfig`` value object built from
settings, and the bounded retry policy used for idempotent gateway calls
(token and status query). STK push requests never go through it.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.core.config import Settings, settings
from app.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Returned by the query endpoint while the payer has not answered the prompt
PROCESSING_ERROR_CODE = "500.001.1001"
# ResultCodes of an accepted query whose transaction is still in flight
PROCESSING_RESULT_CODES = frozenset({"4999"})


class TransientGatewayError(Exception):
    """A retryable gateway failure (timeout, transport error, 5xx)."""


@dataclass(frozen=True)
class MpesaConfig:
    """Daraja credentials and call policy."""

    environment: str = "sandbox"
    consumer_key: str = ""
    consumer_secret: str = ""
    short_code: str = ""
    passkey: str = ""
    callback_url: str = ""
    transaction_type: str = "CustomerPayBillOnline"
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    token_refresh_margin_seconds: int = 60

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "MpesaConfig":
        source = source or settings
        return cls(
            environment=source.MPESA_ENVIRONMENT,
            consumer_key=source.MPESA_CONSUMER_KEY,
            consumer_secret=source.MPESA_CONSUMER_SECRET,
            short_code=source.MPESA_SHORTCODE,
            passkey=source.MPESA_PASSKEY,
            callback_url=source.MPESA_CALLBACK_URL,
            transaction_type=source.MPESA_TRANSACTION_TYPE,
            timeout_seconds=source.MPESA_TIMEOUT_SECONDS,
            max_attempts=source.MPESA_MAX_ATTEMPTS,
            retry_backoff_seconds=source.MPESA_RETRY_BACKOFF_SECONDS,
            token_refresh_margin_seconds=source.MPESA_TOKEN_REFRESH_MARGIN_SECONDS,
        )

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return PRODUCTION_BASE_URL
        return SANDBOX_BASE_URL

    def require(self, *fields: str) -> None:
        """Raise ConfigurationError if any of the named fields is blank."""
        missing = [name for name in fields if not str(getattr(self, name)).strip()]
        if missing:
            raise ConfigurationError(
                "M-Pesa configuration is incomplete: missing " + ", ".join(missing)
            )

    def require_credentials(self) -> None:
        self.require("consumer_key", "consumer_secret")

    def require_push_settings(self) -> None:
        self.require("consumer_key", "consumer_secret", "short_code", "passkey", "callback_url")

    def require_query_settings(self) -> None:
        self.require("consumer_key", "consumer_secret", "short_code", "passkey")


def build_retrying(config: MpesaConfig) -> Retrying:
    """Bounded exponential-backoff policy for idempotent gateway calls."""
    backoff = config.retry_backoff_seconds
    return Retrying(
        retry=retry_if_exception_type(TransientGatewayError),
        stop=stop_after_attempt(max(1, config.max_attempts)),
        wait=wait_exponential(multiplier=backoff, min=0, max=backoff * 16),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def response_json(response: httpx.Response) -> dict[str, Any] | None:
    """Decode a JSON object body, or return None if the body is not one."""
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return data


def provider_message(data: dict[str, Any] | None, response: httpx.Response) -> str:
    """Pick the most descriptive error text Daraja returned."""
    if data:
        for key in ("errorMessage", "ResponseDescription", "CustomerMessage", "ResultDesc"):
            value = data.get(key)
            if value:
                return str(value)
    return response.text[:500] if response.text else f"HTTP {response.status_code}"
