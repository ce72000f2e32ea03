"""Daraja STK push and STK query HTTP client.

Push requests are sent exactly once: a lost response is reported as an
unknown outcome rather than retried, because a second push can charge the
payer twice. Query requests are idempotent and use the bounded retry policy.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx

from app.core.errors import GatewayAuthError, GatewayRequestError, PaymentOutcomeUnknownError
from app.services.mpesa.base import (
    PROCESSING_ERROR_CODE,
    PROCESSING_RESULT_CODES,
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    MpesaConfig,
    TransientGatewayError,
    build_retrying,
    provider_message,
    response_json,
)
from app.services.mpesa.credentials import GatewayCredentialProvider

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"

# Failures raised before the request left this process
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass
class StkPushResult:
    """Gateway acknowledgement of an accepted push request."""

    checkout_request_id: str
    merchant_request_id: str
    response_code: str
    response_description: str
    customer_message: str


@dataclass
class StkQueryResult:
    """Gateway view of a push transaction."""

    checkout_request_id: str
    result_code: str | None = None
    result_description: str | None = None
    processing: bool = False

    @property
    def is_terminal(self) -> bool:
        return not self.processing and self.result_code is not None

    @property
    def is_success(self) -> bool:
        return self.result_code == SUCCESS_CODE


def to_wire_phone(phone_number: str) -> str:
    """Daraja expects MSISDNs as bare digits (``2547XXXXXXXX``)."""
    return phone_number.strip().lstrip("+")


class DarajaClient:
    """HTTP client for the Daraja push and query endpoints."""

    def __init__(
        self,
        config: MpesaConfig,
        credentials: GatewayCredentialProvider | None = None,
    ):
        self.config = config
        self.credentials = credentials or GatewayCredentialProvider(config)

    def _headers(self) -> dict[str, str]:
        token = self.credentials.get_token()
        return {
            "Authorization": f"Bearer {token.value}",
            "Content-Type": "application/json",
        }

    def stk_push(
        self,
        *,
        password: str,
        timestamp: str,
        amount: int,
        phone_number: str,
        account_reference: str,
        description: str,
    ) -> StkPushResult:
        """Send an STK push request.

        Raises:
            GatewayAuthError: the token could not be obtained or was rejected.
            GatewayRequestError: the gateway could not be reached or rejected the request.
            PaymentOutcomeUnknownError: the request was sent but no usable answer came back.
        """
        msisdn = to_wire_phone(phone_number)
        payload: dict[str, Any] = {
            "BusinessShortCode": self.config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": self.config.transaction_type,
            "Amount": amount,
            "PartyA": msisdn,
            "PartyB": self.config.short_code,
            "PhoneNumber": msisdn,
            "CallBackURL": self.config.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }
        headers = self._headers()
        url = f"{self.config.base_url}{STK_PUSH_PATH}"

        try:
            with httpx.Client(timeout=self.config.timeout_seconds) as client:
                resp = client.post(url, json=payload, headers=headers)
        except _NOT_SENT_ERRORS as e:
            raise GatewayRequestError(
                "Could not reach the M-Pesa gateway", provider_message=str(e)
            ) from e
        except httpx.TransportError as e:
            logger.warning(
                "STK push to %s for %s lost its response: %s", url, account_reference, e
            )
            raise PaymentOutcomeUnknownError(
                "STK push response was lost; the outcome is unknown", provider_message=str(e)
            ) from e

        data = response_json(resp)
        if resp.status_code == 401:
            self.credentials.invalidate()
            raise GatewayAuthError(
                "M-Pesa rejected the access token", provider_message=provider_message(data, resp)
            )
        if not 200 <= resp.status_code < 300:
            raise GatewayRequestError(
                f"STK push rejected with HTTP {resp.status_code}",
                provider_message=provider_message(data, resp),
            )
        if data is None:
            raise PaymentOutcomeUnknownError(
                "STK push returned an unreadable response", provider_message=resp.text[:500]
            )
        if str(data.get("ResponseCode")) != SUCCESS_CODE or not data.get("CheckoutRequestID"):
            raise GatewayRequestError(
                "STK push was not accepted", provider_message=provider_message(data, resp)
            )

        return StkPushResult(
            checkout_request_id=str(data["CheckoutRequestID"]),
            merchant_request_id=str(data.get("MerchantRequestID", "")),
            response_code=str(data["ResponseCode"]),
            response_description=str(data.get("ResponseDescription", "")),
            customer_message=str(data.get("CustomerMessage", "")),
        )

    def stk_query(self, *, checkout_request_id: str, password: str, timestamp: str) -> StkQueryResult:
        """Ask the gateway for the state of a push transaction.

        Raises:
            GatewayAuthError: the token could not be obtained.
            GatewayRequestError: the gateway rejected the query or kept failing.
        """
        try:
            result: StkQueryResult = build_retrying(self.config)(
                self._query_once, checkout_request_id, password, timestamp
            )
        except TransientGatewayError as e:
            raise GatewayRequestError(
                "STK query failed after retries", provider_message=str(e)
            ) from e
        return result

    def _query_once(self, checkout_request_id: str, password: str, timestamp: str) -> StkQueryResult:
        payload = {
            "BusinessShortCode": self.config.short_code,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        headers = self._headers()
        url = f"{self.config.base_url}{STK_QUERY_PATH}"

        try:
            with httpx.Client(timeout=self.config.timeout_seconds) as client:
                resp = client.post(url, json=payload, headers=headers)
        except httpx.TransportError as e:
            logger.warning("STK query for %s failed: %s", checkout_request_id, e)
            raise TransientGatewayError(str(e)) from e

        data = response_json(resp)
        if data is not None and data.get("errorCode") == PROCESSING_ERROR_CODE:
            return StkQueryResult(checkout_request_id=checkout_request_id, processing=True)
        if resp.status_code == 401:
            self.credentials.invalidate()
            raise TransientGatewayError("M-Pesa rejected the access token")
        if resp.status_code >= 500:
            raise TransientGatewayError(f"HTTP {resp.status_code}: {provider_message(data, resp)}")
        if not 200 <= resp.status_code < 300 or data is None:
            raise GatewayRequestError(
                f"STK query rejected with HTTP {resp.status_code}",
                provider_message=provider_message(data, resp),
            )
        if str(data.get("ResponseCode")) != SUCCESS_CODE:
            raise GatewayRequestError(
                "STK query was not accepted", provider_message=provider_message(data, resp)
            )

        result_code = data.get("ResultCode")
        if result_code is not None:
            result_code = str(result_code)
        return StkQueryResult(
            checkout_request_id=checkout_request_id,
            result_code=result_code,
            result_description=data.get("ResultDesc"),
            processing=result_code is None or result_code in PROCESSING_RESULT_CODES,
        )


@lru_cache(maxsize=1)
def get_daraja_client() -> DarajaClient:
    """Process-wide client, so every request shares one token cache."""
    return DarajaClient(MpesaConfig.from_settings())
