"""Daraja OAuth token acquisition with a shared, single-flight cache."""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from app.core.errors import GatewayAuthError
from app.services.mpesa.base import (
    TOKEN_PATH,
    MpesaConfig,
    TransientGatewayError,
    build_retrying,
    provider_message,
    response_json,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_SECONDS = 3599


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the monotonic time at which it should be replaced."""

    value: str
    issued_at: float
    expires_in: int

    def refresh_at(self, margin: int) -> float:
        # Never refresh earlier than half-way through a short-lived token
        return self.issued_at + max(self.expires_in - margin, self.expires_in / 2)

    def is_fresh(self, now: float, margin: int) -> bool:
        return now < self.refresh_at(margin)


class GatewayCredentialProvider:
    """Exchanges the consumer key/secret for a bearer token.

    The token is cached for its advertised lifetime and replaced shortly
    before it expires. Concurrent callers that find the cache stale wait on
    one lock, so a refresh produces exactly one outbound request.
    """

    def __init__(
        self,
        config: MpesaConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._token: AccessToken | None = None

    def get_token(self) -> AccessToken:
        """Return a valid token, fetching a new one if needed.

        Raises:
            ConfigurationError: consumer key or secret is not configured.
            GatewayAuthError: the token exchange failed.
        """
        self.config.require_credentials()
        margin = self.config.token_refresh_margin_seconds

        token = self._token
        if token is not None and token.is_fresh(self._clock(), margin):
            return token

        with self._lock:
            token = self._token
            if token is not None and token.is_fresh(self._clock(), margin):
                return token
            token = self._refresh()
            self._token = token
            return token

    def invalidate(self) -> None:
        """Drop the cached token, e.g. after the gateway rejected it."""
        with self._lock:
            self._token = None

    def _refresh(self) -> AccessToken:
        try:
            token: AccessToken = build_retrying(self.config)(self._request_token)
        except TransientGatewayError as e:
            raise GatewayAuthError(
                "M-Pesa token request failed after retries", provider_message=str(e)
            ) from e
        logger.info("Obtained M-Pesa access token valid for %ds", token.expires_in)
        return token

    def _request_token(self) -> AccessToken:
        url = f"{self.config.base_url}{TOKEN_PATH}"
        try:
            with httpx.Client(timeout=self.config.timeout_seconds) as client:
                resp = client.get(
                    url,
                    auth=(self.config.consumer_key, self.config.consumer_secret),
                )
        except httpx.TransportError as e:
            logger.warning("M-Pesa token request failed: %s", e)
            raise TransientGatewayError(str(e)) from e

        data = response_json(resp)
        if resp.status_code >= 500:
            raise TransientGatewayError(f"HTTP {resp.status_code}: {provider_message(data, resp)}")
        if not 200 <= resp.status_code < 300:
            raise GatewayAuthError(
                f"M-Pesa token request rejected with HTTP {resp.status_code}",
                provider_message=provider_message(data, resp),
            )
        if data is None or not data.get("access_token"):
            raise GatewayAuthError("M-Pesa token response is malformed", provider_message=resp.text[:500])

        try:
            expires_in = int(data.get("expires_in", DEFAULT_TOKEN_TTL_SECONDS))
        except (TypeError, ValueError):
            raise GatewayAuthError(
                "M-Pesa token response has an invalid expires_in",
                provider_message=str(data.get("expires_in")),
            ) from None

        return AccessToken(
            value=str(data["access_token"]),
            issued_at=self._clock(),
            expires_in=expires_in,
        )
