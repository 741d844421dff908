"""
Gateway access token cache with single-flight refresh.

The first caller that finds the token missing or about to expire starts
the credential exchange; every caller arriving while it is in flight
awaits the same task. One exchange call per cache-miss episode.

Tokens live only in process memory. Horizontally scaled instances each
hold their own token.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from paymentservice.core.exceptions import AuthExchangeFailed, GatewayError
from paymentservice.integrations.mpesa_client import MpesaClient
from paymentservice.monitoring.metrics import metrics

DEFAULT_TOKEN_LIFETIME_SECONDS = 3599.0


@dataclass(frozen=True)
class AccessToken:
    """Opaque bearer token and its expiry on the monotonic clock."""

    value: str
    expires_at: float

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


class CredentialCache:
    """Caches the gateway access token."""

    def __init__(
        self,
        client: MpesaClient,
        expiry_margin_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[Any] = None,
    ) -> None:
        """
        Initialize credential cache.

        Args:
            client: Gateway client used for the exchange
            expiry_margin_seconds: Treat tokens as expired this long before expiry
            clock: Monotonic time source
            logger: Structured logger
        """
        self.client = client
        self.expiry_margin_seconds = expiry_margin_seconds
        self.clock = clock
        self.logger = logger or structlog.get_logger(__name__)
        self._token: Optional[AccessToken] = None
        self._refresh: Optional["asyncio.Task[AccessToken]"] = None

    @property
    def token(self) -> Optional[AccessToken]:
        return self._token

    async def get_token(self) -> str:
        """
        Return a fresh access token, exchanging credentials on a miss.

        Raises:
            AuthExchangeFailed: If the exchange fails. Not retried here.
        """
        cached = self._token
        if cached is not None and cached.is_fresh(self.clock(), self.expiry_margin_seconds):
            return cached.value

        # No await between the check and the assignment: the event loop
        # cannot interleave another caller here.
        refresh = self._refresh
        if refresh is None:
            refresh = asyncio.ensure_future(self._exchange())
            refresh.add_done_callback(self._refresh_done)
            self._refresh = refresh
            self.logger.info("access_token_refresh_started")
        else:
            self.logger.debug("access_token_refresh_joined")

        # A cancelled caller must not cancel the exchange other callers await
        token = await asyncio.shield(refresh)
        return token.value

    def invalidate(self, token: Optional[str] = None) -> None:
        """
        Discard the cached token.

        Args:
            token: Only discard if the cached token still has this value
        """
        if self._token is None:
            return
        if token is not None and self._token.value != token:
            return
        self._token = None
        self.logger.info("access_token_invalidated")

    def _refresh_done(self, task: "asyncio.Task[AccessToken]") -> None:
        if self._refresh is task:
            self._refresh = None
        # Mark the exception retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    async def _exchange(self) -> AccessToken:
        started = self.clock()
        try:
            body = await self.client.generate_token()
        except GatewayError as e:
            metrics.record_token_exchange("failed")
            self.logger.error("access_token_exchange_failed", error=str(e))
            raise AuthExchangeFailed(f"Credential exchange failed: {e.message}", detail=e.detail) from e

        lifetime = self._parse_lifetime(body.get("expires_in"))
        token = AccessToken(value=str(body["access_token"]), expires_at=started + lifetime)
        self._token = token

        metrics.record_token_exchange("success")
        self.logger.info("access_token_refreshed", expires_in=lifetime)
        return token

    @staticmethod
    def _parse_lifetime(expires_in: Any) -> float:
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError):
            return DEFAULT_TOKEN_LIFETIME_SECONDS
        return lifetime if lifetime > 0 else DEFAULT_TOKEN_LIFETIME_SECONDS
