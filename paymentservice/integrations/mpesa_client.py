"""
M-Pesa Daraja API client with circuit breaking and error classification.

Implements:
- OAuth client-credentials exchange (Basic auth)
- STK Push (Lipa na M-Pesa Online) initiation (Bearer auth)
- Password/timestamp generation
- Circuit breaker pattern

Nothing here retries: a repeated STK Push prompts the payer twice.
"""
import base64
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from paymentservice.config import Settings
from paymentservice.core.exceptions import GatewayRejected, GatewayUnavailable
from paymentservice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when the gateway keeps failing.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            clock: Monotonic time source
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.clock = clock
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and self.clock() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise GatewayUnavailable("Gateway circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except GatewayUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self.clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning("circuit_breaker_opened", failure_count=self.failure_count)
            self._set_state("open")

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info("circuit_breaker_state_changed", old=self.state, new=state)
        self.state = state
        metrics.set_circuit_breaker_state(state)


class MpesaClient:
    """
    Thin async wrapper over the Daraja HTTP API.

    Errors are classified into:
    - GatewayUnavailable: transport failure, timeout, 5xx, open circuit
    - GatewayRejected: the gateway answered and said no (4xx, non-zero ResponseCode)
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """
        Initialize M-Pesa client.

        Args:
            settings: Application settings
            http_client: Optional preconfigured httpx client
            circuit_breaker: Optional circuit breaker
            now: Optional UTC clock, used for password timestamps
        """
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.mpesa_timeout_seconds)
        )
        self._owns_http_client = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._tz = timezone(timedelta(hours=settings.mpesa_utc_offset_hours))

        logger.info(
            "mpesa_client_initialized",
            base_url=settings.mpesa_base_url,
            sandbox=settings.is_sandbox,
        )

    def timestamp(self) -> str:
        """Current gateway-local time as YYYYMMDDHHMMSS."""
        return self._now().astimezone(self._tz).strftime(TIMESTAMP_FORMAT)

    def build_password(self, timestamp: str) -> str:
        """base64(shortcode + passkey + timestamp)."""
        raw = f"{self.settings.mpesa_business_shortcode}{self.settings.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    @staticmethod
    def _error_message(body: Any, default: str) -> str:
        if isinstance(body, dict):
            for key in ("errorMessage", "ResponseDescription", "error_description", "error"):
                if body.get(key):
                    return str(body[key])
        return default

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send one request; transport failures and 5xx become GatewayUnavailable."""
        start = time.perf_counter()
        try:
            response = await self.http_client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("mpesa_request_timeout", operation=operation, error=str(e))
            raise GatewayUnavailable(f"Gateway {operation} request timed out") from e
        except httpx.HTTPError as e:
            logger.error("mpesa_transport_error", operation=operation, error=str(e))
            raise GatewayUnavailable(f"Gateway {operation} request failed: {e}") from e
        finally:
            metrics.record_gateway_call(operation, time.perf_counter() - start)

        if response.status_code >= 500:
            body = self._decode_body(response)
            logger.error(
                "mpesa_server_error",
                operation=operation,
                status_code=response.status_code,
                response=body,
            )
            raise GatewayUnavailable(
                self._error_message(body, f"Gateway returned {response.status_code}"),
                detail=body,
            )
        return response

    async def generate_token(self) -> Dict[str, Any]:
        """
        Exchange the consumer key/secret for an access token.

        Returns:
            Dict[str, Any]: Body with ``access_token`` and ``expires_in``

        Raises:
            GatewayUnavailable: Transport failure or 5xx
            GatewayRejected: Non-200 answer or a body without a token
        """
        response = await self.circuit_breaker.call(
            self._send,
            "oauth",
            "GET",
            f"{self.settings.mpesa_base_url}{OAUTH_PATH}",
            params={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(
                self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret
            ),
        )
        body = self._decode_body(response)

        if response.status_code != 200 or not isinstance(body, dict) or not body.get("access_token"):
            logger.error(
                "mpesa_token_exchange_rejected",
                status_code=response.status_code,
                response=body if response.status_code != 200 else None,
            )
            raise GatewayRejected(
                self._error_message(body, "Credential exchange rejected"),
                detail=body if response.status_code != 200 else None,
                http_status=response.status_code,
            )
        return body

    async def stk_push(self, access_token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send an STK Push request.

        Args:
            access_token: Bearer token from the credential exchange
            payload: Request body

        Returns:
            Dict[str, Any]: Accepted response with CheckoutRequestID

        Raises:
            GatewayUnavailable: Transport failure, timeout or 5xx
            GatewayRejected: 4xx or non-zero ResponseCode
        """
        response = await self.circuit_breaker.call(
            self._send,
            "stk_push",
            "POST",
            f"{self.settings.mpesa_base_url}{STK_PUSH_PATH}",
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
        )
        body = self._decode_body(response)

        if response.status_code != 200:
            logger.error(
                "mpesa_stk_push_rejected",
                status_code=response.status_code,
                response=body,
            )
            raise GatewayRejected(
                self._error_message(body, "Payment request rejected"),
                detail=body,
                http_status=response.status_code,
            )

        if (
            not isinstance(body, dict)
            or str(body.get("ResponseCode")) != "0"
            or not body.get("CheckoutRequestID")
        ):
            logger.error("mpesa_stk_push_not_accepted", response=body)
            raise GatewayRejected(
                self._error_message(body, "Payment request not accepted"),
                detail=body,
                http_status=response.status_code,
            )

        return body

    async def close(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._owns_http_client:
            await self.http_client.aclose()
