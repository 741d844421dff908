"""
Order service client - the Order Status Sink.

The order service owns orders; this service only asks it to record a
terminal status. Updates are keyed by the internal order id, never by the
gateway's CheckoutRequestID.
"""
from typing import Optional

import httpx
import structlog

from paymentservice.config import Settings
from paymentservice.core.exceptions import DownstreamUpdateFailure
from paymentservice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class OrderServiceClient:
    """Sends ``PUT /orders/{order_id}/status`` to the order service."""

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = settings.orders_service_url
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.order_service_timeout_seconds)
        )
        self._owns_http_client = http_client is None

    async def update_status(self, order_id: int, status: str) -> None:
        """
        Persist a terminal status for an order.

        Args:
            order_id: Internal order id
            status: Order status ("paid" or "failed")

        Raises:
            DownstreamUpdateFailure: On transport failure or a non-2xx answer
        """
        url = f"{self.base_url}/orders/{order_id}/status"
        try:
            response = await self.http_client.put(url, json={"status": status})
        except httpx.HTTPError as e:
            metrics.record_order_status_update("failed")
            logger.warning(
                "order_status_update_transport_error",
                order_id=order_id,
                status=status,
                error=str(e),
            )
            raise DownstreamUpdateFailure(
                f"Order service unreachable: {e}", order_id=order_id
            ) from e

        if not response.is_success:
            metrics.record_order_status_update("failed")
            logger.warning(
                "order_status_update_rejected",
                order_id=order_id,
                status=status,
                status_code=response.status_code,
                response=response.text[:500],
            )
            raise DownstreamUpdateFailure(
                f"Order service returned {response.status_code}",
                order_id=order_id,
                http_status=response.status_code,
            )

        metrics.record_order_status_update("success")
        logger.info("order_status_updated", order_id=order_id, status=status)

    async def close(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._owns_http_client:
            await self.http_client.aclose()
