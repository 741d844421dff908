"""
Order status propagation.

Delivers a staged backlog entry to the order service with bounded
exponential backoff. The entry is already durable; success marks it
delivered and exhaustion leaves it pending for the backlog replayer.
"""
from typing import Any, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from paymentservice.core.backlog import ReconciliationBacklog
from paymentservice.core.exceptions import DownstreamUpdateFailure
from paymentservice.integrations.order_service import OrderServiceClient


class StatusPropagator:
    """Best-effort, eventually-converging delivery of order statuses."""

    def __init__(
        self,
        order_service: OrderServiceClient,
        backlog: ReconciliationBacklog,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        logger: Optional[Any] = None,
    ):
        """
        Initialize propagator.

        Args:
            order_service: Order status sink
            backlog: Holds the entries being delivered
            max_attempts: Delivery attempts before leaving the entry to replay
            base_delay: Backoff multiplier (seconds)
            max_delay: Backoff ceiling (seconds)
            logger: Structured logger
        """
        self.order_service = order_service
        self.backlog = backlog
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = logger or structlog.get_logger(__name__)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(DownstreamUpdateFailure),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            reraise=False,
        )

    async def propagate(
        self, backlog_id: int, correlation_id: str, order_id: int, status: str
    ) -> bool:
        """
        Deliver the staged entry ``backlog_id`` (``status`` for ``order_id``).

        Returns:
            bool: True if delivered now, False if left for replay
        """
        attempts = 0
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self.order_service.update_status(order_id, status)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            self.logger.error(
                "order_status_propagation_exhausted",
                backlog_id=backlog_id,
                correlation_id=correlation_id,
                order_id=order_id,
                status=status,
                attempts=attempts,
                error=str(last_error),
            )
            await self.backlog.record_failure(backlog_id, attempts, str(last_error))
            return False

        await self.backlog.mark_delivered(backlog_id, attempts)
        self.logger.info(
            "order_status_propagated",
            backlog_id=backlog_id,
            correlation_id=correlation_id,
            order_id=order_id,
            status=status,
        )
        return True
