"""
Callback reconciler.

Handles the gateway's asynchronous STK Push result. Gateways redeliver, so
every step is idempotent:

1. Parse the envelope (MalformedCallback on failure)
2. Look up the CheckoutRequestID
   - unknown -> logged anomaly, acknowledged
   - already terminal -> duplicate, acknowledged
3. ResultCode 0 -> paid, anything else -> failed
4. Compare-and-transition in the correlation store; losing the race is a
   duplicate. The winner's order status update is written to the backlog
   in the same transaction.
5. Deliver that update to the order service by internal order id

Steps 1-4 are ``apply``; step 5 is ``deliver``. The HTTP callback runs
``deliver`` after acknowledging. A failed or skipped step 5 leaves the
backlog entry pending for the replayer.
"""
import dataclasses
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import structlog

from paymentservice.core.attempt_state import (
    ORDER_STATUS_FOR_STATE,
    AttemptState,
    state_for_result_code,
)
from paymentservice.core.correlation_store import CorrelationStore
from paymentservice.core.exceptions import (
    DuplicateCallback,
    MalformedCallback,
    UnknownCorrelation,
)
from paymentservice.core.status_propagator import StatusPropagator
from paymentservice.integrations.stk_callback import parse_callback
from paymentservice.monitoring.metrics import metrics


class CallbackOutcome(str, Enum):
    """How a callback was handled. All of these are acknowledged to the gateway."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_CORRELATION = "unknown_correlation"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: CallbackOutcome
    correlation_id: str
    state: Optional[AttemptState] = None
    order_id: Optional[int] = None
    backlog_id: Optional[int] = None
    propagated: Optional[bool] = None


class CallbackReconciler:
    """Drives a payment attempt to its terminal state exactly once."""

    def __init__(
        self,
        store: CorrelationStore,
        propagator: StatusPropagator,
        logger: Optional[Any] = None,
    ):
        self.store = store
        self.propagator = propagator
        self.logger = logger or structlog.get_logger(__name__)

    async def reconcile(self, payload: Any) -> ReconcileResult:
        """
        Reconcile one callback delivery and propagate its order status inline.

        Args:
            payload: Decoded JSON body of the callback

        Returns:
            ReconcileResult: The outcome; ``propagated`` is set for applied callbacks

        Raises:
            MalformedCallback: If the payload is not a valid STK callback
        """
        result = await self.apply(payload)
        if result.backlog_id is None:
            return result
        return dataclasses.replace(result, propagated=await self.deliver(result))

    async def apply(self, payload: Any) -> ReconcileResult:
        """
        Record the callback's terminal state and stage its order status update.

        Raises:
            MalformedCallback: If the payload is not a valid STK callback
        """
        start_time = time.perf_counter()
        try:
            callback = parse_callback(payload)
        except MalformedCallback as e:
            metrics.record_callback("malformed")
            self.logger.error("callback_malformed", error=e.message, detail=e.detail)
            raise

        correlation_id = callback.checkout_request_id
        log = self.logger.bind(
            correlation_id=correlation_id,
            result_code=callback.result_code,
        )
        log.info("callback_received", result_desc=callback.result_desc)

        attempt = await self.store.get(correlation_id)
        if attempt is None:
            anomaly = UnknownCorrelation(correlation_id)
            log.warning("callback_unknown_correlation", error=anomaly.message)
            metrics.record_callback(CallbackOutcome.UNKNOWN_CORRELATION.value)
            return ReconcileResult(CallbackOutcome.UNKNOWN_CORRELATION, correlation_id)

        if attempt.attempt_state.is_terminal:
            return self._duplicate(log, correlation_id, attempt.attempt_state, attempt.order_id)

        target = state_for_result_code(callback.result_code)
        entry = await self.store.transition(
            correlation_id,
            target,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            receipt_number=callback.receipt_number,
            metadata=callback.metadata,
        )
        if entry is None:
            # Another delivery won the race between our read and our write
            current = await self.store.get(correlation_id)
            state = current.attempt_state if current is not None else target
            return self._duplicate(log, correlation_id, state, attempt.order_id)

        log.info(
            "payment_attempt_resolved",
            order_id=entry.order_id,
            state=target.value,
            backlog_id=entry.id,
        )
        metrics.record_callback(
            CallbackOutcome.APPLIED.value, time.perf_counter() - start_time
        )
        return ReconcileResult(
            CallbackOutcome.APPLIED,
            correlation_id,
            state=target,
            order_id=entry.order_id,
            backlog_id=entry.id,
        )

    async def deliver(self, result: ReconcileResult) -> bool:
        """
        Send an applied callback's order status to the order service.

        Returns:
            bool: True if delivered now, False if left pending for replay
        """
        if result.backlog_id is None or result.state is None or result.order_id is None:
            return False
        try:
            return await self.propagator.propagate(
                result.backlog_id,
                result.correlation_id,
                result.order_id,
                ORDER_STATUS_FOR_STATE[result.state],
            )
        except Exception as e:
            # The entry is committed and still pending; the replayer owns it now
            self.logger.error(
                "order_status_delivery_deferred",
                correlation_id=result.correlation_id,
                backlog_id=result.backlog_id,
                order_id=result.order_id,
                error=str(e),
            )
            return False

    @staticmethod
    def _duplicate(
        log: Any, correlation_id: str, state: AttemptState, order_id: int
    ) -> ReconcileResult:
        duplicate = DuplicateCallback(correlation_id, state.value)
        log.info("callback_duplicate", state=state.value, detail=duplicate.message)
        metrics.record_callback(CallbackOutcome.DUPLICATE.value)
        return ReconcileResult(
            CallbackOutcome.DUPLICATE, correlation_id, state=state, order_id=order_id
        )
