"""
Prometheus metrics for payment service monitoring.

Tracks:
- Credential exchanges with the gateway
- Payment initiations by outcome
- Gateway call duration
- Callbacks by reconciliation outcome
- Order status propagation and the reconciliation backlog
"""
from prometheus_client import Counter, Gauge, Histogram

# Credential metrics
token_exchanges_total = Counter(
    "mpesa_token_exchanges_total",
    "Total credential exchange calls to the gateway",
    ["result"],  # success, failed
)

# Initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total payment initiation requests",
    ["outcome"],  # initiated, validation_error, credential_error, ...
)

payment_initiation_duration_seconds = Histogram(
    "payment_initiation_duration_seconds",
    "Payment initiation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_request_duration_seconds = Histogram(
    "mpesa_request_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],  # oauth, stk_push
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "mpesa_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
callbacks_received_total = Counter(
    "mpesa_callbacks_received_total",
    "Total gateway callbacks received",
    ["outcome"],  # applied, duplicate, unknown_correlation, malformed
)

callback_processing_duration_seconds = Histogram(
    "mpesa_callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Order status propagation metrics
order_status_updates_total = Counter(
    "order_status_updates_total",
    "Total order status update calls",
    ["result"],  # success, failed
)

backlog_entries_total = Counter(
    "reconciliation_backlog_entries_total",
    "Reconciliation backlog entries by event",
    ["event"],  # enqueued, delivered, retry_failed
)

backlog_depth = Gauge(
    "reconciliation_backlog_depth",
    "Number of undelivered reconciliation backlog entries",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_token_exchange(result: str) -> None:
        """Record a credential exchange call."""
        token_exchanges_total.labels(result=result).inc()

    @staticmethod
    def record_initiation(outcome: str, duration_seconds: float) -> None:
        """Record a payment initiation."""
        payment_initiations_total.labels(outcome=outcome).inc()
        payment_initiation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_gateway_call(operation: str, duration_seconds: float) -> None:
        """Record gateway API call duration."""
        gateway_request_duration_seconds.labels(operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float = 0) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(outcome=outcome).inc()
        if duration_seconds > 0:
            callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_status_update(result: str) -> None:
        """Record an order status update call."""
        order_status_updates_total.labels(result=result).inc()

    @staticmethod
    def record_backlog_event(event: str, count: int = 1) -> None:
        """Record a backlog event."""
        backlog_entries_total.labels(event=event).inc(count)

    @staticmethod
    def set_backlog_depth(depth: int) -> None:
        """Set backlog depth."""
        backlog_depth.set(depth)


# Export singleton instance
metrics = MetricsCollector()
