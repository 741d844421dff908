"""
Error taxonomy for payment initiation and callback reconciliation.

Every error carries a stable ``error_code`` and the HTTP status the API
renders it with.
"""
from typing import Any, Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    error_code = "payment_error"
    status_code = 500

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails. No network call was made."""

    error_code = "validation_error"
    status_code = 400


class ActiveAttemptExists(PaymentError):
    """Raised when an order already has a payment attempt in flight."""

    error_code = "active_attempt_exists"
    status_code = 409

    def __init__(self, order_id: int, correlation_id: Optional[str] = None):
        super().__init__(
            f"Order {order_id} already has a payment in progress",
            detail={"order_id": order_id, "checkout_request_id": correlation_id},
        )
        self.order_id = order_id
        self.correlation_id = correlation_id


class CredentialError(PaymentError):
    """Raised when no usable gateway access token could be obtained."""

    error_code = "credential_error"
    status_code = 500


class AuthExchangeFailed(CredentialError):
    """Raised when the OAuth credential exchange with the gateway fails."""

    error_code = "auth_exchange_failed"


class GatewayError(PaymentError):
    """Base exception for gateway call failures."""

    error_code = "gateway_error"


class GatewayUnavailable(GatewayError):
    """Transport failure, timeout, 5xx, or open circuit."""

    error_code = "gateway_unavailable"
    status_code = 500


class GatewayRejected(GatewayError):
    """The gateway answered the initiation with a non-success result."""

    error_code = "gateway_rejected"
    status_code = 400

    def __init__(
        self,
        message: str,
        detail: Optional[Any] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message, detail=detail)
        self.http_status = http_status


class MalformedCallback(PaymentError):
    """The callback payload is not a structurally valid STK callback."""

    error_code = "malformed_callback"
    status_code = 400


class UnknownCorrelation(PaymentError):
    """A callback referenced a correlation id with no recorded attempt."""

    error_code = "unknown_correlation"
    status_code = 200

    def __init__(self, correlation_id: str):
        super().__init__(f"No payment attempt for {correlation_id}")
        self.correlation_id = correlation_id


class DuplicateCallback(PaymentError):
    """A callback arrived for an attempt that is already terminal. Not a failure."""

    error_code = "duplicate_callback"
    status_code = 200

    def __init__(self, correlation_id: str, state: str):
        super().__init__(f"Payment attempt {correlation_id} already {state}")
        self.correlation_id = correlation_id
        self.state = state


class DownstreamUpdateFailure(PaymentError):
    """The order service did not accept a status update."""

    error_code = "downstream_update_failure"
    status_code = 502

    def __init__(
        self,
        message: str,
        order_id: int,
        http_status: Optional[int] = None,
    ):
        super().__init__(message, detail={"order_id": order_id, "http_status": http_status})
        self.order_id = order_id
        self.http_status = http_status


class CorrelationConflict(PaymentError):
    """A correlation id was recorded twice."""

    error_code = "correlation_conflict"
    status_code = 409


class InvalidStateTransition(PaymentError):
    """A payment attempt was asked to move along a forbidden edge."""

    error_code = "invalid_state_transition"
    status_code = 500

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot transition payment attempt from {current} to {target}")
        self.current = current
        self.target = target
