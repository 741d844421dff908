"""
Core payment logic.

    credential_cache     - cached gateway access token, single-flight refresh
    correlation_store    - CheckoutRequestID -> order id, compare-and-transition
    payment_initiator    - STK Push initiation
    callback_reconciler  - gateway callback handling
    status_propagator    - order status updates, retry then backlog
    backlog              - reconciliation backlog replay
"""
from .attempt_state import AttemptState
from .exceptions import PaymentError

__all__ = ["AttemptState", "PaymentError"]
