"""External integrations: the M-Pesa gateway and the order service."""
from .mpesa_client import CircuitBreaker, MpesaClient
from .order_service import OrderServiceClient
from .stk_callback import StkCallback, parse_callback

__all__ = [
    "CircuitBreaker",
    "MpesaClient",
    "OrderServiceClient",
    "StkCallback",
    "parse_callback",
]
