"""
Monitoring and observability package.

Health checks live in ``paymentservice.monitoring.health``; it depends on
the core services and is imported directly by the API.
"""
from .logging import setup_logging
from .metrics import metrics

__all__ = ["metrics", "setup_logging"]
