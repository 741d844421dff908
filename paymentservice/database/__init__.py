"""Database package for the payment service."""
from .connection import Database, create_engine, create_session_factory
from .models import (
    Base,
    PaymentAttempt,
    StatusBacklogEntry,
)

__all__ = [
    "Base",
    "Database",
    "PaymentAttempt",
    "StatusBacklogEntry",
    "create_engine",
    "create_session_factory",
]
