"""HTTP API for the payment service."""
from .main import create_app

__all__ = ["create_app"]
