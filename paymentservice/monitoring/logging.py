"""
Structured logging configuration.

structlog renders each event as JSON on stdout, with the request ID bound
through contextvars and payer phone numbers masked.
"""
import logging
import sys
from typing import Any, Callable

import structlog
from pythonjsonlogger.json import JsonFormatter

from paymentservice.config import Settings

PHONE_FIELDS = ("phone_number", "phone", "PhoneNumber")


def app_context_processor(settings: Settings) -> Callable[..., dict[str, Any]]:
    """Build a processor that tags every event with the app name and environment."""

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict["app_name"] = settings.app_name
        event_dict["app_env"] = settings.app_env
        return event_dict

    return add_app_context


def mask_phone_numbers(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Keep only the last four digits of payer phone numbers."""
    for field in PHONE_FIELDS:
        value = event_dict.get(field)
        if value is None:
            continue
        digits = str(value)
        event_dict[field] = "*" * max(len(digits) - 4, 0) + digits[-4:]
    return event_dict


def setup_logging(settings: Settings) -> None:
    """
    Configure structlog and the root handler.

    structlog events are rendered to JSON strings; records from plain
    stdlib loggers (uvicorn, sqlalchemy) go through python-json-logger so
    every line on stdout is JSON.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            mask_phone_numbers,
            app_context_processor(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        JsonFormatter(
            "{asctime}{levelname}{name}{message}",
            style="{",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
            static_fields={"app_name": settings.app_name, "app_env": settings.app_env},
        )
    )
    root_logger.addHandler(json_handler)

    # Per-request transport chatter
    for noisy in ("httpx", "httpcore", "aiosqlite"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        mpesa_environment="sandbox" if settings.is_sandbox else "production",
    )
