"""
Service wiring.

Builds every component once from the Settings object and hands them to
the routes through FastAPI dependencies.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from fastapi import Request

from paymentservice.config import Settings
from paymentservice.core.backlog import ReconciliationBacklog
from paymentservice.core.callback_reconciler import CallbackReconciler
from paymentservice.core.correlation_store import CorrelationStore
from paymentservice.core.credential_cache import CredentialCache
from paymentservice.core.payment_initiator import PaymentInitiator
from paymentservice.core.status_propagator import StatusPropagator
from paymentservice.database.connection import Database
from paymentservice.integrations.mpesa_client import MpesaClient
from paymentservice.integrations.order_service import OrderServiceClient
from paymentservice.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    """All long-lived components of the service."""

    settings: Settings
    database: Database
    mpesa_client: MpesaClient
    order_service: OrderServiceClient
    credentials: CredentialCache
    store: CorrelationStore
    backlog: ReconciliationBacklog
    propagator: StatusPropagator
    initiator: PaymentInitiator
    reconciler: CallbackReconciler
    health: HealthCheck
    _backlog_task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Optional[Database] = None,
        mpesa_http_client: Optional[httpx.AsyncClient] = None,
        orders_http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ServiceContainer":
        """
        Wire the service graph.

        Args:
            settings: Application settings
            database: Optional prebuilt database
            mpesa_http_client: Optional httpx client for the gateway
            orders_http_client: Optional httpx client for the order service
        """
        database = database or Database.from_settings(settings)
        mpesa_client = MpesaClient(settings, http_client=mpesa_http_client)
        order_service = OrderServiceClient(settings, http_client=orders_http_client)
        credentials = CredentialCache(
            mpesa_client, expiry_margin_seconds=settings.mpesa_token_expiry_margin_seconds
        )
        store = CorrelationStore(database.session_factory)
        backlog = ReconciliationBacklog(
            database.session_factory,
            order_service,
            batch_size=settings.backlog_batch_size,
            poll_interval_seconds=settings.backlog_poll_interval_seconds,
        )
        propagator = StatusPropagator(
            order_service,
            backlog,
            max_attempts=settings.order_status_max_attempts,
            base_delay=settings.order_status_retry_base_delay,
            max_delay=settings.order_status_retry_max_delay,
        )
        return cls(
            settings=settings,
            database=database,
            mpesa_client=mpesa_client,
            order_service=order_service,
            credentials=credentials,
            store=store,
            backlog=backlog,
            propagator=propagator,
            initiator=PaymentInitiator(settings, mpesa_client, credentials, store),
            reconciler=CallbackReconciler(store, propagator),
            health=HealthCheck(database, mpesa_client.circuit_breaker, backlog),
        )

    async def startup(self) -> None:
        """Create tables and start the in-process backlog replayer."""
        await self.database.init()
        logger.info("database_initialized")

        if self.settings.backlog_replay_enabled:
            self._backlog_task = asyncio.create_task(self.backlog.start())

    async def shutdown(self) -> None:
        """Stop background work and release connections."""
        if self._backlog_task is not None:
            self.backlog.stop()
            self._backlog_task.cancel()
            try:
                await self._backlog_task
            except asyncio.CancelledError:
                pass
            self._backlog_task = None

        await self.mpesa_client.close()
        await self.order_service.close()
        await self.database.close()
        logger.info("service_connections_closed")


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the app's service container."""
    return request.app.state.container


def get_initiator(request: Request) -> PaymentInitiator:
    return get_container(request).initiator


def get_reconciler(request: Request) -> CallbackReconciler:
    return get_container(request).reconciler


def get_store(request: Request) -> CorrelationStore:
    return get_container(request).store


def get_backlog(request: Request) -> ReconciliationBacklog:
    return get_container(request).backlog


def get_health(request: Request) -> HealthCheck:
    return get_container(request).health
