"""
Tests for order status propagation and the reconciliation backlog.
"""
import asyncio
from typing import Any, List, Optional

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from paymentservice.api.dependencies import ServiceContainer
from paymentservice.core.backlog import ReconciliationBacklog, stage_status_update
from paymentservice.core.exceptions import DownstreamUpdateFailure
from paymentservice.database.connection import Database
from paymentservice.database.models import StatusBacklogEntry
from paymentservice.integrations.order_service import OrderServiceClient

from .fakes import FakeOrderService, make_settings


async def backlog_entries(database: Database) -> List[StatusBacklogEntry]:
    async with database.session() as db:
        result = await db.execute(select(StatusBacklogEntry).order_by(StatusBacklogEntry.id))
        return list(result.scalars().all())


async def staged_entry(
    database: Database,
    correlation_id: str,
    order_id: int,
    status: str,
    error: Optional[str] = None,
    attempts: int = 0,
) -> StatusBacklogEntry:
    async with database.session() as db:
        entry = stage_status_update(
            db, correlation_id, order_id, status, error=error, attempts=attempts
        )
        await db.commit()
    return entry


class TestOrderServiceClient:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_puts_status_by_order_id(self, fake_orders: FakeOrderService) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(fake_orders)) as http_client:
            client = OrderServiceClient(make_settings(), http_client=http_client)
            await client.update_status(42, "paid")

        assert fake_orders.updates == [(42, "paid")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_2xx_raises(self, fake_orders: FakeOrderService) -> None:
        fake_orders.always_fail = True

        async with httpx.AsyncClient(transport=httpx.MockTransport(fake_orders)) as http_client:
            client = OrderServiceClient(make_settings(), http_client=http_client)
            with pytest.raises(DownstreamUpdateFailure) as exc_info:
                await client.update_status(42, "paid")

        assert exc_info.value.order_id == 42
        assert exc_info.value.http_status == 503

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_raises(self) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(timeout)) as http_client:
            client = OrderServiceClient(make_settings(), http_client=http_client)
            with pytest.raises(DownstreamUpdateFailure) as exc_info:
                await client.update_status(7, "failed")

        assert exc_info.value.http_status is None


class TestStatusPropagator:
    """Bounded retry against a staged entry, then the backlog keeps it."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delivered_first_try(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        entry = await staged_entry(database, "ws_1", 7, "paid")

        delivered = await container.propagator.propagate(entry.id, "ws_1", 7, "paid")

        assert delivered is True
        assert fake_orders.updates == [(7, "paid")]
        assert await container.backlog.get_pending_count() == 0
        stored = (await backlog_entries(database))[0]
        assert stored.attempts == 1
        assert stored.delivered_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        fake_orders.failures_remaining = 2
        entry = await staged_entry(database, "ws_1", 7, "paid")

        delivered = await container.propagator.propagate(entry.id, "ws_1", 7, "paid")

        assert delivered is True
        assert fake_orders.calls == 3
        assert fake_orders.updates == [(7, "paid")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhaustion_leaves_entry_pending(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        fake_orders.always_fail = True
        entry = await staged_entry(database, "ws_1", 7, "failed")

        delivered = await container.propagator.propagate(entry.id, "ws_1", 7, "failed")

        assert delivered is False
        entries = await backlog_entries(database)
        assert len(entries) == 1
        stored = entries[0]
        assert stored.correlation_id == "ws_1"
        assert stored.order_id == 7
        assert stored.target_status == "failed"
        assert stored.attempts == container.settings.order_status_max_attempts
        assert stored.delivered is False
        assert "503" in (stored.last_error or "")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entry_replayed_elsewhere_is_not_marked_twice(
        self,
        container: ServiceContainer,
        database: Database,
    ) -> None:
        entry = await staged_entry(database, "ws_1", 7, "paid")
        assert await container.backlog.process_batch() == 1

        assert await container.backlog.mark_delivered(entry.id, 1) is False
        assert (await backlog_entries(database))[0].attempts == 1


class TestReconciliationBacklog:
    """Replay of undelivered updates."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replay_delivers_and_marks_entry(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        await staged_entry(database, "ws_1", 7, "paid", error="down", attempts=3)

        assert await container.backlog.process_batch() == 1
        assert fake_orders.updates == [(7, "paid")]
        assert await container.backlog.get_pending_count() == 0

        entry = (await backlog_entries(database))[0]
        assert entry.delivered is True
        assert entry.attempts == 4
        assert entry.delivered_at is not None
        assert entry.last_error is None

        assert await container.backlog.process_batch() == 0
        assert fake_orders.updates == [(7, "paid")]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_replay_keeps_entry(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        fake_orders.always_fail = True
        await staged_entry(database, "ws_1", 7, "paid")

        assert await container.backlog.process_batch() == 0

        entry = (await backlog_entries(database))[0]
        assert entry.delivered is False
        assert entry.attempts == 1
        assert entry.last_attempted_at is not None
        assert entry.last_error == "Order service returned 503"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replays_oldest_first_in_batches(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        backlog = ReconciliationBacklog(
            database.session_factory, container.order_service, batch_size=2
        )
        for order_id in (1, 2, 3):
            await staged_entry(database, f"ws_{order_id}", order_id, "paid")

        assert await backlog.process_batch() == 2
        assert fake_orders.updates == [(1, "paid"), (2, "paid")]
        assert await backlog.get_pending_count() == 1

        assert await backlog.process_batch() == 1
        assert fake_orders.updates[-1] == (3, "paid")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_polling_loop_drains_backlog(
        self,
        container: ServiceContainer,
        database: Database,
        fake_orders: FakeOrderService,
    ) -> None:
        backlog = ReconciliationBacklog(
            database.session_factory, container.order_service, poll_interval_seconds=0.01
        )
        fake_orders.failures_remaining = 1
        await staged_entry(database, "ws_1", 7, "paid")

        task = asyncio.create_task(backlog.start())
        try:
            for _ in range(200):
                if await backlog.get_pending_count() == 0:
                    break
                await asyncio.sleep(0.01)
        finally:
            backlog.stop()
            await asyncio.wait_for(task, timeout=1)

        assert await backlog.get_pending_count() == 0
        assert fake_orders.updates == [(7, "paid")]

    @pytest.mark.unit
    def test_replay_claims_rows_with_skip_locked(self, mocker: Any) -> None:
        """Concurrent replayers on PostgreSQL never claim the same entry."""
        backlog = ReconciliationBacklog(mocker.Mock(), mocker.Mock())

        sql = str(backlog._pending_query([3]).compile(dialect=postgresql.dialect()))

        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "NOT IN" in sql
