"""
Reconciliation backlog.

Every resolved attempt writes its order status update here, in the same
transaction as the state change. The row is then delivered inline or by a
polling worker, and marked delivered once the order service accepts it.
Nothing is dropped.
"""
import asyncio
from datetime import datetime, timezone
from typing import Collection, List, Optional

import structlog
from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paymentservice.core.exceptions import DownstreamUpdateFailure
from paymentservice.database.models import StatusBacklogEntry
from paymentservice.integrations.order_service import OrderServiceClient
from paymentservice.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def stage_status_update(
    db: AsyncSession,
    correlation_id: str,
    order_id: int,
    target_status: str,
    error: Optional[str] = None,
    attempts: int = 0,
) -> StatusBacklogEntry:
    """
    Add an undelivered entry to the session's current transaction.

    The caller commits, together with whatever domain change the entry
    belongs to.
    """
    entry = StatusBacklogEntry(
        correlation_id=correlation_id,
        order_id=order_id,
        target_status=target_status,
        attempts=attempts,
        last_error=error,
        delivered=False,
        last_attempted_at=datetime.now(timezone.utc) if attempts else None,
    )
    db.add(entry)
    return entry


class ReconciliationBacklog:
    """
    Durable store of order status updates awaiting delivery.

    Replay mirrors an outbox publisher:
    1. Claim the oldest undelivered entry no other worker holds
    2. Send it to the order service
    3. Mark delivered, or record the failure and leave it for the next pass
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        order_service: OrderServiceClient,
        batch_size: int = 100,
        poll_interval_seconds: float = 30.0,
    ):
        """
        Initialize backlog.

        Args:
            session_factory: Database session factory
            order_service: Order status sink
            batch_size: Number of entries to replay per batch
            poll_interval_seconds: Polling interval
        """
        self.session_factory = session_factory
        self.order_service = order_service
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

    async def mark_delivered(self, backlog_id: int, attempts: int) -> bool:
        """
        Mark an entry delivered after an inline delivery.

        Returns:
            bool: False if the entry was already delivered by someone else
        """
        now = datetime.now(timezone.utc)
        stmt = (
            update(StatusBacklogEntry)
            .where(StatusBacklogEntry.id == backlog_id, StatusBacklogEntry.delivered == False)  # noqa: E712
            .values(
                delivered=True,
                delivered_at=now,
                last_attempted_at=now,
                last_error=None,
                attempts=StatusBacklogEntry.attempts + attempts,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
        return result.rowcount == 1

    async def record_failure(self, backlog_id: int, attempts: int, error: str) -> None:
        """Leave an entry pending for replay after failed inline delivery."""
        now = datetime.now(timezone.utc)
        stmt = (
            update(StatusBacklogEntry)
            .where(StatusBacklogEntry.id == backlog_id, StatusBacklogEntry.delivered == False)  # noqa: E712
            .values(
                last_attempted_at=now,
                last_error=error,
                attempts=StatusBacklogEntry.attempts + attempts,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

        metrics.record_backlog_event("enqueued")
        logger.warning(
            "order_status_backlogged",
            backlog_id=backlog_id,
            attempts=attempts,
            error=error,
        )

    def _pending_query(self, skip_ids: Collection[int] = ()) -> Select:
        # SKIP LOCKED lets several replayers share the table; SQLite ignores it
        stmt = select(StatusBacklogEntry).where(StatusBacklogEntry.delivered == False)  # noqa: E712
        if skip_ids:
            stmt = stmt.where(StatusBacklogEntry.id.not_in(list(skip_ids)))
        return (
            stmt.order_by(StatusBacklogEntry.created_at, StatusBacklogEntry.id)
            .limit(1)
            .with_for_update(skip_locked=True)
        )

    async def _claim_next(
        self, db: AsyncSession, skip_ids: Collection[int]
    ) -> Optional[StatusBacklogEntry]:
        result = await db.execute(self._pending_query(skip_ids))
        return result.scalar_one_or_none()

    async def _deliver(self, entry: StatusBacklogEntry) -> bool:
        """
        Deliver a single entry, updating it in place.

        Returns:
            bool: True if the order service accepted the update
        """
        entry.attempts += 1
        entry.last_attempted_at = datetime.now(timezone.utc)
        try:
            await self.order_service.update_status(entry.order_id, entry.target_status)
        except DownstreamUpdateFailure as e:
            entry.last_error = e.message
            logger.warning(
                "backlog_entry_replay_failed",
                backlog_id=entry.id,
                order_id=entry.order_id,
                attempts=entry.attempts,
                error=e.message,
            )
            return False

        entry.delivered = True
        entry.delivered_at = entry.last_attempted_at
        entry.last_error = None
        logger.info(
            "backlog_entry_delivered",
            backlog_id=entry.id,
            correlation_id=entry.correlation_id,
            order_id=entry.order_id,
            status=entry.target_status,
            attempts=entry.attempts,
        )
        return True

    async def process_batch(self) -> int:
        """
        Replay up to ``batch_size`` undelivered entries.

        Each entry is claimed, delivered and committed on its own, so the
        row lock is held only while that entry is in flight.

        Returns:
            int: Number of entries delivered
        """
        tried: List[int] = []
        delivered = 0
        async with self.session_factory() as db:
            while len(tried) < self.batch_size:
                entry = await self._claim_next(db, tried)
                if entry is None:
                    await db.rollback()
                    break
                tried.append(entry.id)
                if await self._deliver(entry):
                    delivered += 1
                await db.commit()

        if tried:
            metrics.record_backlog_event("delivered", delivered)
            if delivered < len(tried):
                metrics.record_backlog_event("retry_failed", len(tried) - delivered)
            logger.info(
                "backlog_batch_processed",
                total=len(tried),
                delivered=delivered,
                failed=len(tried) - delivered,
            )

        metrics.set_backlog_depth(await self.get_pending_count())
        return delivered

    async def start(self) -> None:
        """
        Start the replay loop.

        Continuously polls for undelivered entries until stopped.
        """
        self._running = True
        logger.info("backlog_replayer_started", poll_interval=self.poll_interval_seconds)

        try:
            while self._running:
                try:
                    delivered = await self.process_batch()

                    if delivered == self.batch_size:
                        # Full batch went through, check immediately for more
                        await asyncio.sleep(0)
                    else:
                        await asyncio.sleep(self.poll_interval_seconds)

                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("backlog_replayer_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            self._running = False
            logger.info("backlog_replayer_stopped")

    def stop(self) -> None:
        """Stop the replay loop."""
        self._running = False
        logger.info("backlog_replayer_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of undelivered entries.

        Returns:
            int: Number of undelivered entries
        """
        async with self.session_factory() as db:
            stmt = select(func.count(StatusBacklogEntry.id)).where(
                StatusBacklogEntry.delivered == False  # noqa: E712
            )
            result = await db.execute(stmt)
            return int(result.scalar_one())
