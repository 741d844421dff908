"""
Correlation store: the authoritative record of payments in flight.

Maps the gateway's CheckoutRequestID to the internal order id and the
attempt state. State changes go through a single conditional UPDATE
(``... WHERE state = 'initiated'``), so concurrent callbacks for the same
correlation id are linearized by the database: exactly one wins. The winner
writes its order status update to the backlog in the same transaction.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paymentservice.core.attempt_state import (
    ORDER_STATUS_FOR_STATE,
    AttemptState,
    ensure_transition,
)
from paymentservice.core.backlog import stage_status_update
from paymentservice.core.exceptions import ActiveAttemptExists, CorrelationConflict
from paymentservice.database.models import PaymentAttempt, StatusBacklogEntry

logger = structlog.get_logger(__name__)


class CorrelationStore:
    """PaymentAttempt persistence."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record_initiated(
        self,
        correlation_id: str,
        order_id: int,
        amount: int,
        phone_number: str,
        merchant_request_id: Optional[str] = None,
    ) -> PaymentAttempt:
        """
        Persist a new attempt in state ``initiated`` and commit.

        Raises:
            ActiveAttemptExists: The order already has an initiated attempt
            CorrelationConflict: The correlation id is already recorded
        """
        attempt = PaymentAttempt(
            correlation_id=correlation_id,
            merchant_request_id=merchant_request_id,
            order_id=order_id,
            amount=amount,
            phone_number=phone_number,
            state=AttemptState.INITIATED.value,
        )
        async with self.session_factory() as db:
            db.add(attempt)
            try:
                await db.commit()
            except IntegrityError as e:
                await db.rollback()
                logger.error(
                    "payment_attempt_record_conflict",
                    correlation_id=correlation_id,
                    order_id=order_id,
                    error=str(e.orig),
                )
                if await self._correlation_exists(db, correlation_id):
                    raise CorrelationConflict(
                        f"Checkout request {correlation_id} is already recorded"
                    ) from e
                raise ActiveAttemptExists(order_id) from e

        logger.info(
            "payment_attempt_recorded",
            correlation_id=correlation_id,
            order_id=order_id,
        )
        return attempt

    async def get(self, correlation_id: str) -> Optional[PaymentAttempt]:
        """Look up an attempt by correlation id."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentAttempt).where(PaymentAttempt.correlation_id == correlation_id)
            )
            return result.scalar_one_or_none()

    async def get_active_for_order(self, order_id: int) -> Optional[PaymentAttempt]:
        """Return the order's initiated attempt, if any."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentAttempt).where(
                    PaymentAttempt.order_id == order_id,
                    PaymentAttempt.state == AttemptState.INITIATED.value,
                )
            )
            return result.scalar_one_or_none()

    async def transition(
        self,
        correlation_id: str,
        target: AttemptState,
        *,
        result_code: Optional[int] = None,
        result_desc: Optional[str] = None,
        receipt_number: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[StatusBacklogEntry]:
        """
        Compare-and-transition ``initiated -> target``.

        The winning transition also writes the undelivered order status
        update for the attempt, in the same transaction.

        Returns:
            StatusBacklogEntry: The pending status update if this call
            performed the transition, None if the attempt was missing or no
            longer initiated

        Raises:
            InvalidStateTransition: If ``target`` is not a terminal state
        """
        ensure_transition(AttemptState.INITIATED, target)
        now = datetime.now(timezone.utc)

        stmt = (
            update(PaymentAttempt)
            .where(
                PaymentAttempt.correlation_id == correlation_id,
                PaymentAttempt.state == AttemptState.INITIATED.value,
            )
            .values(
                state=target.value,
                result_code=result_code,
                result_desc=result_desc,
                mpesa_receipt_number=receipt_number,
                callback_metadata=metadata or None,
                resolved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        entry: Optional[StatusBacklogEntry] = None
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount == 1:
                order_id = (
                    await db.execute(
                        select(PaymentAttempt.order_id).where(
                            PaymentAttempt.correlation_id == correlation_id
                        )
                    )
                ).scalar_one()
                entry = stage_status_update(
                    db, correlation_id, order_id, ORDER_STATUS_FOR_STATE[target]
                )
                await db.commit()
            else:
                await db.rollback()

        logger.info(
            "payment_attempt_transition",
            correlation_id=correlation_id,
            target=target.value,
            applied=entry is not None,
            backlog_id=entry.id if entry is not None else None,
        )
        return entry

    async def count_by_state(self) -> Dict[str, int]:
        """Attempt counts per state."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentAttempt.state, func.count(PaymentAttempt.id)).group_by(
                    PaymentAttempt.state
                )
            )
            return {state: count for state, count in result.all()}

    @staticmethod
    async def _correlation_exists(db: AsyncSession, correlation_id: str) -> bool:
        result = await db.execute(
            select(PaymentAttempt.id).where(PaymentAttempt.correlation_id == correlation_id)
        )
        return result.first() is not None
