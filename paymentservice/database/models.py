"""SQLAlchemy database models for payment attempts and the reconciliation backlog."""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from paymentservice.core.attempt_state import AttemptState, ensure_transition
from paymentservice.core.exceptions import InvalidStateTransition

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# BIGINT autoincrement only works on SQLite as INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class PaymentAttempt(Base):
    """
    Payment attempts table.

    One row per STK Push the gateway accepted. ``correlation_id`` is the
    gateway's CheckoutRequestID and is the key callbacks are matched on;
    ``order_id`` is the internal order the attempt pays for.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    correlation_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    merchant_request_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    phone_number: Mapped[str] = mapped_column(String(15), nullable=False)
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AttemptState.INITIATED.value, index=True
    )
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[str | None] = mapped_column(Text, nullable=True)
    mpesa_receipt_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    callback_metadata: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "state IN ('initiated', 'paid', 'failed')",
            name="valid_attempt_state",
        ),
        Index(
            "uq_payment_attempts_active_order",
            "order_id",
            unique=True,
            postgresql_where=text("state = 'initiated'"),
            sqlite_where=text("state = 'initiated'"),
        ),
    )

    @validates("state")
    def _validate_state(self, key: str, value: Any) -> str:
        """Apply the attempt state machine to every ORM-level state change."""
        target = AttemptState(value)
        current = self.state
        if current is None:
            if target is not AttemptState.INITIATED:
                raise InvalidStateTransition("new", target.value)
        elif AttemptState(current) is not target:
            ensure_transition(current, target)
        return target.value

    @property
    def attempt_state(self) -> AttemptState:
        return AttemptState(self.state)

    def __repr__(self) -> str:
        """String representation of PaymentAttempt."""
        return (
            f"<PaymentAttempt(correlation_id={self.correlation_id}, "
            f"order_id={self.order_id}, state={self.state})>"
        )


class StatusBacklogEntry(Base):
    """
    Reconciliation backlog table.

    Order status updates that still failed after the bounded retry are
    parked here and replayed by the backlog worker until delivered.
    """

    __tablename__ = "status_backlog"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    correlation_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    target_status: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "target_status IN ('paid', 'failed')",
            name="valid_backlog_status",
        ),
        Index("idx_status_backlog_pending", "delivered", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of StatusBacklogEntry."""
        return (
            f"<StatusBacklogEntry(id={self.id}, order_id={self.order_id}, "
            f"status={self.target_status}, delivered={self.delivered})>"
        )
