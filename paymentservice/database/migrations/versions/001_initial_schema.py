"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    # Create payment_attempts table
    op.create_table(
        "payment_attempts",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("correlation_id", sa.String(length=100), nullable=False),
        sa.Column("merchant_request_id", sa.String(length=100), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("phone_number", sa.String(length=15), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("result_desc", sa.Text(), nullable=True),
        sa.Column("mpesa_receipt_number", sa.String(length=50), nullable=True),
        sa.Column(
            "callback_metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount > 0", name="positive_amount"),
        sa.CheckConstraint(
            "state IN ('initiated', 'paid', 'failed')",
            name="valid_attempt_state",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("correlation_id"),
    )
    op.create_index(
        op.f("ix_payment_attempts_order_id"), "payment_attempts", ["order_id"], unique=False
    )
    op.create_index(
        op.f("ix_payment_attempts_state"), "payment_attempts", ["state"], unique=False
    )
    op.create_index(
        op.f("ix_payment_attempts_created_at"), "payment_attempts", ["created_at"], unique=False
    )
    # At most one in-flight attempt per order
    op.create_index(
        "uq_payment_attempts_active_order",
        "payment_attempts",
        ["order_id"],
        unique=True,
        postgresql_where=sa.text("state = 'initiated'"),
    )

    # Create status_backlog table
    op.create_table(
        "status_backlog",
        sa.Column("id", sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column("correlation_id", sa.String(length=100), nullable=False),
        sa.Column("order_id", sa.Integer(), nullable=False),
        sa.Column("target_status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "target_status IN ('paid', 'failed')",
            name="valid_backlog_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_status_backlog_correlation_id"),
        "status_backlog",
        ["correlation_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_status_backlog_delivered"), "status_backlog", ["delivered"], unique=False
    )
    op.create_index(
        "idx_status_backlog_pending",
        "status_backlog",
        ["delivered", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_status_backlog_pending", table_name="status_backlog")
    op.drop_index(op.f("ix_status_backlog_delivered"), table_name="status_backlog")
    op.drop_index(op.f("ix_status_backlog_correlation_id"), table_name="status_backlog")
    op.drop_table("status_backlog")

    op.drop_index("uq_payment_attempts_active_order", table_name="payment_attempts")
    op.drop_index(op.f("ix_payment_attempts_created_at"), table_name="payment_attempts")
    op.drop_index(op.f("ix_payment_attempts_state"), table_name="payment_attempts")
    op.drop_index(op.f("ix_payment_attempts_order_id"), table_name="payment_attempts")
    op.drop_table("payment_attempts")
