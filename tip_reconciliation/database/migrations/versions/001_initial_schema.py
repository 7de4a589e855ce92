"""Initial database schema

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

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

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
BigIntPK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Upgrade database schema."""
    # Create transactions table
    op.create_table(
        "transactions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("counterparty_ref", sa.String(length=64), nullable=False),
        sa.Column("account_reference", sa.String(length=64), nullable=False),
        sa.Column("state", sa.String(length=20), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("merchant_request_id", sa.String(length=128), nullable=True),
        sa.Column("provider_result", JSONType, nullable=True),
        sa.Column("poll_attempts", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("account_metadata", JSONType, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount > 0", name="positive_amount"),
        sa.CheckConstraint("kind IN ('tip_payment', 'payout')", name="valid_kind"),
        sa.CheckConstraint(
            "state IN ('created', 'initiating', 'awaiting_result', "
            "'succeeded', 'failed', 'timed_out')",
            name="valid_state",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("correlation_id"),
    )
    op.create_index(
        "idx_transactions_state_updated", "transactions", ["state", "updated_at"], unique=False
    )
    op.create_index(op.f("ix_transactions_state"), "transactions", ["state"], unique=False)
    op.create_index(
        op.f("ix_transactions_created_at"), "transactions", ["created_at"], unique=False
    )

    # Create correlation_bindings table
    op.create_table(
        "correlation_bindings",
        sa.Column("correlation_id", sa.String(length=128), nullable=False),
        sa.Column("transaction_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"]),
        sa.PrimaryKeyConstraint("correlation_id"),
    )
    op.create_index(
        op.f("ix_correlation_bindings_transaction_id"),
        "correlation_bindings",
        ["transaction_id"],
        unique=False,
    )

    # Create callback_log table
    op.create_table(
        "callback_log",
        sa.Column("id", BigIntPK, autoincrement=True, nullable=False),
        sa.Column("callback_kind", sa.String(length=32), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("transaction_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("result_code", sa.Integer(), nullable=True),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_callback_log_correlation_id"), "callback_log", ["correlation_id"], unique=False
    )
    op.create_index(
        op.f("ix_callback_log_received_at"), "callback_log", ["received_at"], unique=False
    )

    # Create outbox_events table
    op.create_table(
        "outbox_events",
        sa.Column("id", BigIntPK, autoincrement=True, nullable=False),
        sa.Column("aggregate_id", sa.Uuid(), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("payload", JSONType, nullable=False),
        sa.Column("published", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_outbox_aggregate",
        "outbox_events",
        ["aggregate_id", "aggregate_type"],
        unique=False,
    )
    op.create_index(
        "idx_outbox_unpublished",
        "outbox_events",
        ["published", "created_at"],
        unique=False,
        postgresql_where=sa.text("NOT published"),
    )
    op.create_index(
        op.f("ix_outbox_events_published"),
        "outbox_events",
        ["published"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index(op.f("ix_outbox_events_published"), table_name="outbox_events")
    op.drop_index(
        "idx_outbox_unpublished",
        table_name="outbox_events",
        postgresql_where=sa.text("NOT published"),
    )
    op.drop_index("idx_outbox_aggregate", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index(op.f("ix_callback_log_received_at"), table_name="callback_log")
    op.drop_index(op.f("ix_callback_log_correlation_id"), table_name="callback_log")
    op.drop_table("callback_log")
    op.drop_index(
        op.f("ix_correlation_bindings_transaction_id"), table_name="correlation_bindings"
    )
    op.drop_table("correlation_bindings")
    op.drop_index(op.f("ix_transactions_created_at"), table_name="transactions")
    op.drop_index(op.f("ix_transactions_state"), table_name="transactions")
    op.drop_index("idx_transactions_state_updated", table_name="transactions")
    op.drop_table("transactions")
