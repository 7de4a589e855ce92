"""SQLAlchemy database models for tip and payout reconciliation."""
import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class TransactionRecord(Base):
    """
    Tip payments and staff payouts.

    One row per transaction, never deleted. state and provider_result are
    written only through a version-checked UPDATE.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    counterparty_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    account_reference: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    state: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    merchant_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_result: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    poll_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    account_metadata: Mapped[Dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint("kind IN ('tip_payment', 'payout')", name="valid_kind"),
        CheckConstraint(
            "state IN ('created', 'initiating', 'awaiting_result', "
            "'succeeded', 'failed', 'timed_out')",
            name="valid_state",
        ),
        Index("idx_transactions_state_updated", "state", "updated_at"),
    )

    def __repr__(self) -> str:
        """String representation of TransactionRecord."""
        return (
            f"<TransactionRecord(id={self.id}, kind={self.kind}, "
            f"amount={self.amount}, state={self.state})>"
        )


class CorrelationBinding(Base):
    """
    Provider correlation ID to transaction binding.

    The primary key on correlation_id is what makes binding check-and-set.
    """

    __tablename__ = "correlation_bindings"

    correlation_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    transaction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    def __repr__(self) -> str:
        return f"<CorrelationBinding({self.correlation_id} -> {self.transaction_id})>"


class CallbackLogRecord(Base):
    """
    Raw provider callbacks.

    Audit table: every callback we received, its payload as sent, and the
    outcome of processing it.
    """

    __tablename__ = "callback_log"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    callback_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    result_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        return (
            f"<CallbackLogRecord(id={self.id}, kind={self.callback_kind}, "
            f"correlation_id={self.correlation_id}, status={self.status})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Events are written in the same transaction as the state change that
    caused them, then published asynchronously by a background worker.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
