"""
SQL implementations of the storage interfaces.

Each operation opens its own short session from the injected factory, so no
database transaction is ever held across a provider call.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tip_reconciliation.core.audit import CallbackLogEntry
from tip_reconciliation.core.domain import (
    ProviderResult,
    Transaction,
    TransactionKind,
    TransactionState,
    utcnow,
)
from tip_reconciliation.core.errors import (
    ConcurrencyError,
    CorrelationNotFound,
    DuplicateCorrelation,
    TransactionNotFound,
)
from tip_reconciliation.core.outbox import OutboxMessage, StoredOutboxEvent
from tip_reconciliation.database.models import (
    CallbackLogRecord,
    CorrelationBinding,
    OutboxEvent,
    TransactionRecord,
)

logger = structlog.get_logger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def _aware(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_domain(record: TransactionRecord) -> Transaction:
    return Transaction(
        id=record.id,
        kind=TransactionKind(record.kind),
        amount=record.amount,
        counterparty_ref=record.counterparty_ref,
        account_reference=record.account_reference,
        state=TransactionState(record.state),
        correlation_id=record.correlation_id,
        merchant_request_id=record.merchant_request_id,
        provider_result=(
            ProviderResult.from_dict(record.provider_result)
            if record.provider_result is not None
            else None
        ),
        poll_attempts=record.poll_attempts,
        version=record.version,
        metadata=dict(record.account_metadata or {}),
        created_at=_aware(record.created_at),
        updated_at=_aware(record.updated_at),
    )


class SqlTransactionRepository:
    """Transaction storage with version-checked updates."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def add(self, transaction: Transaction) -> None:
        record = TransactionRecord(
            id=transaction.id,
            kind=transaction.kind.value,
            amount=transaction.amount,
            counterparty_ref=transaction.counterparty_ref,
            account_reference=transaction.account_reference,
            state=transaction.state.value,
            correlation_id=transaction.correlation_id,
            merchant_request_id=transaction.merchant_request_id,
            provider_result=(
                transaction.provider_result.to_dict() if transaction.provider_result else None
            ),
            poll_attempts=0,
            version=0,
            account_metadata=dict(transaction.metadata),
            created_at=transaction.created_at,
            updated_at=transaction.updated_at,
        )
        async with self.session_factory() as session:
            async with session.begin():
                session.add(record)

    async def get(self, transaction_id: uuid.UUID) -> Transaction:
        async with self.session_factory() as session:
            record = await session.get(TransactionRecord, transaction_id)
            if record is None:
                raise TransactionNotFound(str(transaction_id))
            return _to_domain(record)

    async def compare_and_swap(
        self,
        transaction: Transaction,
        expected_version: int,
        outbox_messages: Sequence[OutboxMessage] = (),
    ) -> Transaction:
        """
        UPDATE ... WHERE id = :id AND version = :expected, plus outbox rows.

        Both commit together or not at all.
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TransactionRecord)
                    .where(
                        TransactionRecord.id == transaction.id,
                        TransactionRecord.version == expected_version,
                    )
                    .values(
                        state=transaction.state.value,
                        correlation_id=transaction.correlation_id,
                        merchant_request_id=transaction.merchant_request_id,
                        provider_result=(
                            transaction.provider_result.to_dict()
                            if transaction.provider_result
                            else None
                        ),
                        updated_at=transaction.updated_at,
                        version=expected_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )

                if result.rowcount != 1:
                    current_version = await session.scalar(
                        select(TransactionRecord.version).where(
                            TransactionRecord.id == transaction.id
                        )
                    )
                    if current_version is None:
                        raise TransactionNotFound(str(transaction.id))
                    raise ConcurrencyError(str(transaction.id), expected_version, current_version)

                for message in outbox_messages:
                    session.add(
                        OutboxEvent(
                            aggregate_id=message.aggregate_id,
                            aggregate_type=message.aggregate_type,
                            event_type=message.event_type,
                            payload=message.payload,
                            published=False,
                            created_at=utcnow(),
                        )
                    )

                stored = await session.scalar(
                    select(TransactionRecord)
                    .where(TransactionRecord.id == transaction.id)
                    .execution_options(populate_existing=True)
                )
                return _to_domain(stored)

    async def record_poll_attempt(self, transaction_id: uuid.UUID) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TransactionRecord)
                    .where(TransactionRecord.id == transaction_id)
                    .values(poll_attempts=TransactionRecord.poll_attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise TransactionNotFound(str(transaction_id))
                attempts = await session.scalar(
                    select(TransactionRecord.poll_attempts).where(
                        TransactionRecord.id == transaction_id
                    )
                )
                return int(attempts)

    async def list_stale(
        self,
        state: TransactionState,
        updated_before: datetime,
        max_poll_attempts: int,
        limit: int,
    ) -> List[Transaction]:
        stmt = (
            select(TransactionRecord)
            .where(
                TransactionRecord.state == state.value,
                TransactionRecord.updated_at < updated_before,
                TransactionRecord.poll_attempts < max_poll_attempts,
            )
            .order_by(TransactionRecord.updated_at)
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_to_domain(record) for record in result.scalars().all()]


class SqlCorrelationStore:
    """Correlation bindings guarded by the correlation_id primary key."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def put(self, correlation_id: str, transaction_id: uuid.UUID) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(
                        CorrelationBinding(
                            correlation_id=correlation_id,
                            transaction_id=transaction_id,
                            created_at=utcnow(),
                        )
                    )
        except IntegrityError:
            existing = await self._lookup(correlation_id)
            if existing == transaction_id:
                return
            raise DuplicateCorrelation(correlation_id, str(existing), str(transaction_id)) from None

        logger.info(
            "correlation_bound",
            correlation_id=correlation_id,
            transaction_id=str(transaction_id),
        )

    async def resolve(self, correlation_id: str) -> uuid.UUID:
        transaction_id = await self._lookup(correlation_id)
        if transaction_id is None:
            raise CorrelationNotFound(correlation_id)
        return transaction_id

    async def _lookup(self, correlation_id: str) -> Optional[uuid.UUID]:
        async with self.session_factory() as session:
            return await session.scalar(
                select(CorrelationBinding.transaction_id).where(
                    CorrelationBinding.correlation_id == correlation_id
                )
            )


class SqlCallbackLog:
    """Raw callback audit table."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def record(self, entry: CallbackLogEntry) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    CallbackLogRecord(
                        callback_kind=entry.callback_kind,
                        correlation_id=entry.correlation_id,
                        transaction_id=entry.transaction_id,
                        status=entry.status,
                        result_code=entry.result_code,
                        payload=entry.payload,
                        error=entry.error,
                        received_at=entry.received_at,
                    )
                )

    async def for_correlation(self, correlation_id: str) -> List[CallbackLogEntry]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CallbackLogRecord)
                .where(CallbackLogRecord.correlation_id == correlation_id)
                .order_by(CallbackLogRecord.id)
            )
            return [
                CallbackLogEntry(
                    callback_kind=r.callback_kind,
                    payload=r.payload,
                    status=r.status,
                    correlation_id=r.correlation_id,
                    transaction_id=r.transaction_id,
                    result_code=r.result_code,
                    error=r.error,
                    received_at=_aware(r.received_at),
                )
                for r in result.scalars().all()
            ]


class SqlEventOutbox:
    """Read side of the outbox_events table."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def fetch_unpublished(self, limit: int) -> List[StoredOutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [
                StoredOutboxEvent(
                    id=e.id,
                    event_type=e.event_type,
                    aggregate_id=e.aggregate_id,
                    aggregate_type=e.aggregate_type,
                    payload=e.payload,
                    created_at=_aware(e.created_at),
                    published=e.published,
                    published_at=_aware(e.published_at) if e.published_at else None,
                )
                for e in result.scalars().all()
            ]

    async def mark_published(self, event_ids: List[int]) -> None:
        if not event_ids:
            return
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(event_ids))
                    .values(published=True, published_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def pending_count(self) -> int:
        async with self.session_factory() as session:
            count = await session.scalar(
                select(func.count()).select_from(OutboxEvent).where(
                    OutboxEvent.published == False  # noqa: E712
                )
            )
            return int(count or 0)
