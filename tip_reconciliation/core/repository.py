"""
Transaction repository interface and in-memory implementation.

The repository is the only persistence seam the engine depends on. Writes
go through compare_and_swap, which enforces optimistic concurrency on the
transaction's version: the write lands only if nobody else wrote since we
read. PostgreSQL uses a conditional UPDATE (see database/repository.py);
the in-memory version uses an asyncio.Lock around the check and the write.

Outbox messages passed to compare_and_swap are stored in the same write, so
an event exists if and only if its transition was committed.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence

import structlog

from tip_reconciliation.core.domain import Transaction, TransactionState
from tip_reconciliation.core.errors import ConcurrencyError, TransactionNotFound
from tip_reconciliation.core.outbox import InMemoryEventOutbox, OutboxMessage

logger = structlog.get_logger(__name__)


class TransactionRepository(Protocol):
    """Interface for transaction storage."""

    async def add(self, transaction: Transaction) -> None:
        """Insert a new transaction (version 0)."""
        ...

    async def get(self, transaction_id: uuid.UUID) -> Transaction:
        """Load a transaction or raise TransactionNotFound."""
        ...

    async def compare_and_swap(
        self,
        transaction: Transaction,
        expected_version: int,
        outbox_messages: Sequence[OutboxMessage] = (),
    ) -> Transaction:
        """
        Persist lifecycle fields if the stored version equals expected_version.

        Returns the stored transaction with version expected_version + 1.
        Raises ConcurrencyError on a version mismatch, in which case nothing
        (including outbox_messages) is written.
        """
        ...

    async def record_poll_attempt(self, transaction_id: uuid.UUID) -> int:
        """Atomically increment the poll counter; returns the new count."""
        ...

    async def list_stale(
        self,
        state: TransactionState,
        updated_before: datetime,
        max_poll_attempts: int,
        limit: int,
    ) -> List[Transaction]:
        """Transactions stuck in `state` since before `updated_before`."""
        ...


class InMemoryTransactionRepository:
    """
    In-memory transaction storage.

    Useful for:
    - Unit tests (fast, no DB required)
    - Local development (no infrastructure needed)
    """

    def __init__(self, outbox: Optional[InMemoryEventOutbox] = None) -> None:
        self._transactions: Dict[uuid.UUID, Transaction] = {}
        self._lock = asyncio.Lock()
        self.outbox = outbox if outbox is not None else InMemoryEventOutbox()

    async def add(self, transaction: Transaction) -> None:
        async with self._lock:
            if transaction.id in self._transactions:
                raise ValueError(f"Transaction {transaction.id} already exists")
            self._transactions[transaction.id] = transaction.evolve(version=0)

    async def get(self, transaction_id: uuid.UUID) -> Transaction:
        try:
            return self._transactions[transaction_id]
        except KeyError:
            raise TransactionNotFound(str(transaction_id)) from None

    async def compare_and_swap(
        self,
        transaction: Transaction,
        expected_version: int,
        outbox_messages: Sequence[OutboxMessage] = (),
    ) -> Transaction:
        async with self._lock:
            current = self._transactions.get(transaction.id)
            if current is None:
                raise TransactionNotFound(str(transaction.id))

            # Optimistic concurrency check
            if current.version != expected_version:
                raise ConcurrencyError(str(transaction.id), expected_version, current.version)

            # poll_attempts is owned by record_poll_attempt, never by transitions
            stored = transaction.evolve(
                version=expected_version + 1,
                poll_attempts=current.poll_attempts,
            )
            self._transactions[transaction.id] = stored
            self.outbox.append(outbox_messages)
            return stored

    async def record_poll_attempt(self, transaction_id: uuid.UUID) -> int:
        async with self._lock:
            current = self._transactions.get(transaction_id)
            if current is None:
                raise TransactionNotFound(str(transaction_id))
            attempts = current.poll_attempts + 1
            self._transactions[transaction_id] = current.evolve(poll_attempts=attempts)
            return attempts

    async def list_stale(
        self,
        state: TransactionState,
        updated_before: datetime,
        max_poll_attempts: int,
        limit: int,
    ) -> List[Transaction]:
        matches = [
            t
            for t in self._transactions.values()
            if t.state == state
            and t.updated_at < updated_before
            and t.poll_attempts < max_poll_attempts
        ]
        matches.sort(key=lambda t: t.updated_at)
        return matches[:limit]

    def __len__(self) -> int:
        return len(self._transactions)
