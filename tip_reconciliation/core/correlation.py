"""
Correlation store: provider correlation IDs to local transaction IDs.

A correlation ID is the CheckoutRequestID of an STK push or the
ConversationID of a B2C payout. Binding is check-and-set: the first
transaction to claim an ID owns it forever. This is the single idempotency
guard for inbound callbacks.
"""
import asyncio
import uuid
from typing import Dict, Protocol

import structlog

from tip_reconciliation.core.errors import CorrelationNotFound, DuplicateCorrelation

logger = structlog.get_logger(__name__)


class CorrelationStore(Protocol):
    """Interface for correlation ID bindings."""

    async def put(self, correlation_id: str, transaction_id: uuid.UUID) -> None:
        """
        Bind correlation_id to transaction_id.

        Re-binding the same pair is a no-op. Binding to a different
        transaction raises DuplicateCorrelation and keeps the original.
        """
        ...

    async def resolve(self, correlation_id: str) -> uuid.UUID:
        """Return the bound transaction ID or raise CorrelationNotFound."""
        ...


class InMemoryCorrelationStore:
    """Dictionary-backed correlation store for tests and local development."""

    def __init__(self) -> None:
        self._bindings: Dict[str, uuid.UUID] = {}
        self._lock = asyncio.Lock()

    async def put(self, correlation_id: str, transaction_id: uuid.UUID) -> None:
        async with self._lock:
            existing = self._bindings.get(correlation_id)
            if existing is None:
                self._bindings[correlation_id] = transaction_id
                logger.info(
                    "correlation_bound",
                    correlation_id=correlation_id,
                    transaction_id=str(transaction_id),
                )
                return
            if existing == transaction_id:
                return
            raise DuplicateCorrelation(correlation_id, str(existing), str(transaction_id))

    async def resolve(self, correlation_id: str) -> uuid.UUID:
        try:
            return self._bindings[correlation_id]
        except KeyError:
            raise CorrelationNotFound(correlation_id) from None
