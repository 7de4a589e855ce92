"""
Transactional outbox pattern implementation.

Terminal transitions that need downstream action (customer confirmations,
payout notifications, compensation requests) are written to the outbox in
the same write as the state change, then published asynchronously. A
duplicate callback never reaches the write, so it never creates an event.
"""
import asyncio
import itertools
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

import structlog

from tip_reconciliation.core.domain import utcnow
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class OutboxMessage:
    """An event to be written alongside a transition."""

    event_type: str
    aggregate_id: uuid.UUID
    payload: Dict[str, Any]
    aggregate_type: str = "transaction"


@dataclass(frozen=True)
class StoredOutboxEvent:
    id: int
    event_type: str
    aggregate_id: uuid.UUID
    aggregate_type: str
    payload: Dict[str, Any]
    created_at: datetime
    published: bool = False
    published_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "aggregate_id": str(self.aggregate_id),
            "aggregate_type": self.aggregate_type,
            "event_type": self.event_type,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class EventOutbox(Protocol):
    """Read side of the outbox, used by the publisher."""

    async def fetch_unpublished(self, limit: int) -> List[StoredOutboxEvent]:
        ...

    async def mark_published(self, event_ids: List[int]) -> None:
        ...

    async def pending_count(self) -> int:
        ...


class InMemoryEventOutbox:
    """
    List-backed outbox.

    InMemoryTransactionRepository appends to it while holding its write lock,
    which gives the same all-or-nothing behaviour as a database transaction.
    """

    def __init__(self) -> None:
        self._events: List[StoredOutboxEvent] = []
        self._ids = itertools.count(1)

    def append(self, messages: Iterable[OutboxMessage]) -> None:
        now = utcnow()
        for message in messages:
            self._events.append(
                StoredOutboxEvent(
                    id=next(self._ids),
                    event_type=message.event_type,
                    aggregate_id=message.aggregate_id,
                    aggregate_type=message.aggregate_type,
                    payload=dict(message.payload),
                    created_at=now,
                )
            )

    @property
    def events(self) -> List[StoredOutboxEvent]:
        return list(self._events)

    async def fetch_unpublished(self, limit: int) -> List[StoredOutboxEvent]:
        return [e for e in self._events if not e.published][:limit]

    async def mark_published(self, event_ids: List[int]) -> None:
        ids = set(event_ids)
        now = utcnow()
        self._events = [
            StoredOutboxEvent(
                id=e.id,
                event_type=e.event_type,
                aggregate_id=e.aggregate_id,
                aggregate_type=e.aggregate_type,
                payload=e.payload,
                created_at=e.created_at,
                published=True,
                published_at=now,
            )
            if e.id in ids
            else e
            for e in self._events
        ]

    async def pending_count(self) -> int:
        return sum(1 for e in self._events if not e.published)


PublisherFunc = Callable[[Dict[str, Any]], Awaitable[None]]


class OutboxPublisher:
    """
    Publishes events from the outbox to a message queue.

    Implements at-least-once delivery by:
    1. Reading unpublished events from outbox
    2. Publishing to message queue
    3. Marking as published
    """

    def __init__(
        self,
        outbox: EventOutbox,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            outbox: Outbox storage to drain
            publisher_func: Coroutine that delivers one event downstream
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.outbox = outbox
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """Default publisher that just logs events."""
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _publish_event(self, event: StoredOutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            await self.publisher_func(event.to_dict())
        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        events = await self.outbox.fetch_unpublished(self.batch_size)
        if not events:
            return 0

        logger.info("outbox_batch_processing_started", batch_size=len(events))

        published_ids = []
        for event in events:
            if await self._publish_event(event):
                published_ids.append(event.id)

        if published_ids:
            await self.outbox.mark_published(published_ids)

        metrics.set_outbox_queue_depth(await self.outbox.pending_count())
        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=len(published_ids),
            failed=len(events) - len(published_ids),
        )
        return len(published_ids)

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
                    continue

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Events were processed, check immediately for more
                    await asyncio.sleep(0.1)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        return await self.outbox.pending_count()
