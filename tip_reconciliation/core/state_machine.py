"""
Transaction state machine: the single writer of state and provider_result.

Every path that changes a transaction (initiation, push callbacks, status
queries, payout results) converges on apply(). It is:

- Idempotent: any event against a terminal transaction returns it unchanged.
- Exclusive per transaction: read, compute, compare-and-swap on version,
  re-read and retry on conflict.
- Strict: an event outside the transition graph raises InvalidTransition and
  leaves the stored transaction untouched.

Terminal handlers registered per kind return outbox messages that are
written in the same compare-and-swap as the transition, so side effects fire
once per real transition and never for a duplicate callback.
"""
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from tip_reconciliation.core.audit import AuditRecord, AuditSink, LoggingAuditSink
from tip_reconciliation.core.domain import (
    TRANSITIONS,
    EventType,
    Transaction,
    TransactionKind,
    TransactionState,
    TransitionEvent,
    utcnow,
)
from tip_reconciliation.core.errors import ConcurrencyError, InvalidTransition
from tip_reconciliation.core.outbox import OutboxMessage
from tip_reconciliation.core.repository import TransactionRepository
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TerminalHandler = Callable[[Transaction], Sequence[OutboxMessage]]


@dataclass(frozen=True)
class TransitionOutcome:
    """Result of a transition attempt."""

    transaction: Transaction
    changed: bool
    previous_state: TransactionState


def next_state(transaction: Transaction, event: TransitionEvent) -> TransactionState:
    """Look up the target state or raise InvalidTransition."""
    try:
        return TRANSITIONS[(transaction.state, event.type)]
    except KeyError:
        raise InvalidTransition(
            str(transaction.id), transaction.state.value, event.type.value
        ) from None


def evolve(transaction: Transaction, event: TransitionEvent) -> Transaction:
    """
    Pure transition function.

    Args:
        transaction: Current, non-terminal transaction
        event: Event to apply

    Returns:
        Transaction: The next version (not yet persisted)

    Raises:
        InvalidTransition: If the event is not allowed from the current state
    """
    target = next_state(transaction, event)
    changes: Dict[str, object] = {"state": target, "updated_at": utcnow()}

    if event.type == EventType.ACKNOWLEDGED:
        changes["correlation_id"] = event.correlation_id
        changes["merchant_request_id"] = event.merchant_request_id

    if target.is_terminal:
        if event.result is None:
            raise InvalidTransition(str(transaction.id), transaction.state.value, event.type.value)
        changes["provider_result"] = event.result

    return transaction.evolve(**changes)


class TransactionStateMachine:
    """
    Applies lifecycle events to stored transactions.

    Example:
        ```python
        machine = TransactionStateMachine(repository)
        machine.register_terminal_handler(TransactionKind.PAYOUT, payout_events)
        txn = await machine.apply(txn_id, TransitionEvent.from_result(result, "callback"))
        ```
    """

    def __init__(
        self,
        repository: TransactionRepository,
        audit_sink: Optional[AuditSink] = None,
        max_retries: int = 5,
    ):
        """
        Initialize state machine.

        Args:
            repository: Transaction storage with compare-and-swap
            audit_sink: Fire-and-forget audit sink
            max_retries: Attempts per transition on concurrency conflicts
        """
        self.repository = repository
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.max_retries = max_retries
        self._terminal_handlers: Dict[TransactionKind, List[TerminalHandler]] = {}

    def register_terminal_handler(
        self, kind: TransactionKind, handler: TerminalHandler
    ) -> None:
        """
        Register a handler that builds outbox messages for terminal transitions.

        Args:
            kind: Transaction kind to handle
            handler: Called with the new terminal transaction
        """
        self._terminal_handlers.setdefault(kind, []).append(handler)
        logger.info(
            "terminal_handler_registered",
            kind=kind.value,
            handler=getattr(handler, "__name__", repr(handler)),
        )

    async def apply(self, transaction_id: uuid.UUID, event: TransitionEvent) -> Transaction:
        """Apply an event and return the stored transaction."""
        outcome = await self.transition(transaction_id, event)
        return outcome.transaction

    async def transition(
        self, transaction_id: uuid.UUID, event: TransitionEvent
    ) -> TransitionOutcome:
        """
        Apply an event and report whether it changed anything.

        Raises:
            InvalidTransition: Event not allowed from the current state
            TransactionNotFound: Unknown transaction
            ConcurrencyError: Still conflicting after max_retries attempts
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ConcurrencyError),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_random_exponential(multiplier=0.005, max=0.1),
            reraise=True,
        )
        outcome = await retrying(self._attempt, transaction_id, event)

        if outcome.changed:
            self._after_commit(outcome, event)
        return outcome

    async def _attempt(
        self, transaction_id: uuid.UUID, event: TransitionEvent
    ) -> TransitionOutcome:
        current = await self.repository.get(transaction_id)

        if current.is_terminal:
            logger.info(
                "transition_ignored_terminal",
                transaction_id=str(transaction_id),
                state=current.state.value,
                event_type=event.type.value,
                source=event.source,
            )
            return TransitionOutcome(current, changed=False, previous_state=current.state)

        updated = evolve(current, event)
        messages: List[OutboxMessage] = []
        if updated.is_terminal:
            for handler in self._terminal_handlers.get(updated.kind, []):
                messages.extend(handler(updated))

        try:
            stored = await self.repository.compare_and_swap(
                updated, current.version, messages
            )
        except ConcurrencyError:
            metrics.record_concurrency_conflict()
            logger.info(
                "transition_conflict_retrying",
                transaction_id=str(transaction_id),
                expected_version=current.version,
                event_type=event.type.value,
            )
            raise

        return TransitionOutcome(stored, changed=True, previous_state=current.state)

    def _after_commit(self, outcome: TransitionOutcome, event: TransitionEvent) -> None:
        stored = outcome.transaction
        metrics.record_transition(
            stored.kind.value, outcome.previous_state.value, stored.state.value
        )
        logger.info(
            "transaction_transitioned",
            transaction_id=str(stored.id),
            kind=stored.kind.value,
            from_state=outcome.previous_state.value,
            to_state=stored.state.value,
            event_type=event.type.value,
            source=event.source,
            version=stored.version,
        )
        record = AuditRecord(
            transaction_id=stored.id,
            kind=stored.kind.value,
            from_state=outcome.previous_state.value,
            to_state=stored.state.value,
            event=event.type.value,
            source=event.source,
            version=stored.version,
            correlation_id=stored.correlation_id,
        )
        try:
            self.audit_sink.emit(record)
        except Exception as e:
            logger.error("audit_emit_failed", transaction_id=str(stored.id), error=str(e))
