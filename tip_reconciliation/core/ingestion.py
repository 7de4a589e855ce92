"""
Callback ingestion service.

Turns provider callbacks into state machine events:

1. Validate the raw body against its schema (CallbackValidationError if not)
2. Resolve the correlation ID to a transaction
3. Apply success / failure / timeout through the state machine
4. Record the raw payload and outcome in the callback log

Once a body has validated, nothing here raises: the provider always gets an
acknowledgement, because a retried callback could duplicate side effects.
"""
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from tip_reconciliation.core.audit import CallbackLog, CallbackLogEntry, InMemoryCallbackLog
from tip_reconciliation.core.correlation import CorrelationStore
from tip_reconciliation.core.domain import TransactionState, TransitionEvent
from tip_reconciliation.core.errors import (
    CallbackValidationError,
    InvalidTransition,
    UnresolvedCorrelation,
)
from tip_reconciliation.core.state_machine import TransactionStateMachine, TransitionOutcome
from tip_reconciliation.core.tasks import InflightTasks
from tip_reconciliation.integrations.callback_payloads import (
    CallbackKind,
    ParsedCallback,
    PayoutTimeout,
    PushTimeout,
    extract_correlation_id,
    parse_callback,
)
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACKNOWLEDGEMENT: Dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Accepted"}


class IngestionStatus(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    INVALID_TRANSITION = "invalid_transition"
    ERROR = "error"
    REJECTED = "rejected"


@dataclass(frozen=True)
class IngestionResult:
    status: IngestionStatus
    callback_kind: CallbackKind
    correlation_id: Optional[str] = None
    transaction_id: Optional[uuid.UUID] = None
    state: Optional[TransactionState] = None
    error: Optional[str] = None


def _awaiting_acknowledgement(error: BaseException) -> bool:
    return (
        isinstance(error, InvalidTransition)
        and error.state == TransactionState.INITIATING.value
    )


def event_for(callback: ParsedCallback) -> TransitionEvent:
    """Map a normalized callback onto a state machine event."""
    result = callback.to_provider_result()
    if isinstance(callback, (PushTimeout, PayoutTimeout)):
        return TransitionEvent.timed_out(result, source=callback.kind.value)
    return TransitionEvent.from_result(result, source=callback.kind.value)


class CallbackIngestion:
    """
    Processes provider callbacks idempotently.

    A duplicate callback resolves to a terminal transaction; apply() is then a
    no-op and the result status is DUPLICATE, so no side effect fires twice.
    """

    def __init__(
        self,
        correlation_store: CorrelationStore,
        state_machine: TransactionStateMachine,
        callback_log: Optional[CallbackLog] = None,
        ack_wait_attempts: int = 5,
        ack_wait_seconds: float = 0.05,
    ):
        self.correlation_store = correlation_store
        self.state_machine = state_machine
        self.callback_log = callback_log or InMemoryCallbackLog()
        self.ack_wait_attempts = ack_wait_attempts
        self.ack_wait_seconds = ack_wait_seconds
        self.inflight = InflightTasks("callback_ingestion")

    async def ingest(self, kind: CallbackKind, body: Any) -> IngestionResult:
        """
        Validate and process a raw callback body.

        Args:
            kind: Which endpoint the body arrived on
            body: Decoded JSON body

        Returns:
            IngestionResult: What happened (for logging and tests)

        Raises:
            CallbackValidationError: Body does not match the schema
        """
        started = time.perf_counter()
        try:
            callback = parse_callback(kind, body)
        except CallbackValidationError as e:
            correlation_id = extract_correlation_id(body)
            logger.warning(
                "callback_rejected",
                callback_kind=kind.value,
                correlation_id=correlation_id,
                error=str(e),
            )
            await self._record(
                CallbackLogEntry(
                    callback_kind=kind.value,
                    payload=body if isinstance(body, dict) else {"raw": body},
                    status=IngestionStatus.REJECTED.value,
                    correlation_id=correlation_id,
                    error=str(e),
                )
            )
            metrics.record_callback(kind.value, IngestionStatus.REJECTED.value, time.perf_counter() - started)
            raise

        result = await self.inflight.shield(self._process(callback, body))
        metrics.record_callback(kind.value, result.status.value, time.perf_counter() - started)
        return result

    async def _transition(
        self, transaction_id: uuid.UUID, event: TransitionEvent
    ) -> TransitionOutcome:
        """
        Apply the callback event, waiting briefly on a transaction still in initiating.

        The correlation is bound just before the acknowledged transition, so a
        fast callback can land in between. Any other invalid transition is
        raised at once.
        """
        retrying = AsyncRetrying(
            retry=retry_if_exception(_awaiting_acknowledgement),
            stop=stop_after_attempt(self.ack_wait_attempts),
            wait=wait_exponential(multiplier=self.ack_wait_seconds, max=1.0),
            reraise=True,
        )
        return await retrying(self.state_machine.transition, transaction_id, event)

    async def _process(self, callback: ParsedCallback, body: Dict[str, Any]) -> IngestionResult:
        log = logger.bind(callback_kind=callback.kind.value, correlation_id=callback.correlation_id)
        event = event_for(callback)
        transaction_id: Optional[uuid.UUID] = None

        try:
            transaction_id = await self.correlation_store.resolve(callback.correlation_id)
            outcome = await self._transition(transaction_id, event)
        except UnresolvedCorrelation:
            log.warning("callback_unresolved_correlation")
            result = IngestionResult(
                IngestionStatus.UNRESOLVED, callback.kind, callback.correlation_id
            )
        except InvalidTransition as e:
            log.warning(
                "callback_invalid_transition",
                transaction_id=str(transaction_id),
                state=e.state,
                event_type=e.event,
            )
            result = IngestionResult(
                IngestionStatus.INVALID_TRANSITION,
                callback.kind,
                callback.correlation_id,
                transaction_id,
                TransactionState(e.state),
                error=str(e),
            )
        except Exception as e:
            log.exception("callback_processing_failed", transaction_id=str(transaction_id))
            result = IngestionResult(
                IngestionStatus.ERROR,
                callback.kind,
                callback.correlation_id,
                transaction_id,
                error=str(e),
            )
        else:
            status = IngestionStatus.APPLIED if outcome.changed else IngestionStatus.DUPLICATE
            log.info(
                "callback_processed",
                transaction_id=str(transaction_id),
                status=status.value,
                state=outcome.transaction.state.value,
                result_code=event.result.result_code if event.result else None,
            )
            result = IngestionResult(
                status,
                callback.kind,
                callback.correlation_id,
                transaction_id,
                outcome.transaction.state,
            )

        await self._record(
            CallbackLogEntry(
                callback_kind=callback.kind.value,
                payload=body,
                status=result.status.value,
                correlation_id=callback.correlation_id,
                transaction_id=transaction_id,
                result_code=event.result.result_code if event.result else None,
                error=result.error,
            )
        )
        return result

    async def _record(self, entry: CallbackLogEntry) -> None:
        try:
            await self.callback_log.record(entry)
        except Exception as e:
            logger.error(
                "callback_log_write_failed",
                callback_kind=entry.callback_kind,
                correlation_id=entry.correlation_id,
                error=str(e),
            )
