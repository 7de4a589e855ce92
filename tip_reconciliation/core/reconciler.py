"""
Status reconciler: the pull path.

Given a transaction ID, returns its current view, asking the provider at
most once if the transaction is still waiting for a result. A terminal
answer goes through the same state machine as callbacks, so whichever of
the two arrives first wins and the other is a no-op.
"""
import uuid
from typing import Any, Dict

import structlog

from tip_reconciliation.core.domain import (
    ProviderResult,
    Transaction,
    TransactionState,
    TransitionEvent,
)
from tip_reconciliation.core.gateway import GatewayError, ProviderGateway, StatusResult
from tip_reconciliation.core.repository import TransactionRepository
from tip_reconciliation.core.state_machine import TransactionStateMachine
from tip_reconciliation.core.tasks import InflightTasks
from tip_reconciliation.integrations.callback_payloads import build_result
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TransactionView = Dict[str, Any]


class StatusReconciler:
    """
    Reconciles a transaction against the provider's live answer.

    Rules:
    - Terminal: returned as stored, no provider call
    - No correlation ID yet (created / initiating): returned as stored
    - Poll budget exhausted: returned as stored; the callback can still finish it
    - Otherwise exactly one status query; a terminal answer is applied
    """

    def __init__(
        self,
        repository: TransactionRepository,
        state_machine: TransactionStateMachine,
        gateway: ProviderGateway,
        max_status_polls: int = 10,
    ):
        self.repository = repository
        self.state_machine = state_machine
        self.gateway = gateway
        self.max_status_polls = max_status_polls
        self.inflight = InflightTasks("status_reconciliation")

    async def reconcile(self, transaction_id: uuid.UUID) -> TransactionView:
        """
        Return the transaction's view, refreshing it from the provider if needed.

        Raises:
            TransactionNotFound: Unknown transaction
        """
        transaction = await self.repository.get(transaction_id)
        if not self._needs_query(transaction):
            return transaction.to_view()

        # Shielded: a disconnected caller must not cancel the commit of an answer
        refreshed = await self.inflight.shield(self._query_and_apply(transaction))
        return refreshed.to_view()

    def _needs_query(self, transaction: Transaction) -> bool:
        if transaction.is_terminal:
            return False
        if transaction.state != TransactionState.AWAITING_RESULT or not transaction.correlation_id:
            return False
        if transaction.poll_attempts >= self.max_status_polls:
            logger.info(
                "status_poll_budget_exhausted",
                transaction_id=str(transaction.id),
                poll_attempts=transaction.poll_attempts,
            )
            return False
        return True

    async def _query_and_apply(self, transaction: Transaction) -> Transaction:
        log = logger.bind(
            transaction_id=str(transaction.id),
            correlation_id=transaction.correlation_id,
            kind=transaction.kind.value,
        )
        attempts = await self.repository.record_poll_attempt(transaction.id)

        try:
            status = await self.gateway.query_status(transaction.correlation_id, transaction.kind)
        except GatewayError as e:
            metrics.record_status_poll("error")
            log.warning(
                "status_query_failed",
                error_type=e.error_type.value,
                error=str(e),
                poll_attempts=attempts,
            )
            return await self.repository.get(transaction.id)

        if status.pending:
            metrics.record_status_poll("pending")
            log.info("status_query_pending", poll_attempts=attempts)
            return await self.repository.get(transaction.id)

        metrics.record_status_poll("resolved")
        log.info("status_query_resolved", result_code=status.result_code, poll_attempts=attempts)
        return await self.state_machine.apply(
            transaction.id,
            TransitionEvent.from_result(self._to_provider_result(status), source="status_query"),
        )

    @staticmethod
    def _to_provider_result(status: StatusResult) -> ProviderResult:
        return build_result(
            status.result_code,
            status.result_description,
            receipt_number=status.receipt_number,
            settled_amount=status.settled_amount,
        )
