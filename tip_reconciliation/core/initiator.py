"""
Shared initiation flow for tip payments and payouts.

1. Create the transaction (created) and persist it
2. Move to initiating
3. Call the provider gateway (no transaction write is held)
4. Bind the returned correlation ID
5. Move to awaiting_result

Any error before binding moves the transaction straight to failed so
nothing is left dangling in initiating.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog

from tip_reconciliation.core.correlation import CorrelationStore
from tip_reconciliation.core.domain import (
    ProviderResult,
    Transaction,
    TransactionKind,
    TransitionEvent,
)
from tip_reconciliation.core.errors import DuplicateCorrelation
from tip_reconciliation.core.gateway import GatewayError, ProviderGateway
from tip_reconciliation.core.repository import TransactionRepository
from tip_reconciliation.core.state_machine import TransactionStateMachine
from tip_reconciliation.core.tasks import InflightTasks
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class InitiationResult:
    """What the caller gets back once the provider acknowledged."""

    transaction: Transaction
    acceptance_message: str

    @property
    def transaction_id(self) -> uuid.UUID:
        return self.transaction.id

    @property
    def correlation_id(self) -> Optional[str]:
        return self.transaction.correlation_id


@dataclass(frozen=True)
class GatewayAck:
    correlation_id: str
    merchant_request_id: Optional[str]
    acceptance_message: str


def initiation_failure_result(error: Exception) -> ProviderResult:
    """ProviderResult recorded when a request never reached awaiting_result."""
    parameters: Dict[str, Any] = {"error_class": type(error).__name__}
    status_code = getattr(error, "status_code", None)
    if status_code is not None:
        parameters["status_code"] = status_code
    code = getattr(error, "result_code", None)
    if code is not None:
        parameters["provider_code"] = code
    return ProviderResult(
        result_code=None,
        result_description=str(error),
        parameters=parameters,
    )


class TransactionInitiator:
    """
    Base orchestrator; subclasses provide the gateway call for their kind.

    The whole flow runs in a shielded task: once the provider has accepted a
    request we must record its correlation ID even if our caller went away.
    """

    kind: TransactionKind

    def __init__(
        self,
        repository: TransactionRepository,
        correlation_store: CorrelationStore,
        state_machine: TransactionStateMachine,
        gateway: ProviderGateway,
    ):
        self.repository = repository
        self.correlation_store = correlation_store
        self.state_machine = state_machine
        self.gateway = gateway
        self.inflight = InflightTasks(f"{self.kind.value}_initiation")

    def _default_account_reference(self, transaction: Transaction) -> str:
        return ""

    async def _call_gateway(self, transaction: Transaction) -> GatewayAck:
        raise NotImplementedError

    async def _start(
        self,
        amount: int,
        counterparty_ref: str,
        account_reference: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitiationResult:
        transaction = Transaction.new(
            kind=self.kind,
            amount=amount,
            counterparty_ref=counterparty_ref,
            account_reference=account_reference,
            metadata=metadata,
        )
        if not transaction.account_reference:
            transaction = transaction.evolve(
                account_reference=self._default_account_reference(transaction)
            )
        await self.repository.add(transaction)
        return await self.inflight.shield(self._run(transaction))

    async def _fail(self, transaction: Transaction, error: Exception) -> None:
        try:
            await self.state_machine.apply(
                transaction.id,
                TransitionEvent.initiation_failed(initiation_failure_result(error)),
            )
        except Exception:
            logger.exception(
                "initiation_failure_not_recorded",
                transaction_id=str(transaction.id),
                error=str(error),
            )

    async def _run(self, transaction: Transaction) -> InitiationResult:
        log = logger.bind(transaction_id=str(transaction.id), kind=self.kind.value)
        started = time.perf_counter()

        transaction = await self.state_machine.apply(transaction.id, TransitionEvent.initiate())

        try:
            ack = await self._call_gateway(transaction)
            await self.correlation_store.put(ack.correlation_id, transaction.id)
        except GatewayError as e:
            metrics.record_initiation(self.kind.value, e.error_type.value, transaction.amount)
            log.warning(
                "initiation_failed",
                error_type=e.error_type.value,
                error=str(e),
            )
            await self._fail(transaction, e)
            raise
        except DuplicateCorrelation as e:
            metrics.record_initiation(self.kind.value, "duplicate_correlation", transaction.amount)
            log.critical(
                "duplicate_correlation_id",
                correlation_id=e.correlation_id,
                existing_transaction_id=e.existing_transaction_id,
            )
            await self._fail(transaction, e)
            raise
        except Exception as e:
            metrics.record_initiation(self.kind.value, "error", transaction.amount)
            log.exception("initiation_error", error=str(e))
            await self._fail(transaction, e)
            raise

        transaction = await self.state_machine.apply(
            transaction.id,
            TransitionEvent.acknowledged(ack.correlation_id, ack.merchant_request_id),
        )

        metrics.record_initiation(self.kind.value, "acknowledged", transaction.amount)
        log.info(
            "initiation_acknowledged",
            correlation_id=ack.correlation_id,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return InitiationResult(transaction=transaction, acceptance_message=ack.acceptance_message)
