"""
Staff payout processor.

Disburses tips to staff through B2C payments. Shares the tip lifecycle with
kind=payout. Terminal outcomes produce outbox events for the accounting and
notification system:

- succeeded            -> payout.completed
- failed / timed_out   -> payout.compensation_requested (the staff member
                          was not paid, so the amount must be re-credited)
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog

from tip_reconciliation.core.correlation import CorrelationStore
from tip_reconciliation.core.domain import Transaction, TransactionKind, TransactionState
from tip_reconciliation.core.errors import ReconciliationError, ValidationError
from tip_reconciliation.core.gateway import ProviderGateway
from tip_reconciliation.core.initiator import GatewayAck, InitiationResult, TransactionInitiator
from tip_reconciliation.core.outbox import OutboxMessage
from tip_reconciliation.core.repository import TransactionRepository
from tip_reconciliation.core.state_machine import TransactionStateMachine
from tip_reconciliation.integrations.phone import normalize_phone_number

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PayoutRequest:
    """One staff payout."""

    amount: int
    phone_number: str
    reference: str = ""
    staff_name: str = ""
    remarks: str = ""
    occasion: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PayoutItemResult:
    reference: str
    amount: int
    success: bool
    transaction_id: Optional[uuid.UUID] = None
    correlation_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class PayoutBatchResult:
    results: List[PayoutItemResult]

    @property
    def total_payouts(self) -> int:
        return len(self.results)

    @property
    def successful_payouts(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed_payouts(self) -> int:
        return self.total_payouts - self.successful_payouts

    @property
    def total_amount(self) -> int:
        """Sum of amounts the provider accepted."""
        return sum(r.amount for r in self.results if r.success)

    @property
    def success(self) -> bool:
        return self.failed_payouts == 0

    @property
    def errors(self) -> List[str]:
        return [f"{r.reference}: {r.error}" for r in self.results if not r.success]


def payout_account_reference(transaction: Transaction) -> str:
    return f"PAYOUT-{transaction.id.hex[:8].upper()}"


def payout_outcome_events(transaction: Transaction) -> List[OutboxMessage]:
    """Outbox messages for a payout that reached a terminal state."""
    result = transaction.provider_result
    base = {
        "transaction_id": str(transaction.id),
        "amount": transaction.amount,
        "staff_ref": transaction.counterparty_ref,
        "reference": transaction.account_reference,
        "conversation_id": transaction.correlation_id,
        "metadata": dict(transaction.metadata),
    }

    if transaction.state == TransactionState.SUCCEEDED:
        return [
            OutboxMessage(
                event_type="payout.completed",
                aggregate_id=transaction.id,
                payload={
                    **base,
                    "receipt_number": result.receipt_number if result else None,
                    "receiver_name": (result.parameters.get("ReceiverPartyPublicName") if result else None),
                },
            )
        ]

    return [
        OutboxMessage(
            event_type="payout.compensation_requested",
            aggregate_id=transaction.id,
            payload={
                **base,
                "state": transaction.state.value,
                "result_code": result.result_code if result else None,
                "reason": result.result_description if result else None,
            },
        )
    ]


class PayoutProcessor(TransactionInitiator):
    """
    Payout orchestrator.

    Example:
        ```python
        batch = await processor.process_batch([
            PayoutRequest(amount=500, phone_number="0712345678", reference="PO-1"),
        ])
        ```
    """

    kind = TransactionKind.PAYOUT

    def __init__(
        self,
        repository: TransactionRepository,
        correlation_store: CorrelationStore,
        state_machine: TransactionStateMachine,
        gateway: ProviderGateway,
        batch_delay_seconds: float = 1.0,
    ):
        super().__init__(repository, correlation_store, state_machine, gateway)
        self.batch_delay_seconds = batch_delay_seconds
        state_machine.register_terminal_handler(self.kind, payout_outcome_events)
        logger.info("payout_processor_initialized", batch_delay_seconds=batch_delay_seconds)

    @staticmethod
    def _validate_payout_request(request: PayoutRequest) -> str:
        if isinstance(request.amount, bool) or not isinstance(request.amount, int):
            raise ValidationError("Amount must be an integer number of shillings")
        if request.amount <= 0:
            raise ValidationError("Amount must be positive")
        return normalize_phone_number(request.phone_number)

    async def initiate(self, request: PayoutRequest) -> InitiationResult:
        """
        Send a single payout.

        Raises:
            ValidationError: Invalid request (nothing persisted)
            GatewayError: Provider refused or was unreachable (transaction failed)
        """
        msisdn = self._validate_payout_request(request)
        metadata = {
            **request.metadata,
            "staff_name": request.staff_name,
            "remarks": request.remarks or f"Tip payout for {request.staff_name or 'staff'}",
            "occasion": request.occasion or (f"Payout-{request.reference}" if request.reference else ""),
        }
        return await self._start(
            request.amount,
            msisdn,
            account_reference=request.reference,
            metadata=metadata,
        )

    async def process_batch(self, requests: Sequence[PayoutRequest]) -> PayoutBatchResult:
        """
        Send many payouts one after another.

        A failing item does not stop the batch. Requests are spaced by
        batch_delay_seconds to stay under the provider's rate limits.
        """
        logger.info("payout_batch_started", total=len(requests))
        results: List[PayoutItemResult] = []

        for index, request in enumerate(requests):
            label = request.reference or request.phone_number
            if index > 0 and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)

            try:
                initiated = await self.initiate(request)
            except ReconciliationError as e:
                logger.warning(
                    "payout_batch_item_failed",
                    reference=label,
                    error=str(e),
                )
                results.append(
                    PayoutItemResult(
                        reference=label,
                        amount=request.amount,
                        success=False,
                        error=str(e),
                    )
                )
                continue

            results.append(
                PayoutItemResult(
                    reference=label,
                    amount=request.amount,
                    success=True,
                    transaction_id=initiated.transaction_id,
                    correlation_id=initiated.correlation_id,
                )
            )

        batch = PayoutBatchResult(results=results)
        logger.info(
            "payout_batch_completed",
            total=batch.total_payouts,
            successful=batch.successful_payouts,
            failed=batch.failed_payouts,
            total_amount=batch.total_amount,
        )
        return batch

    def _default_account_reference(self, transaction: Transaction) -> str:
        return payout_account_reference(transaction)

    async def _call_gateway(self, transaction: Transaction) -> GatewayAck:
        ack = await self.gateway.initiate_bulk_payout(
            amount=transaction.amount,
            counterparty_account=transaction.counterparty_ref,
            remarks=str(transaction.metadata.get("remarks", "")),
            occasion=str(transaction.metadata.get("occasion", "")),
        )
        return GatewayAck(
            correlation_id=ack.correlation_id,
            merchant_request_id=ack.originator_conversation_id,
            acceptance_message=ack.acceptance_message,
        )
