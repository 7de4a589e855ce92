"""
Tip payment orchestrator.

Starts an STK push for a tip and, once the push succeeds, queues a customer
confirmation through the outbox.
"""
from typing import Any, Dict, List, Optional

import structlog

from tip_reconciliation.core.correlation import CorrelationStore
from tip_reconciliation.core.domain import Transaction, TransactionKind, TransactionState
from tip_reconciliation.core.errors import ValidationError
from tip_reconciliation.core.gateway import ProviderGateway
from tip_reconciliation.core.initiator import GatewayAck, InitiationResult, TransactionInitiator
from tip_reconciliation.core.outbox import OutboxMessage
from tip_reconciliation.core.repository import TransactionRepository
from tip_reconciliation.core.state_machine import TransactionStateMachine
from tip_reconciliation.integrations.phone import normalize_phone_number

logger = structlog.get_logger(__name__)

# Daraja limits for a single STK push, in shillings
MIN_TIP_AMOUNT = 1
MAX_TIP_AMOUNT = 150_000


def tip_account_reference(transaction: Transaction) -> str:
    return f"TIP-{transaction.id.hex[:8].upper()}"


def tip_confirmation_events(transaction: Transaction) -> List[OutboxMessage]:
    """Outbox messages for a tip that reached a terminal state."""
    if transaction.state != TransactionState.SUCCEEDED:
        return []
    result = transaction.provider_result
    return [
        OutboxMessage(
            event_type="tip_payment.succeeded",
            aggregate_id=transaction.id,
            payload={
                "transaction_id": str(transaction.id),
                "amount": transaction.amount,
                "phone_number": transaction.counterparty_ref,
                "account_reference": transaction.account_reference,
                "receipt_number": result.receipt_number if result else None,
                "settled_amount": result.settled_amount if result else None,
                "metadata": dict(transaction.metadata),
            },
        )
    ]


class TipPaymentProcessor(TransactionInitiator):
    """
    Main tip payment orchestrator.

    Handles validation, STK push initiation and correlation binding. The
    final result arrives later through callback ingestion or the reconciler.
    """

    kind = TransactionKind.TIP_PAYMENT

    def __init__(
        self,
        repository: TransactionRepository,
        correlation_store: CorrelationStore,
        state_machine: TransactionStateMachine,
        gateway: ProviderGateway,
    ):
        super().__init__(repository, correlation_store, state_machine, gateway)
        state_machine.register_terminal_handler(self.kind, tip_confirmation_events)
        logger.info("tip_payment_processor_initialized")

    @staticmethod
    def _validate_tip_request(amount: int, phone_number: str) -> str:
        """
        Validate tip request parameters.

        Returns:
            str: Normalized phone number

        Raises:
            ValidationError: If validation fails
        """
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Amount must be an integer number of shillings")
        if amount < MIN_TIP_AMOUNT:
            raise ValidationError("Amount must be positive")
        if amount > MAX_TIP_AMOUNT:
            raise ValidationError(f"Amount must not exceed {MAX_TIP_AMOUNT}")
        return normalize_phone_number(phone_number)

    async def initiate(
        self,
        amount: int,
        phone_number: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitiationResult:
        """
        Start an STK push for a tip.

        Args:
            amount: Tip amount in whole shillings
            phone_number: Customer phone number in any accepted format
            metadata: Stable identifiers (restaurant, table, waiter) kept with the tip

        Returns:
            InitiationResult: Transaction in awaiting_result plus the customer message

        Raises:
            ValidationError: Invalid amount or phone number (nothing persisted)
            GatewayError: Provider refused or was unreachable (transaction failed)
        """
        msisdn = self._validate_tip_request(amount, phone_number)
        return await self._start(amount, msisdn, metadata=metadata)

    def _default_account_reference(self, transaction: Transaction) -> str:
        return tip_account_reference(transaction)

    async def _call_gateway(self, transaction: Transaction) -> GatewayAck:
        ack = await self.gateway.initiate_push(
            amount=transaction.amount,
            phone=transaction.counterparty_ref,
            account_reference=transaction.account_reference,
            description="Tip payment",
        )
        return GatewayAck(
            correlation_id=ack.correlation_id,
            merchant_request_id=ack.merchant_request_id,
            acceptance_message=ack.acceptance_message,
        )
