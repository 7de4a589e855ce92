"""
Error taxonomy for the reconciliation engine.

Validation and integrity errors surface to the API layer. Callback ingestion
absorbs everything after recording it, so the provider never retries.
"""
from typing import Optional


class ReconciliationError(Exception):
    """Base exception for all engine errors."""

    pass


class ValidationError(ReconciliationError):
    """Raised when input is malformed; no state has been mutated."""

    pass


class CallbackValidationError(ValidationError):
    """Raised when a provider callback does not match its schema."""

    pass


class TransactionNotFound(ReconciliationError):
    """Raised when a transaction ID is not in the repository."""

    def __init__(self, transaction_id: str):
        self.transaction_id = str(transaction_id)
        super().__init__(f"Transaction {self.transaction_id} not found")


class CorrelationNotFound(ReconciliationError):
    """Raised when a correlation ID has no bound transaction."""

    def __init__(self, correlation_id: str):
        self.correlation_id = correlation_id
        super().__init__(f"No transaction bound to correlation ID {correlation_id}")


# A callback for an unknown transaction: logged, acknowledged, no-op.
UnresolvedCorrelation = CorrelationNotFound


class DuplicateCorrelation(ReconciliationError):
    """Raised when a correlation ID is already bound to another transaction."""

    def __init__(
        self,
        correlation_id: str,
        existing_transaction_id: str,
        attempted_transaction_id: str,
    ):
        self.correlation_id = correlation_id
        self.existing_transaction_id = str(existing_transaction_id)
        self.attempted_transaction_id = str(attempted_transaction_id)
        super().__init__(
            f"Correlation ID {correlation_id} already bound to "
            f"{self.existing_transaction_id}, refusing {self.attempted_transaction_id}"
        )


class InvalidTransition(ReconciliationError):
    """Raised when an event is not allowed from the transaction's current state."""

    def __init__(self, transaction_id: str, state: str, event: str):
        self.transaction_id = str(transaction_id)
        self.state = state
        self.event = event
        super().__init__(
            f"Event '{event}' not allowed for transaction {self.transaction_id} in state '{state}'"
        )


class ConcurrencyError(ReconciliationError):
    """
    Raised when an optimistic concurrency check fails.

    Another writer updated the transaction between our read and our write.
    """

    def __init__(self, transaction_id: str, expected: int, current: Optional[int]):
        self.transaction_id = str(transaction_id)
        self.expected_version = expected
        self.current_version = current
        super().__init__(
            f"Concurrency conflict for {self.transaction_id}: "
            f"expected version {expected}, current version {current}"
        )
