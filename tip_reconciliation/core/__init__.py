"""Reconciliation engine core: domain model, state machine and services."""
from .domain import (
    EventType,
    ProviderResult,
    Transaction,
    TransactionKind,
    TransactionState,
    TransitionEvent,
)
from .errors import (
    CallbackValidationError,
    ConcurrencyError,
    CorrelationNotFound,
    DuplicateCorrelation,
    InvalidTransition,
    ReconciliationError,
    TransactionNotFound,
    UnresolvedCorrelation,
    ValidationError,
)

__all__ = [
    "EventType",
    "ProviderResult",
    "Transaction",
    "TransactionKind",
    "TransactionState",
    "TransitionEvent",
    "ReconciliationError",
    "ValidationError",
    "CallbackValidationError",
    "TransactionNotFound",
    "CorrelationNotFound",
    "UnresolvedCorrelation",
    "DuplicateCorrelation",
    "InvalidTransition",
    "ConcurrencyError",
]
