"""
Transaction domain model.

A Transaction is either a tip payment (STK push collected from a customer)
or a payout (B2C disbursement to a staff member). Both share one lifecycle:

    created --initiate--> initiating --acknowledged--> awaiting_result
    awaiting_result --success--> succeeded
    awaiting_result --failure--> failed
    awaiting_result --timeout--> timed_out
    initiating --initiation_failed--> failed

Instances are immutable; the state machine produces new versions with
dataclasses.replace and persists them through the repository.
"""
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from tip_reconciliation.core.errors import ValidationError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class TransactionKind(str, Enum):
    """Concrete transaction kinds."""

    TIP_PAYMENT = "tip_payment"
    PAYOUT = "payout"


class TransactionState(str, Enum):
    """Lifecycle states."""

    CREATED = "created"
    INITIATING = "initiating"
    AWAITING_RESULT = "awaiting_result"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {TransactionState.SUCCEEDED, TransactionState.FAILED, TransactionState.TIMED_OUT}
)


class EventType(str, Enum):
    """Events accepted by the transition function."""

    INITIATE = "initiate"
    ACKNOWLEDGED = "acknowledged"
    INITIATION_FAILED = "initiation_failed"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


TRANSITIONS: Dict[tuple, TransactionState] = {
    (TransactionState.CREATED, EventType.INITIATE): TransactionState.INITIATING,
    (TransactionState.INITIATING, EventType.ACKNOWLEDGED): TransactionState.AWAITING_RESULT,
    (TransactionState.INITIATING, EventType.INITIATION_FAILED): TransactionState.FAILED,
    (TransactionState.AWAITING_RESULT, EventType.SUCCESS): TransactionState.SUCCEEDED,
    (TransactionState.AWAITING_RESULT, EventType.FAILURE): TransactionState.FAILED,
    (TransactionState.AWAITING_RESULT, EventType.TIMEOUT): TransactionState.TIMED_OUT,
}


@dataclass(frozen=True)
class ProviderResult:
    """Structured provider outcome attached to terminal transactions."""

    result_code: Optional[int]
    result_description: str
    receipt_number: Optional[str] = None
    settled_amount: Optional[int] = None
    transaction_date: Optional[str] = None
    result_name: Optional[str] = None
    retryable: Optional[bool] = None
    parameters: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result_code": self.result_code,
            "result_description": self.result_description,
            "receipt_number": self.receipt_number,
            "settled_amount": self.settled_amount,
            "transaction_date": self.transaction_date,
            "result_name": self.result_name,
            "retryable": self.retryable,
            "parameters": dict(self.parameters),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderResult":
        return cls(
            result_code=data.get("result_code"),
            result_description=data.get("result_description", ""),
            receipt_number=data.get("receipt_number"),
            settled_amount=data.get("settled_amount"),
            transaction_date=data.get("transaction_date"),
            result_name=data.get("result_name"),
            retryable=data.get("retryable"),
            parameters=dict(data.get("parameters") or {}),
        )


@dataclass(frozen=True)
class TransitionEvent:
    """
    Input to the transition function.

    Build instances through the classmethods so that terminal events always
    carry a ProviderResult.
    """

    type: EventType
    correlation_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    result: Optional[ProviderResult] = None
    source: str = "engine"

    @classmethod
    def initiate(cls) -> "TransitionEvent":
        return cls(type=EventType.INITIATE)

    @classmethod
    def acknowledged(
        cls, correlation_id: str, merchant_request_id: Optional[str] = None
    ) -> "TransitionEvent":
        if not correlation_id:
            raise ValidationError("Acknowledgement requires a correlation ID")
        return cls(
            type=EventType.ACKNOWLEDGED,
            correlation_id=correlation_id,
            merchant_request_id=merchant_request_id,
            source="gateway",
        )

    @classmethod
    def initiation_failed(cls, result: ProviderResult) -> "TransitionEvent":
        return cls(type=EventType.INITIATION_FAILED, result=result, source="gateway")

    @classmethod
    def succeeded(cls, result: ProviderResult, source: str) -> "TransitionEvent":
        return cls(type=EventType.SUCCESS, result=result, source=source)

    @classmethod
    def failed(cls, result: ProviderResult, source: str) -> "TransitionEvent":
        return cls(type=EventType.FAILURE, result=result, source=source)

    @classmethod
    def timed_out(cls, result: ProviderResult, source: str) -> "TransitionEvent":
        return cls(type=EventType.TIMEOUT, result=result, source=source)

    @classmethod
    def from_result(cls, result: ProviderResult, source: str) -> "TransitionEvent":
        """Result code 0 is success; anything else is a failure."""
        if result.result_code == 0:
            return cls.succeeded(result, source)
        return cls.failed(result, source)


@dataclass(frozen=True)
class Transaction:
    """A tip payment or payout and its reconciliation state."""

    id: uuid.UUID
    kind: TransactionKind
    amount: int
    counterparty_ref: str
    account_reference: str = ""
    state: TransactionState = TransactionState.CREATED
    correlation_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    provider_result: Optional[ProviderResult] = None
    poll_attempts: int = 0
    version: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise ValidationError("Amount must be a positive integer in minor units")
        if (self.provider_result is not None) != self.state.is_terminal:
            raise ValueError(
                f"provider_result must be set exactly when terminal (state={self.state.value})"
            )

    @classmethod
    def new(
        cls,
        kind: TransactionKind,
        amount: int,
        counterparty_ref: str,
        account_reference: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "Transaction":
        """Create a fresh transaction in the created state."""
        if not counterparty_ref:
            raise ValidationError("Counterparty reference is required")
        now = utcnow()
        return cls(
            id=uuid.uuid4(),
            kind=kind,
            amount=amount,
            counterparty_ref=counterparty_ref,
            account_reference=account_reference,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def evolve(self, **changes: Any) -> "Transaction":
        return replace(self, **changes)

    def to_view(self) -> Dict[str, Any]:
        """Client-facing status view."""
        return {
            "transaction_id": str(self.id),
            "kind": self.kind.value,
            "state": self.state.value,
            "amount": self.amount,
            "correlation_id": self.correlation_id,
            "provider_result": self.provider_result.to_dict() if self.provider_result else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
