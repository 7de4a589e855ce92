"""
Provider gateway interface.

The gateway wraps the mobile-money provider's three operations: push a
payment prompt to a customer, send a payout to a staff member, and query
the status of an earlier push. It carries no business logic; the engine
only ever sees the acknowledgement types and the error classes below.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from tip_reconciliation.core.domain import TransactionKind
from tip_reconciliation.core.errors import ReconciliationError


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    UNREACHABLE = "unreachable"  # Retry these
    REJECTED = "rejected"  # Don't retry these
    UNKNOWN = "unknown"  # Unparseable answer, outcome undetermined


class GatewayError(ReconciliationError):
    """Base exception for provider gateway errors."""

    error_type = GatewayErrorType.UNKNOWN

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        result_code: Optional[str] = None,
        response_body: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            status_code: HTTP status returned by the provider, if any
            result_code: Provider error or response code, if any
            response_body: Parsed provider body, if any
            original_error: Underlying transport exception
        """
        super().__init__(message)
        self.status_code = status_code
        self.result_code = result_code
        self.response_body = response_body or {}
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type is GatewayErrorType.UNREACHABLE


class GatewayUnreachable(GatewayError):
    """Network failure, timeout, 5xx or open circuit."""

    error_type = GatewayErrorType.UNREACHABLE


class GatewayRejected(GatewayError):
    """The provider refused the request (4xx or non-zero ResponseCode)."""

    error_type = GatewayErrorType.REJECTED


class GatewayUnknown(GatewayError):
    """The provider answered with something we could not parse."""

    error_type = GatewayErrorType.UNKNOWN


@dataclass(frozen=True)
class PushAck:
    correlation_id: str
    merchant_request_id: str
    acceptance_message: str


@dataclass(frozen=True)
class PayoutAck:
    correlation_id: str
    originator_conversation_id: str
    acceptance_message: str = ""


@dataclass(frozen=True)
class StatusResult:
    """
    Answer to a status query.

    pending=True means the provider has not decided yet; the result fields
    are then meaningless.
    """

    pending: bool
    result_code: Optional[int] = None
    result_description: str = ""
    receipt_number: Optional[str] = None
    settled_amount: Optional[int] = None


class ProviderGateway(Protocol):
    async def initiate_push(
        self, amount: int, phone: str, account_reference: str, description: str
    ) -> PushAck:
        ...

    async def initiate_bulk_payout(
        self, amount: int, counterparty_account: str, remarks: str, occasion: str = ""
    ) -> PayoutAck:
        ...

    async def query_status(
        self, correlation_id: str, kind: TransactionKind = TransactionKind.TIP_PAYMENT
    ) -> StatusResult:
        ...
