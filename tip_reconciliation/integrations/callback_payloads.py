"""
Daraja callback schemas and normalization.

Raw JSON from the provider is validated against a strict pydantic model per
callback kind, then converted into one of four tagged variants that the
ingestion service understands. Anything that does not validate raises
CallbackValidationError and never reaches the state machine.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tip_reconciliation.core.domain import ProviderResult
from tip_reconciliation.core.errors import CallbackValidationError
from tip_reconciliation.integrations import result_codes


class CallbackKind(str, Enum):
    PUSH_RESULT = "push_result"
    PUSH_TIMEOUT = "push_timeout"
    PAYOUT_RESULT = "payout_result"
    PAYOUT_TIMEOUT = "payout_timeout"


class _DarajaModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# STK push callback: {"Body": {"stkCallback": {...}}}


class CallbackItem(_DarajaModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class CallbackMetadata(_DarajaModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")

    @field_validator("items", mode="before")
    @classmethod
    def wrap_single_item(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return [v]
        return v


class StkCallback(_DarajaModel):
    merchant_request_id: str = Field(alias="MerchantRequestID", min_length=1)
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(
        default=None, alias="CallbackMetadata"
    )


class StkTimeoutCallback(_DarajaModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: Optional[int] = Field(default=None, alias="ResultCode")
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")


class _StkBody(_DarajaModel):
    stk_callback: StkCallback = Field(alias="stkCallback")


class StkCallbackEnvelope(_DarajaModel):
    body: _StkBody = Field(alias="Body")


class _StkTimeoutBody(_DarajaModel):
    stk_callback: StkTimeoutCallback = Field(alias="stkCallback")


class StkTimeoutEnvelope(_DarajaModel):
    body: _StkTimeoutBody = Field(alias="Body")


# B2C result: {"Result": {...}}


class ResultParameterItem(_DarajaModel):
    key: str = Field(alias="Key")
    value: Any = Field(default=None, alias="Value")


class ResultParameters(_DarajaModel):
    items: List[ResultParameterItem] = Field(default_factory=list, alias="ResultParameter")

    @field_validator("items", mode="before")
    @classmethod
    def wrap_single_parameter(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return [v]
        return v


class B2CResult(_DarajaModel):
    result_type: Optional[int] = Field(default=None, alias="ResultType")
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    originator_conversation_id: Optional[str] = Field(
        default=None, alias="OriginatorConversationID"
    )
    conversation_id: str = Field(alias="ConversationID", min_length=1)
    transaction_id: Optional[str] = Field(default=None, alias="TransactionID")
    result_parameters: Optional[ResultParameters] = Field(
        default=None, alias="ResultParameters"
    )


class B2CResultEnvelope(_DarajaModel):
    result: B2CResult = Field(alias="Result")


class B2CTimeout(_DarajaModel):
    conversation_id: str = Field(alias="ConversationID", min_length=1)
    originator_conversation_id: Optional[str] = Field(
        default=None, alias="OriginatorConversationID"
    )
    result_desc: Optional[str] = Field(default=None, alias="ResultDesc")


class B2CTimeoutEnvelope(_DarajaModel):
    result: B2CTimeout = Field(alias="Result")


# Normalized variants


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def build_result(
    code: Optional[int],
    description: str,
    receipt_number: Optional[str] = None,
    settled_amount: Optional[int] = None,
    transaction_date: Optional[str] = None,
    parameters: Optional[Dict[str, Any]] = None,
) -> ProviderResult:
    """Build a ProviderResult enriched with result catalogue info."""
    info = result_codes.lookup(code)
    return ProviderResult(
        result_code=code,
        result_description=description,
        receipt_number=receipt_number,
        settled_amount=settled_amount,
        transaction_date=transaction_date,
        result_name=info.name if info else None,
        retryable=info.retryable if info else None,
        parameters=dict(parameters or {}),
    )


@dataclass(frozen=True)
class PushResult:
    """Final answer to an STK push."""

    correlation_id: str
    merchant_request_id: str
    result_code: int
    result_description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    kind: CallbackKind = CallbackKind.PUSH_RESULT

    @property
    def is_success(self) -> bool:
        return self.result_code == result_codes.SUCCESS

    def to_provider_result(self) -> ProviderResult:
        return build_result(
            self.result_code,
            self.result_description,
            receipt_number=_as_str(self.metadata.get("MpesaReceiptNumber")),
            settled_amount=_as_int(self.metadata.get("Amount")),
            transaction_date=_as_str(self.metadata.get("TransactionDate")),
            parameters=self.metadata,
        )


@dataclass(frozen=True)
class PushTimeout:
    """The provider gave up waiting for the customer."""

    correlation_id: str
    merchant_request_id: Optional[str] = None
    result_code: Optional[int] = None
    result_description: str = "STK push request timed out"
    kind: CallbackKind = CallbackKind.PUSH_TIMEOUT

    def to_provider_result(self) -> ProviderResult:
        return build_result(self.result_code, self.result_description)


@dataclass(frozen=True)
class PayoutResult:
    """Final answer to a B2C payout."""

    correlation_id: str
    result_code: int
    result_description: str
    originator_conversation_id: Optional[str] = None
    transaction_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    kind: CallbackKind = CallbackKind.PAYOUT_RESULT

    @property
    def is_success(self) -> bool:
        return self.result_code == result_codes.SUCCESS

    def to_provider_result(self) -> ProviderResult:
        receipt = _as_str(self.parameters.get("TransactionReceipt")) or self.transaction_id
        return build_result(
            self.result_code,
            self.result_description,
            receipt_number=receipt,
            settled_amount=_as_int(self.parameters.get("TransactionAmount")),
            transaction_date=_as_str(self.parameters.get("TransactionCompletedDateTime")),
            parameters=self.parameters,
        )


@dataclass(frozen=True)
class PayoutTimeout:
    """The B2C request expired in the provider's queue."""

    correlation_id: str
    originator_conversation_id: Optional[str] = None
    result_description: str = "B2C request timed out in queue"
    kind: CallbackKind = CallbackKind.PAYOUT_TIMEOUT

    def to_provider_result(self) -> ProviderResult:
        return build_result(None, self.result_description)


ParsedCallback = Union[PushResult, PushTimeout, PayoutResult, PayoutTimeout]


def _parse_push_result(body: Dict[str, Any]) -> PushResult:
    cb = StkCallbackEnvelope.model_validate(body).body.stk_callback
    metadata: Dict[str, Any] = {}
    if cb.callback_metadata is not None:
        metadata = {item.name: item.value for item in cb.callback_metadata.items}
    return PushResult(
        correlation_id=cb.checkout_request_id,
        merchant_request_id=cb.merchant_request_id,
        result_code=cb.result_code,
        result_description=cb.result_desc,
        metadata=metadata,
    )


def _parse_push_timeout(body: Dict[str, Any]) -> PushTimeout:
    cb = StkTimeoutEnvelope.model_validate(body).body.stk_callback
    return PushTimeout(
        correlation_id=cb.checkout_request_id,
        merchant_request_id=cb.merchant_request_id,
        result_code=cb.result_code,
        result_description=cb.result_desc or "STK push request timed out",
    )


def _parse_payout_result(body: Dict[str, Any]) -> PayoutResult:
    result = B2CResultEnvelope.model_validate(body).result
    parameters: Dict[str, Any] = {}
    if result.result_parameters is not None:
        parameters = {p.key: p.value for p in result.result_parameters.items}
    return PayoutResult(
        correlation_id=result.conversation_id,
        result_code=result.result_code,
        result_description=result.result_desc,
        originator_conversation_id=result.originator_conversation_id,
        transaction_id=result.transaction_id,
        parameters=parameters,
    )


def _parse_payout_timeout(body: Dict[str, Any]) -> PayoutTimeout:
    result = B2CTimeoutEnvelope.model_validate(body).result
    return PayoutTimeout(
        correlation_id=result.conversation_id,
        originator_conversation_id=result.originator_conversation_id,
        result_description=result.result_desc or "B2C request timed out in queue",
    )


_PARSERS = {
    CallbackKind.PUSH_RESULT: _parse_push_result,
    CallbackKind.PUSH_TIMEOUT: _parse_push_timeout,
    CallbackKind.PAYOUT_RESULT: _parse_payout_result,
    CallbackKind.PAYOUT_TIMEOUT: _parse_payout_timeout,
}


def parse_callback(kind: CallbackKind, body: Any) -> ParsedCallback:
    """
    Validate a raw callback body and normalize it.

    Args:
        kind: Which endpoint the body arrived on
        body: Decoded JSON body

    Returns:
        ParsedCallback: Tagged variant for the ingestion service

    Raises:
        CallbackValidationError: If the body does not match the schema
    """
    if not isinstance(body, dict):
        raise CallbackValidationError(f"{kind.value} callback body must be a JSON object")
    try:
        return _PARSERS[kind](body)
    except ValidationError as e:
        raise CallbackValidationError(
            f"Malformed {kind.value} callback: {e.error_count()} validation error(s)"
        ) from e


def extract_correlation_id(body: Any) -> Optional[str]:
    """Best-effort correlation ID from a body that failed validation (for logging)."""
    if not isinstance(body, dict):
        return None
    envelope = body.get("Body")
    if isinstance(envelope, dict):
        stk = envelope.get("stkCallback")
        if isinstance(stk, dict) and stk.get("CheckoutRequestID"):
            return str(stk["CheckoutRequestID"])
    result = body.get("Result")
    if isinstance(result, dict) and result.get("ConversationID"):
        return str(result["ConversationID"])
    return None
