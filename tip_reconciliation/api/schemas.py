"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from tip_reconciliation.core.domain import TransactionKind


class CreateTransactionRequest(BaseModel):
    """Request schema for starting a tip payment or a staff payout."""

    amount: int = Field(..., gt=0, description="Amount in whole shillings")
    counterparty_ref: str = Field(
        ..., min_length=1, description="Customer phone (tips) or staff phone (payouts)"
    )
    kind: TransactionKind = Field(
        default=TransactionKind.TIP_PAYMENT, description="tip_payment or payout"
    )
    account_metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Stable identifiers kept with the transaction (restaurant, table, waiter)",
    )
    reference: Optional[str] = Field(default=None, description="Payout reference")
    staff_name: Optional[str] = Field(default=None, description="Staff member being paid")
    remarks: Optional[str] = Field(default=None, max_length=100, description="B2C remarks")
    occasion: Optional[str] = Field(default=None, max_length=100, description="B2C occasion")

    @field_validator("counterparty_ref")
    @classmethod
    def strip_counterparty(cls, v: str) -> str:
        return v.strip()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 100,
                    "counterparty_ref": "0712345678",
                    "kind": "tip_payment",
                    "account_metadata": {"restaurant_id": "r_12", "table": "7", "waiter_id": "w_3"},
                }
            ]
        }
    }


class CreateTransactionResponse(BaseModel):
    """Response schema for an accepted initiation."""

    transaction_id: str = Field(..., description="Transaction ID")
    correlation_id: Optional[str] = Field(
        default=None, description="CheckoutRequestID (tips) or ConversationID (payouts)"
    )
    state: str = Field(..., description="Transaction state")
    acceptance_message: str = Field(default="", description="Provider acceptance message")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "transaction_id": "123e4567-e89b-12d3-a456-426614174000",
                    "correlation_id": "ws_CO_191220191020363925",
                    "state": "awaiting_result",
                    "acceptance_message": "Success. Request accepted for processing",
                }
            ]
        }
    }


class ProviderResultSchema(BaseModel):
    result_code: Optional[int] = None
    result_description: str = ""
    receipt_number: Optional[str] = None
    settled_amount: Optional[int] = None
    transaction_date: Optional[str] = None
    result_name: Optional[str] = None
    retryable: Optional[bool] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class TransactionStatusResponse(BaseModel):
    """Response schema for transaction status."""

    transaction_id: str = Field(..., description="Transaction ID")
    kind: str = Field(..., description="tip_payment or payout")
    state: str = Field(..., description="Transaction state")
    amount: int = Field(..., description="Requested amount")
    correlation_id: Optional[str] = Field(default=None, description="Provider correlation ID")
    provider_result: Optional[ProviderResultSchema] = Field(
        default=None, description="Provider outcome, present once terminal"
    )
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")
    customer_message: Optional[str] = Field(
        default=None, description="Message to show the customer once the transaction is final"
    )


class PayoutItem(BaseModel):
    amount: int = Field(..., gt=0, description="Amount in whole shillings")
    phone_number: str = Field(..., min_length=1, description="Staff phone number")
    reference: Optional[str] = Field(default=None, description="Payout reference")
    staff_name: Optional[str] = Field(default=None)
    remarks: Optional[str] = Field(default=None, max_length=100)
    occasion: Optional[str] = Field(default=None, max_length=100)
    account_metadata: Dict[str, Any] = Field(default_factory=dict)


class PayoutBatchRequest(BaseModel):
    """Request schema for a batch of staff payouts."""

    payouts: List[PayoutItem] = Field(..., min_length=1, description="Payouts to send in order")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "payouts": [
                        {"amount": 500, "phone_number": "0712345678", "reference": "PO-1"},
                        {"amount": 250, "phone_number": "0723456789", "staff_name": "Amina"},
                    ]
                }
            ]
        }
    }


class PayoutItemResponse(BaseModel):
    reference: str
    amount: int
    success: bool
    transaction_id: Optional[str] = None
    correlation_id: Optional[str] = None
    error: Optional[str] = None


class PayoutBatchResponse(BaseModel):
    """Response schema for a payout batch."""

    success: bool = Field(..., description="True when every payout was accepted")
    total_payouts: int
    successful_payouts: int
    failed_payouts: int
    total_amount: int = Field(..., description="Sum of accepted amounts")
    results: List[PayoutItemResponse]


class CallbackAck(BaseModel):
    """Acknowledgement body the provider expects on every callback."""

    ResultCode: int = Field(default=0)
    ResultDesc: str = Field(default="Accepted")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
