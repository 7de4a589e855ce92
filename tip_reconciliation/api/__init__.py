"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreateTransactionRequest,
    CreateTransactionResponse,
    PayoutBatchRequest,
    PayoutBatchResponse,
    TransactionStatusResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateTransactionRequest",
    "CreateTransactionResponse",
    "PayoutBatchRequest",
    "PayoutBatchResponse",
    "TransactionStatusResponse",
]
