"""Database package for tip reconciliation."""
from .connection import close_db, create_engine, create_session_factory, init_db
from .models import (
    Base,
    CallbackLogRecord,
    CorrelationBinding,
    OutboxEvent,
    TransactionRecord,
)
from .repository import (
    SqlCallbackLog,
    SqlCorrelationStore,
    SqlEventOutbox,
    SqlTransactionRepository,
)

__all__ = [
    "Base",
    "TransactionRecord",
    "CorrelationBinding",
    "CallbackLogRecord",
    "OutboxEvent",
    "SqlTransactionRepository",
    "SqlCorrelationStore",
    "SqlCallbackLog",
    "SqlEventOutbox",
    "create_engine",
    "create_session_factory",
    "init_db",
    "close_db",
]
