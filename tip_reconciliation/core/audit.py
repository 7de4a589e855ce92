"""
Audit trail sinks.

AuditSink receives one record per applied transition. It is fire-and-forget:
emit() never raises into the state machine and never blocks a commit.

CallbackLog keeps the raw provider payloads we accepted, with the outcome of
processing them, so operators can replay or inspect anomalies.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import structlog

from tip_reconciliation.core.domain import utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuditRecord:
    """One applied transition."""

    transaction_id: uuid.UUID
    kind: str
    from_state: str
    to_state: str
    event: str
    source: str
    version: int
    correlation_id: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    def emit(self, record: AuditRecord) -> None:
        ...


class LoggingAuditSink:
    """Writes audit records to the structured log."""

    def emit(self, record: AuditRecord) -> None:
        logger.info(
            "transaction_audit",
            transaction_id=str(record.transaction_id),
            kind=record.kind,
            from_state=record.from_state,
            to_state=record.to_state,
            event_type=record.event,
            source=record.source,
            version=record.version,
            correlation_id=record.correlation_id,
            occurred_at=record.occurred_at.isoformat(),
        )


class InMemoryAuditSink:
    """Collects audit records in a list (tests)."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []

    def emit(self, record: AuditRecord) -> None:
        self.records.append(record)


@dataclass(frozen=True)
class CallbackLogEntry:
    """A raw provider callback and what we did with it."""

    callback_kind: str
    payload: Dict[str, Any]
    status: str
    correlation_id: Optional[str] = None
    transaction_id: Optional[uuid.UUID] = None
    result_code: Optional[int] = None
    error: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)


class CallbackLog(Protocol):
    async def record(self, entry: CallbackLogEntry) -> None:
        ...

    async def for_correlation(self, correlation_id: str) -> List[CallbackLogEntry]:
        ...


class InMemoryCallbackLog:
    def __init__(self) -> None:
        self.entries: List[CallbackLogEntry] = []

    async def record(self, entry: CallbackLogEntry) -> None:
        self.entries.append(entry)

    async def for_correlation(self, correlation_id: str) -> List[CallbackLogEntry]:
        return [e for e in self.entries if e.correlation_id == correlation_id]
