"""
Service wiring.

Everything is constructed explicitly and passed down; nothing in the engine
is a module-level singleton. The API lifespan and the workers build one
Services instance at startup and close it at shutdown.
"""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tip_reconciliation.config import Settings, get_settings
from tip_reconciliation.core.audit import AuditSink, CallbackLog, InMemoryCallbackLog
from tip_reconciliation.core.correlation import CorrelationStore, InMemoryCorrelationStore
from tip_reconciliation.core.gateway import ProviderGateway
from tip_reconciliation.core.ingestion import CallbackIngestion
from tip_reconciliation.core.outbox import EventOutbox, InMemoryEventOutbox
from tip_reconciliation.core.payment_processor import TipPaymentProcessor
from tip_reconciliation.core.payout_processor import PayoutProcessor
from tip_reconciliation.core.reconciler import StatusReconciler
from tip_reconciliation.core.repository import (
    InMemoryTransactionRepository,
    TransactionRepository,
)
from tip_reconciliation.core.state_machine import TransactionStateMachine
from tip_reconciliation.database import (
    SqlCallbackLog,
    SqlCorrelationStore,
    SqlEventOutbox,
    SqlTransactionRepository,
    close_db,
    create_engine,
    create_session_factory,
    init_db,
)
from tip_reconciliation.integrations.mpesa_client import MpesaGateway
from tip_reconciliation.monitoring.health import HealthCheck

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """The engine's collaborators, built once per process."""

    settings: Settings
    repository: TransactionRepository
    correlation_store: CorrelationStore
    callback_log: CallbackLog
    outbox: EventOutbox
    gateway: ProviderGateway
    state_machine: TransactionStateMachine
    payments: TipPaymentProcessor
    payouts: PayoutProcessor
    ingestion: CallbackIngestion
    reconciler: StatusReconciler
    health: HealthCheck
    engine: Optional[AsyncEngine] = None

    async def drain(self) -> None:
        """Wait for shielded work started by cancelled callers."""
        await self.payments.inflight.drain()
        await self.payouts.inflight.drain()
        await self.ingestion.inflight.drain()
        await self.reconciler.inflight.drain()

    async def close(self) -> None:
        await self.drain()
        close_gateway = getattr(self.gateway, "close", None)
        if close_gateway is not None:
            await close_gateway()
        if self.engine is not None:
            await close_db(self.engine)
        logger.info("services_closed")


def _assemble(
    settings: Settings,
    repository: TransactionRepository,
    correlation_store: CorrelationStore,
    callback_log: CallbackLog,
    outbox: EventOutbox,
    gateway: ProviderGateway,
    audit_sink: Optional[AuditSink] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    engine: Optional[AsyncEngine] = None,
) -> Services:
    state_machine = TransactionStateMachine(
        repository,
        audit_sink=audit_sink,
        max_retries=settings.transition_max_retries,
    )
    payments = TipPaymentProcessor(repository, correlation_store, state_machine, gateway)
    payouts = PayoutProcessor(
        repository,
        correlation_store,
        state_machine,
        gateway,
        batch_delay_seconds=settings.payout_batch_delay_seconds,
    )
    ingestion = CallbackIngestion(
        correlation_store,
        state_machine,
        callback_log,
        ack_wait_attempts=settings.callback_ack_wait_attempts,
        ack_wait_seconds=settings.callback_ack_wait_seconds,
    )
    reconciler = StatusReconciler(
        repository,
        state_machine,
        gateway,
        max_status_polls=settings.max_status_polls,
    )
    health = HealthCheck(
        session_factory=session_factory,
        circuit_breaker=getattr(gateway, "circuit_breaker", None),
    )
    return Services(
        settings=settings,
        repository=repository,
        correlation_store=correlation_store,
        callback_log=callback_log,
        outbox=outbox,
        gateway=gateway,
        state_machine=state_machine,
        payments=payments,
        payouts=payouts,
        ingestion=ingestion,
        reconciler=reconciler,
        health=health,
        engine=engine,
    )


def build_in_memory_services(
    gateway: ProviderGateway,
    settings: Optional[Settings] = None,
    audit_sink: Optional[AuditSink] = None,
) -> Services:
    """In-memory storage around the given gateway (tests, local development)."""
    settings = settings or get_settings()
    outbox = InMemoryEventOutbox()
    return _assemble(
        settings,
        repository=InMemoryTransactionRepository(outbox),
        correlation_store=InMemoryCorrelationStore(),
        callback_log=InMemoryCallbackLog(),
        outbox=outbox,
        gateway=gateway,
        audit_sink=audit_sink,
    )


async def build_sql_services(
    settings: Optional[Settings] = None,
    gateway: Optional[ProviderGateway] = None,
    create_tables: bool = True,
) -> Services:
    """Database-backed services with the Daraja gateway (production)."""
    settings = settings or get_settings()
    engine = create_engine(settings)
    if create_tables:
        await init_db(engine)
        logger.info("database_initialized")
    session_factory = create_session_factory(engine)
    return _assemble(
        settings,
        repository=SqlTransactionRepository(session_factory),
        correlation_store=SqlCorrelationStore(session_factory),
        callback_log=SqlCallbackLog(session_factory),
        outbox=SqlEventOutbox(session_factory),
        gateway=gateway or MpesaGateway(settings),
        session_factory=session_factory,
        engine=engine,
    )
