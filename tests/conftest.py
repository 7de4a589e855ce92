"""
Pytest configuration and fixtures.
"""
import asyncio
import logging
from types import ModuleType
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient
from structlog.testing import CapturedCall, CapturingLogger

from tip_reconciliation.api.main import create_app
from tip_reconciliation.bootstrap import Services, build_in_memory_services
from tip_reconciliation.config import Settings
from tip_reconciliation.core.audit import InMemoryAuditSink
from tip_reconciliation.core.domain import TransactionKind
from tip_reconciliation.core.gateway import PayoutAck, PushAck, StatusResult


class FakeGateway:
    """
    Scriptable provider gateway.

    Correlation IDs are taken from push_ids / payout_ids in order, then
    generated. Set *_error to make the next calls raise, and push_gate or
    query_gate to hold a call until the test releases it.
    """

    def __init__(self) -> None:
        self.push_ids: List[str] = []
        self.payout_ids: List[str] = []
        self.push_error: Optional[Exception] = None
        self.payout_error: Optional[Exception] = None
        self.query_error: Optional[Exception] = None
        self.status = StatusResult(pending=True, result_description="still processing")

        self.push_calls: List[Dict[str, Any]] = []
        self.payout_calls: List[Dict[str, Any]] = []
        self.query_calls: List[Dict[str, Any]] = []

        # Gates hold a call until the test sets them
        self.push_gate: Optional[asyncio.Event] = None
        self.push_started = asyncio.Event()
        self.query_gate: Optional[asyncio.Event] = None
        self.query_started = asyncio.Event()

    async def initiate_push(
        self, amount: int, phone: str, account_reference: str, description: str
    ) -> PushAck:
        self.push_calls.append(
            {
                "amount": amount,
                "phone": phone,
                "account_reference": account_reference,
                "description": description,
            }
        )
        self.push_started.set()
        if self.push_gate is not None:
            await self.push_gate.wait()
        if self.push_error is not None:
            raise self.push_error
        n = len(self.push_calls)
        correlation_id = self.push_ids.pop(0) if self.push_ids else f"ws_CO_{n:06d}"
        return PushAck(
            correlation_id=correlation_id,
            merchant_request_id=f"mr_{n}",
            acceptance_message="Success. Request accepted for processing",
        )

    async def initiate_bulk_payout(
        self, amount: int, counterparty_account: str, remarks: str, occasion: str = ""
    ) -> PayoutAck:
        self.payout_calls.append(
            {
                "amount": amount,
                "counterparty_account": counterparty_account,
                "remarks": remarks,
                "occasion": occasion,
            }
        )
        if self.payout_error is not None:
            raise self.payout_error
        n = len(self.payout_calls)
        correlation_id = self.payout_ids.pop(0) if self.payout_ids else f"AG_{n:06d}"
        return PayoutAck(
            correlation_id=correlation_id,
            originator_conversation_id=f"oc_{n}",
            acceptance_message="Accept the service request successfully.",
        )

    async def query_status(
        self, correlation_id: str, kind: TransactionKind = TransactionKind.TIP_PAYMENT
    ) -> StatusResult:
        self.query_calls.append({"correlation_id": correlation_id, "kind": kind})
        self.query_started.set()
        if self.query_gate is not None:
            await self.query_gate.wait()
        if self.query_error is not None:
            raise self.query_error
        return self.status


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        mpesa_environment="sandbox",
        mpesa_consumer_key="test_consumer_key",
        mpesa_consumer_secret="test_consumer_secret",
        mpesa_business_short_code="174379",
        mpesa_passkey="test_passkey",
        mpesa_b2c_security_credential="test_credential",
        database_url="sqlite+aiosqlite:///:memory:",
        app_name="tip-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        gateway_retry_base_delay=0,
        gateway_query_max_attempts=3,
        payout_batch_delay_seconds=0,
        max_status_polls=3,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest_asyncio.fixture
async def services(
    gateway: FakeGateway, test_settings: Settings, audit_sink: InMemoryAuditSink
) -> AsyncGenerator[Services, Any]:
    """In-memory services around the fake gateway."""
    built = build_in_memory_services(gateway, test_settings, audit_sink=audit_sink)
    yield built
    await built.drain()


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sample_tip_request() -> Dict[str, Any]:
    """Sample tip request data."""
    return {
        "amount": 100,
        "counterparty_ref": "0712345678",
        "kind": "tip_payment",
        "account_metadata": {"restaurant_id": "r_12", "table": "7", "waiter_id": "w_3"},
    }


@pytest.fixture
def structured_logs(mocker) -> Callable[..., List[CapturedCall]]:
    """
    Route module loggers through a real structlog bound logger.

    Log calls keep structlog's method signatures, so a bad keyword fails the
    test the way it would in production. Returns the captured calls.
    """
    captured = CapturingLogger()

    def route(*modules: ModuleType) -> List[CapturedCall]:
        for module in modules:
            mocker.patch.object(
                module,
                "logger",
                structlog.wrap_logger(
                    captured,
                    processors=[],
                    wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
                ),
            )
        return captured.calls

    return route
