"""
Callback ingestion tests: end-to-end tip and payout scenarios on in-memory storage.
"""
import asyncio
import uuid
from typing import List

import pytest

from daraja_payloads import b2c_result_body, b2c_timeout_body, stk_callback_body, stk_timeout_body
from tip_reconciliation.bootstrap import Services
from tip_reconciliation.core import ingestion as ingestion_module
from tip_reconciliation.core.domain import Transaction, TransactionKind, TransactionState
from tip_reconciliation.core.errors import CallbackValidationError
from tip_reconciliation.core.ingestion import IngestionResult, IngestionStatus
from tip_reconciliation.core.payout_processor import PayoutRequest
from tip_reconciliation.integrations.callback_payloads import CallbackKind


class TestTipCallbacks:
    """STK push result and timeout callbacks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_push_settles_tip(self, services: Services, gateway) -> None:
        gateway.push_ids.append("ws_001")
        initiated = await services.payments.initiate(100, "0712345678")
        assert initiated.transaction.state == TransactionState.AWAITING_RESULT
        assert initiated.correlation_id == "ws_001"

        result = await services.ingestion.ingest(
            CallbackKind.PUSH_RESULT, stk_callback_body("ws_001", receipt="TEST123456")
        )

        assert result.status == IngestionStatus.APPLIED
        assert result.transaction_id == initiated.transaction_id
        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.SUCCEEDED
        assert txn.provider_result.result_code == 0
        assert txn.provider_result.receipt_number == "TEST123456"
        assert txn.provider_result.settled_amount == 100
        assert txn.provider_result.transaction_date == "20240115143022"
        assert txn.provider_result.result_name == "SUCCESS"
        assert txn.provider_result.parameters["PhoneNumber"] == 254712345678

        events = services.outbox.events
        assert [e.event_type for e in events] == ["tip_payment.succeeded"]
        assert events[0].payload["receipt_number"] == "TEST123456"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_callback_is_noop(
        self, services: Services, gateway, audit_sink
    ) -> None:
        gateway.push_ids.append("ws_001")
        initiated = await services.payments.initiate(100, "0712345678")
        body = stk_callback_body("ws_001")

        first = await services.ingestion.ingest(CallbackKind.PUSH_RESULT, body)
        settled = await services.repository.get(initiated.transaction_id)
        audited = len(audit_sink.records)

        second = await services.ingestion.ingest(CallbackKind.PUSH_RESULT, body)

        assert first.status == IngestionStatus.APPLIED
        assert second.status == IngestionStatus.DUPLICATE
        assert await services.repository.get(initiated.transaction_id) == settled
        assert len(audit_sink.records) == audited
        assert len(services.outbox.events) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_push_fails_tip(self, services: Services, gateway) -> None:
        gateway.push_ids.append("ws_002")
        initiated = await services.payments.initiate(50, "0712345678")

        await services.ingestion.ingest(
            CallbackKind.PUSH_RESULT,
            stk_callback_body("ws_002", result_code=1032, result_desc="Request cancelled by user"),
        )

        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.FAILED
        assert txn.provider_result.result_code == 1032
        assert txn.provider_result.result_name == "CANCELLED_BY_USER"
        assert txn.provider_result.retryable is True
        assert services.outbox.events == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_push_timeout_then_late_success_stays_timed_out(
        self, services: Services, gateway
    ) -> None:
        gateway.push_ids.append("ws_003")
        initiated = await services.payments.initiate(100, "0712345678")

        timeout = await services.ingestion.ingest(CallbackKind.PUSH_TIMEOUT, stk_timeout_body("ws_003"))
        late = await services.ingestion.ingest(CallbackKind.PUSH_RESULT, stk_callback_body("ws_003"))

        assert timeout.status == IngestionStatus.APPLIED
        assert late.status == IngestionStatus.DUPLICATE
        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.TIMED_OUT

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_correlation_is_acknowledged_without_transition(
        self, services: Services
    ) -> None:
        result = await services.ingestion.ingest(
            CallbackKind.PUSH_RESULT, stk_callback_body("ws_unknown")
        )

        assert result.status == IngestionStatus.UNRESOLVED
        assert result.transaction_id is None
        logged = await services.callback_log.for_correlation("ws_unknown")
        assert [e.status for e in logged] == ["unresolved"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected_and_logged(self, services: Services) -> None:
        body = {"Body": {"stkCallback": {"CheckoutRequestID": "ws_bad", "ResultCode": "zero"}}}

        with pytest.raises(CallbackValidationError):
            await services.ingestion.ingest(CallbackKind.PUSH_RESULT, body)

        logged = await services.callback_log.for_correlation("ws_bad")
        assert [e.status for e in logged] == ["rejected"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_object_body_is_rejected(self, services: Services) -> None:
        with pytest.raises(CallbackValidationError):
            await services.ingestion.ingest(CallbackKind.PUSH_RESULT, ["not", "an", "object"])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_every_accepted_callback_is_logged(self, services: Services, gateway) -> None:
        gateway.push_ids.append("ws_004")
        await services.payments.initiate(100, "0712345678")
        body = stk_callback_body("ws_004")

        await services.ingestion.ingest(CallbackKind.PUSH_RESULT, body)
        await services.ingestion.ingest(CallbackKind.PUSH_RESULT, body)

        logged = await services.callback_log.for_correlation("ws_004")
        assert [e.status for e in logged] == ["applied", "duplicate"]
        assert logged[0].payload == body
        assert logged[0].result_code == 0


class TestPayoutCallbacks:
    """B2C result and queue timeout callbacks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_timeout_then_result_is_noop(self, services: Services, gateway) -> None:
        gateway.payout_ids.append("conv_77")
        initiated = await services.payouts.initiate(
            PayoutRequest(amount=500, phone_number="0712345678", reference="PO-77")
        )
        assert initiated.correlation_id == "conv_77"

        timeout = await services.ingestion.ingest(CallbackKind.PAYOUT_TIMEOUT, b2c_timeout_body("conv_77"))
        late = await services.ingestion.ingest(CallbackKind.PAYOUT_RESULT, b2c_result_body("conv_77"))

        assert timeout.status == IngestionStatus.APPLIED
        assert late.status == IngestionStatus.DUPLICATE
        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.TIMED_OUT
        assert [e.event_type for e in services.outbox.events] == ["payout.compensation_requested"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_result_success(self, services: Services, gateway) -> None:
        gateway.payout_ids.append("conv_78")
        initiated = await services.payouts.initiate(
            PayoutRequest(amount=500, phone_number="0712345678", staff_name="Amina")
        )

        result = await services.ingestion.ingest(
            CallbackKind.PAYOUT_RESULT, b2c_result_body("conv_78", receipt="NLJ41HAY6Q")
        )

        assert result.status == IngestionStatus.APPLIED
        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.SUCCEEDED
        assert txn.provider_result.receipt_number == "NLJ41HAY6Q"
        assert txn.provider_result.settled_amount == 500
        event = services.outbox.events[0]
        assert event.event_type == "payout.completed"
        assert event.payload["receiver_name"] == "254712345678 - Amina Otieno"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payout_result_failure_requests_compensation(
        self, services: Services, gateway
    ) -> None:
        gateway.payout_ids.append("conv_79")
        initiated = await services.payouts.initiate(
            PayoutRequest(amount=500, phone_number="0712345678")
        )

        await services.ingestion.ingest(
            CallbackKind.PAYOUT_RESULT,
            b2c_result_body("conv_79", result_code=2001, result_desc="The initiator information is invalid."),
        )

        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.FAILED
        event = services.outbox.events[0]
        assert event.event_type == "payout.compensation_requested"
        assert event.payload["result_code"] == 2001
        assert event.payload["amount"] == 500


class TestCallbackTiming:
    """Callbacks that race initiation or lose their caller."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_payout_result_before_acknowledgement_is_applied(
        self, services: Services, gateway, mocker
    ) -> None:
        gateway.payout_ids.append("conv_90")
        bind = services.correlation_store.put
        early: List["asyncio.Task[IngestionResult]"] = []

        async def bind_then_deliver(correlation_id: str, transaction_id: uuid.UUID) -> None:
            await bind(correlation_id, transaction_id)
            body = b2c_result_body(
                correlation_id, result_code=2001, result_desc="The initiator information is invalid."
            )
            early.append(
                asyncio.create_task(services.ingestion.ingest(CallbackKind.PAYOUT_RESULT, body))
            )
            await asyncio.sleep(0.01)

        mocker.patch.object(services.correlation_store, "put", side_effect=bind_then_deliver)

        initiated = await services.payouts.initiate(
            PayoutRequest(amount=500, phone_number="0712345678")
        )
        result = await early[0]

        assert initiated.transaction.state == TransactionState.AWAITING_RESULT
        assert result.status == IngestionStatus.APPLIED
        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.FAILED
        assert [e.event_type for e in services.outbox.events] == ["payout.compensation_requested"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_result_for_unstarted_transaction_is_acknowledged(
        self, services: Services, structured_logs
    ) -> None:
        calls = structured_logs(ingestion_module)
        txn = Transaction.new(TransactionKind.TIP_PAYMENT, 100, "254712345678")
        await services.repository.add(txn)
        await services.correlation_store.put("ws_created", txn.id)

        result = await services.ingestion.ingest(
            CallbackKind.PUSH_RESULT, stk_callback_body("ws_created")
        )

        assert result.status == IngestionStatus.INVALID_TRANSITION
        assert result.state == TransactionState.CREATED
        assert (await services.repository.get(txn.id)).state == TransactionState.CREATED
        logged = [c.kwargs for c in calls if c.kwargs["event"] == "callback_invalid_transition"]
        assert logged[0]["state"] == "created"
        assert logged[0]["event_type"] == "success"
        entries = await services.callback_log.for_correlation("ws_created")
        assert [e.status for e in entries] == ["invalid_transition"]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_lose_callback(
        self, services: Services, gateway, mocker
    ) -> None:
        gateway.push_ids.append("ws_091")
        initiated = await services.payments.initiate(100, "0712345678")
        resolve = services.correlation_store.resolve
        started = asyncio.Event()
        gate = asyncio.Event()

        async def gated_resolve(correlation_id: str) -> uuid.UUID:
            started.set()
            await gate.wait()
            return await resolve(correlation_id)

        mocker.patch.object(services.correlation_store, "resolve", side_effect=gated_resolve)

        task = asyncio.create_task(
            services.ingestion.ingest(CallbackKind.PUSH_RESULT, stk_callback_body("ws_091"))
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        gate.set()
        await services.drain()

        txn = await services.repository.get(initiated.transaction_id)
        assert txn.state == TransactionState.SUCCEEDED
        entries = await services.callback_log.for_correlation("ws_091")
        assert [e.status for e in entries] == ["applied"]
