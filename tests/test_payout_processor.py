"""
Unit tests for the staff payout processor.
"""
import pytest

from tip_reconciliation.bootstrap import Services
from tip_reconciliation.core.domain import TransactionKind, TransactionState
from tip_reconciliation.core.errors import ValidationError
from tip_reconciliation.core.gateway import GatewayRejected
from tip_reconciliation.core.payout_processor import PayoutRequest


class TestPayoutProcessor:
    """Test suite for PayoutProcessor."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_binds_conversation_id(self, services: Services, gateway) -> None:
        gateway.payout_ids.append("AG_20240115_0000123")

        initiated = await services.payouts.initiate(
            PayoutRequest(
                amount=500,
                phone_number="0712345678",
                reference="PO-1",
                staff_name="Amina",
                metadata={"restaurant_id": "r_12"},
            )
        )

        txn = initiated.transaction
        assert txn.kind == TransactionKind.PAYOUT
        assert txn.state == TransactionState.AWAITING_RESULT
        assert txn.correlation_id == "AG_20240115_0000123"
        assert txn.merchant_request_id == "oc_1"
        assert txn.account_reference == "PO-1"
        assert txn.metadata["restaurant_id"] == "r_12"
        assert gateway.payout_calls == [
            {
                "amount": 500,
                "counterparty_account": "254712345678",
                "remarks": "Tip payout for Amina",
                "occasion": "Payout-PO-1",
            }
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_default_reference_and_remarks(self, services: Services, gateway) -> None:
        initiated = await services.payouts.initiate(
            PayoutRequest(amount=300, phone_number="0112345678", remarks="Weekend tips")
        )

        assert initiated.transaction.account_reference.startswith("PAYOUT-")
        assert gateway.payout_calls[0]["remarks"] == "Weekend tips"
        assert gateway.payout_calls[0]["occasion"] == ""
        assert gateway.payout_calls[0]["counterparty_account"] == "254112345678"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_amount(self, services: Services, gateway) -> None:
        with pytest.raises(ValidationError):
            await services.payouts.initiate(PayoutRequest(amount=0, phone_number="0712345678"))
        assert gateway.payout_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rejected_payout_requests_compensation(
        self, services: Services, gateway
    ) -> None:
        gateway.payout_error = GatewayRejected("Bad Request - Invalid PartyB", status_code=400)

        with pytest.raises(GatewayRejected):
            await services.payouts.initiate(PayoutRequest(amount=500, phone_number="0712345678"))

        events = services.outbox.events
        assert [e.event_type for e in events] == ["payout.compensation_requested"]
        assert events[0].payload["state"] == "failed"
        assert "Invalid PartyB" in events[0].payload["reason"]


class TestPayoutBatch:
    """Batch payouts keep going past failed items."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_reports_per_item_results(self, services: Services, gateway) -> None:
        batch = await services.payouts.process_batch(
            [
                PayoutRequest(amount=500, phone_number="0712345678", reference="PO-1"),
                PayoutRequest(amount=250, phone_number="12345", reference="PO-2"),
                PayoutRequest(amount=150, phone_number="0723456789"),
            ]
        )

        assert batch.total_payouts == 3
        assert batch.successful_payouts == 2
        assert batch.failed_payouts == 1
        assert batch.total_amount == 650
        assert batch.success is False
        assert [r.reference for r in batch.results] == ["PO-1", "PO-2", "0723456789"]
        assert batch.results[1].transaction_id is None
        assert batch.errors[0].startswith("PO-2: Invalid Kenyan phone number")
        assert len(gateway.payout_calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_continues_after_gateway_error(self, services: Services, gateway) -> None:
        gateway.payout_error = GatewayRejected("Service is currently unavailable", status_code=400)

        batch = await services.payouts.process_batch(
            [
                PayoutRequest(amount=500, phone_number="0712345678", reference="PO-1"),
                PayoutRequest(amount=500, phone_number="0723456789", reference="PO-2"),
            ]
        )

        assert batch.failed_payouts == 2
        assert batch.total_amount == 0
        assert len(gateway.payout_calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_batch(self, services: Services) -> None:
        batch = await services.payouts.process_batch([])

        assert batch.total_payouts == 0
        assert batch.success is True
