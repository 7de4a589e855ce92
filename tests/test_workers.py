"""
Tests for the background workers: outbox publisher and reconciliation sweeper.
"""
from typing import Any, Dict, List

import pytest

from daraja_payloads import stk_callback_body
from tip_reconciliation.bootstrap import Services
from tip_reconciliation.core.gateway import StatusResult
from tip_reconciliation.core.outbox import OutboxPublisher
from tip_reconciliation.integrations.callback_payloads import CallbackKind
from tip_reconciliation.workers.reconciliation_sweeper import ReconciliationSweeper


async def settle_tip(services: Services, gateway, correlation_id: str) -> None:
    gateway.push_ids.append(correlation_id)
    await services.payments.initiate(100, "0712345678")
    await services.ingestion.ingest(CallbackKind.PUSH_RESULT, stk_callback_body(correlation_id))


class TestOutboxPublisher:
    """Test suite for OutboxPublisher."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_batch_publishes_and_marks(self, services: Services, gateway) -> None:
        await settle_tip(services, gateway, "ws_pub_1")
        await settle_tip(services, gateway, "ws_pub_2")
        published: List[Dict[str, Any]] = []

        async def publish(event_data: Dict[str, Any]) -> None:
            published.append(event_data)

        publisher = OutboxPublisher(services.outbox, publisher_func=publish)

        assert await publisher.get_pending_count() == 2
        assert await publisher.process_batch() == 2
        assert [e["event_type"] for e in published] == ["tip_payment.succeeded"] * 2
        assert published[0]["payload"]["receipt_number"] == "TEST123456"
        assert await publisher.get_pending_count() == 0
        assert await publisher.process_batch() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_publish_stays_pending(self, services: Services, gateway) -> None:
        await settle_tip(services, gateway, "ws_pub_3")

        async def broken(event_data: Dict[str, Any]) -> None:
            raise ConnectionError("broker down")

        publisher = OutboxPublisher(services.outbox, publisher_func=broken)

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(self, services: Services, gateway) -> None:
        for n in range(3):
            await settle_tip(services, gateway, f"ws_pub_batch_{n}")

        async def publish(event_data: Dict[str, Any]) -> None:
            return None

        publisher = OutboxPublisher(services.outbox, publisher_func=publish, batch_size=2)

        assert await publisher.process_batch() == 2
        assert await publisher.get_pending_count() == 1


class TestReconciliationSweeper:
    """Test suite for ReconciliationSweeper."""

    @staticmethod
    def sweeper(services: Services, stale_after_seconds: float = -1) -> ReconciliationSweeper:
        return ReconciliationSweeper(
            services.repository,
            services.reconciler,
            stale_after_seconds=stale_after_seconds,
            batch_size=10,
            interval_seconds=0,
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolves_stale_transactions(self, services: Services, gateway) -> None:
        gateway.push_ids.extend(["ws_sw_1", "ws_sw_2"])
        await services.payments.initiate(100, "0712345678")
        await services.payments.initiate(200, "0712345678")
        gateway.status = StatusResult(
            pending=False, result_code=1037, result_description="DS timeout user cannot be reached"
        )

        report = await self.sweeper(services).sweep_once()

        assert report.picked_up == 2
        assert report.resolved == 2
        assert report.still_pending == 0
        assert {c["correlation_id"] for c in gateway.query_calls} == {"ws_sw_1", "ws_sw_2"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_answers_are_counted(self, services: Services, gateway) -> None:
        gateway.push_ids.append("ws_sw_3")
        await services.payments.initiate(100, "0712345678")

        report = await self.sweeper(services).sweep_once()

        assert report.picked_up == 1
        assert report.still_pending == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ignores_fresh_transactions(self, services: Services, gateway) -> None:
        await services.payments.initiate(100, "0712345678")

        report = await self.sweeper(services, stale_after_seconds=3600).sweep_once()

        assert report.picked_up == 0
        assert gateway.query_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_skips_exhausted_poll_budget(self, services: Services, gateway) -> None:
        initiated = await services.payments.initiate(100, "0712345678")
        for _ in range(services.reconciler.max_status_polls):
            await services.reconciler.reconcile(initiated.transaction_id)
        queried = len(gateway.query_calls)

        report = await self.sweeper(services).sweep_once()

        assert report.picked_up == 0
        assert len(gateway.query_calls) == queried

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(
        self, services: Services, gateway, mocker
    ) -> None:
        await services.payments.initiate(100, "0712345678")
        await services.payments.initiate(200, "0712345678")
        mocker.patch.object(
            services.reconciler,
            "reconcile",
            side_effect=[RuntimeError("boom"), {"state": "succeeded"}],
        )

        report = await self.sweeper(services).sweep_once()

        assert report.picked_up == 2
        assert report.resolved == 1
        assert len(report.errors) == 1
        assert "boom" in report.errors[0]
