"""
Stale transaction sweeper.

Periodically picks up transactions that have waited too long for a callback
and runs the status reconciler on each, one provider query per transaction
per sweep.
"""
import asyncio
import signal
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List

import structlog

from tip_reconciliation.bootstrap import build_sql_services
from tip_reconciliation.config import get_settings
from tip_reconciliation.core.domain import TransactionState, utcnow
from tip_reconciliation.core.reconciler import StatusReconciler
from tip_reconciliation.core.repository import TransactionRepository
from tip_reconciliation.monitoring.logging import setup_logging
from tip_reconciliation.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class SweepReport:
    picked_up: int = 0
    resolved: int = 0
    still_pending: int = 0
    errors: List[str] = field(default_factory=list)


class ReconciliationSweeper:
    """
    Polls the provider for transactions stuck in awaiting_result.

    Transactions whose poll budget is exhausted are skipped; only their
    callback can finish them now.
    """

    def __init__(
        self,
        repository: TransactionRepository,
        reconciler: StatusReconciler,
        stale_after_seconds: float = 120,
        batch_size: int = 50,
        interval_seconds: float = 60.0,
    ):
        self.repository = repository
        self.reconciler = reconciler
        self.stale_after_seconds = stale_after_seconds
        self.batch_size = batch_size
        self.interval_seconds = interval_seconds
        self._running = False

    async def sweep_once(self) -> SweepReport:
        """
        Reconcile one batch of stale transactions.

        Returns:
            SweepReport: Counts for this sweep
        """
        cutoff = utcnow() - timedelta(seconds=self.stale_after_seconds)
        stale = await self.repository.list_stale(
            TransactionState.AWAITING_RESULT,
            updated_before=cutoff,
            max_poll_attempts=self.reconciler.max_status_polls,
            limit=self.batch_size,
        )
        report = SweepReport(picked_up=len(stale))
        metrics.set_sweep_metrics(len(stale))

        for transaction in stale:
            try:
                view = await self.reconciler.reconcile(transaction.id)
            except Exception as e:
                logger.error(
                    "sweep_reconcile_failed",
                    transaction_id=str(transaction.id),
                    error=str(e),
                )
                report.errors.append(f"{transaction.id}: {e}")
                continue

            if view["state"] == TransactionState.AWAITING_RESULT.value:
                report.still_pending += 1
            else:
                report.resolved += 1

        if stale:
            logger.info(
                "sweep_completed",
                picked_up=report.picked_up,
                resolved=report.resolved,
                still_pending=report.still_pending,
                errors=len(report.errors),
            )
        return report

    async def start(self) -> None:
        self._running = True
        logger.info(
            "reconciliation_sweeper_started",
            interval_seconds=self.interval_seconds,
            stale_after_seconds=self.stale_after_seconds,
        )
        try:
            while self._running:
                try:
                    await self.sweep_once()
                except Exception as e:
                    logger.error("reconciliation_sweep_error", error=str(e))
                await asyncio.sleep(self.interval_seconds)
        finally:
            logger.info("reconciliation_sweeper_stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("reconciliation_sweeper_stop_requested")


async def start_reconciliation_sweeper() -> None:
    """
    Start the sweeper worker against the database.

    Runs continuously until stopped.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("reconciliation_sweeper_worker_starting")

    services = await build_sql_services(settings)
    sweeper = ReconciliationSweeper(
        services.repository,
        services.reconciler,
        stale_after_seconds=settings.stale_after_seconds,
        batch_size=settings.sweep_batch_size,
        interval_seconds=settings.sweep_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("reconciliation_sweeper_shutdown_signal_received", signal=sig)
        sweeper.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await sweeper.start()
    finally:
        await services.close()


def main() -> None:
    asyncio.run(start_reconciliation_sweeper())


if __name__ == "__main__":
    main()
