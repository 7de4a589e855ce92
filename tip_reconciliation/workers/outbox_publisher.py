"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers tip confirmations and
payout notifications downstream.
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from tip_reconciliation.bootstrap import build_sql_services
from tip_reconciliation.config import get_settings
from tip_reconciliation.core.outbox import OutboxPublisher
from tip_reconciliation.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def publish_to_message_queue(event_data: Dict[str, Any]) -> None:
    """
    Hand one event to the notification system.

    Args:
        event_data: Event data to publish
    """
    logger.info(
        "event_published_to_queue",
        event_type=event_data.get("event_type"),
        aggregate_id=event_data.get("aggregate_id"),
    )


async def start_outbox_publisher(batch_size: int = 100, poll_interval_seconds: float = 1.0) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until stopped.
    """
    settings = get_settings()
    setup_logging(settings)

    logger.info("outbox_publisher_worker_starting")

    services = await build_sql_services(settings)
    publisher = OutboxPublisher(
        services.outbox,
        publisher_func=publish_to_message_queue,
        batch_size=batch_size,
        poll_interval_seconds=poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
