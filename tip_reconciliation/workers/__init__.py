"""Background workers for async processing."""
from .outbox_publisher import start_outbox_publisher
from .reconciliation_sweeper import ReconciliationSweeper, start_reconciliation_sweeper

__all__ = ["start_outbox_publisher", "ReconciliationSweeper", "start_reconciliation_sweeper"]
