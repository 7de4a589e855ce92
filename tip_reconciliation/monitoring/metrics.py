"""
Prometheus metrics for tip and payout reconciliation.

Tracks:
- Transactions initiated by kind and outcome
- State transitions and optimistic concurrency conflicts
- Provider gateway calls, errors and circuit breaker state
- Callback ingestion outcomes
- Status reconciler polls
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Transaction metrics
transactions_initiated_total = Counter(
    "transactions_initiated_total",
    "Total transactions initiated",
    ["kind", "status"],  # status: acknowledged, rejected, unreachable, unknown
)

transaction_amount = Histogram(
    "transaction_amount",
    "Transaction amounts in minor units",
    ["kind"],
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 150000),
)

transaction_transitions_total = Counter(
    "transaction_transitions_total",
    "Total applied state transitions",
    ["kind", "from_state", "to_state"],
)

transaction_concurrency_conflicts_total = Counter(
    "transaction_concurrency_conflicts_total",
    "Optimistic concurrency conflicts while applying transitions",
)

# Provider gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total provider gateway requests",
    ["operation", "status"],  # operation: push, payout, query, token
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total provider gateway errors",
    ["error_type"],  # unreachable, rejected, unknown
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Provider gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Callback metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Total provider callbacks received",
    ["callback_kind"],
)

callbacks_processed_total = Counter(
    "callbacks_processed_total",
    "Total provider callbacks processed",
    ["callback_kind", "status"],  # applied, duplicate, unresolved, invalid_transition, error
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    ["callback_kind"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Reconciliation metrics
status_polls_total = Counter(
    "status_polls_total",
    "Provider status queries issued by the reconciler",
    ["outcome"],  # resolved, pending, error
)

reconciliation_sweep_size = Gauge(
    "reconciliation_sweep_size",
    "Stale transactions picked up by the last sweep",
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(kind: str, status: str, amount: int) -> None:
        """Record a push or payout initiation."""
        transactions_initiated_total.labels(kind=kind, status=status).inc()
        transaction_amount.labels(kind=kind).observe(amount)

    @staticmethod
    def record_transition(kind: str, from_state: str, to_state: str) -> None:
        """Record an applied state transition."""
        transaction_transitions_total.labels(
            kind=kind, from_state=from_state, to_state=to_state
        ).inc()

    @staticmethod
    def record_concurrency_conflict() -> None:
        """Record a version conflict that forced a transition retry."""
        transaction_concurrency_conflicts_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record provider gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record provider gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_callback(callback_kind: str, status: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(callback_kind=callback_kind).inc()
        callbacks_processed_total.labels(callback_kind=callback_kind, status=status).inc()
        callback_processing_duration_seconds.labels(callback_kind=callback_kind).observe(
            duration_seconds
        )

    @staticmethod
    def record_status_poll(outcome: str) -> None:
        """Record a reconciler status query."""
        status_polls_total.labels(outcome=outcome).inc()

    @staticmethod
    def set_sweep_metrics(picked_up: int) -> None:
        """Set reconciliation sweep metrics."""
        reconciliation_sweep_size.set(picked_up)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
