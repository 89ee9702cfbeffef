"""
Prometheus metrics for payment transaction monitoring.

Tracks:
- Checkout initiations by outcome
- Callback reconciliations by outcome
- Gateway API calls, errors and latency
- Conditional-write conflicts on transaction status
- Outbox queue depth and deliveries
- Stale transactions found by the sweep
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Transaction metrics
transaction_initiations_total = Counter(
    "transaction_initiations_total",
    "Total checkout initiations",
    ["outcome", "environment"],  # processing, failed, rejected
)

transaction_initiation_duration_seconds = Histogram(
    "transaction_initiation_duration_seconds",
    "Checkout initiation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

transaction_amount_minor = Histogram(
    "transaction_amount_minor",
    "Transaction amounts in minor units",
    buckets=(100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000, 5000000),
)

transaction_reconciliations_total = Counter(
    "transaction_reconciliations_total",
    "Total callback reconciliations",
    ["outcome"],  # succeeded, failed, processing, already_final
)

transaction_transition_conflicts_total = Counter(
    "transaction_transition_conflicts_total",
    "Conditional status writes that lost to a concurrent writer",
    ["from_status", "to_status"],
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],  # operation: authenticate, pay, query_status
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total payment gateway API errors",
    ["operation", "reason"],
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
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

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Sweep metrics
sweep_stale_transactions = Gauge(
    "sweep_stale_transactions",
    "Stale non-terminal transactions found by the last sweep",
    ["status"],
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of last stale transaction sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(
        outcome: str, environment: str, amount_minor: int, duration_seconds: float
    ) -> None:
        """Record a checkout initiation."""
        transaction_initiations_total.labels(outcome=outcome, environment=environment).inc()
        transaction_amount_minor.observe(amount_minor)
        transaction_initiation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reconciliation(outcome: str) -> None:
        """Record a callback reconciliation."""
        transaction_reconciliations_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_transition_conflict(from_status: str, to_status: str) -> None:
        """Record a conditional write that did not apply."""
        transaction_transition_conflicts_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(operation: str, reason: str) -> None:
        """Record a gateway API error."""
        gateway_api_errors_total.labels(operation=operation, reason=reason).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        """Record outbox batch duration."""
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_sweep_metrics(stale_processing: int, stuck_initiated: int) -> None:
        """Set stale transaction sweep metrics."""
        sweep_stale_transactions.labels(status="processing").set(stale_processing)
        sweep_stale_transactions.labels(status="initiated").set(stuck_initiated)
        sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
