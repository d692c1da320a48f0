"""
Prometheus metrics for payment relay monitoring.

Tracks:
- ForumPay API calls by operation and outcome
- Webhook deliveries by audit status
- Reconciliation updates by entry point
- Pending sweep batches
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Provider API metrics
provider_requests_total = Counter(
    "forumpay_requests_total",
    "Total ForumPay API requests",
    ["operation", "status"],  # operation: check_payment, start_payment
)

provider_request_duration_seconds = Histogram(
    "forumpay_request_duration_seconds",
    "ForumPay API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook deliveries by audit status",
    ["status"],  # invalid_token, bad_request, updated, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0),
)

# Reconciliation metrics
reconciliation_updates_total = Counter(
    "reconciliation_updates_total",
    "Total reconciliation attempts",
    ["source", "outcome"],  # source: webhook, recheck, sweep, receipt
)

sweep_batch_size = Histogram(
    "pending_sweep_batch_size",
    "Number of stale pending payments per sweep",
    buckets=(0, 1, 5, 10, 25, 50, 100),
)

sweep_duration_seconds = Histogram(
    "pending_sweep_duration_seconds",
    "Pending sweep duration in seconds",
    buckets=(0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

sweep_last_run_timestamp = Gauge(
    "pending_sweep_last_run_timestamp",
    "Timestamp of the last pending sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_provider_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a ForumPay API call."""
        provider_requests_total.labels(operation=operation, status=status).inc()
        provider_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_webhook_event(status: str, duration_seconds: float) -> None:
        """Record webhook delivery processing."""
        webhook_events_total.labels(status=status).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reconciliation(source: str, outcome: str) -> None:
        """Record a reconciliation attempt."""
        reconciliation_updates_total.labels(source=source, outcome=outcome).inc()

    @staticmethod
    def record_sweep(batch_size: int, duration_seconds: float) -> None:
        """Record a pending sweep run."""
        sweep_batch_size.observe(batch_size)
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
