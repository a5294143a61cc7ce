"""
Prometheus metrics for mobile-money payment monitoring.

Tracks:
- Push payment initiations by purpose and outcome
- Gateway API calls, errors and latency
- OAuth token refreshes
- Callback handling outcomes (applied, duplicate, orphan, malformed)
- Supervisor cycles, retries and timeouts
- Refund outcomes
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total push payment initiation attempts",
    ["purpose", "outcome"],  # outcome: accepted, rejected, unknown, unavailable
)

payment_amount = Histogram(
    "payment_amount",
    "Requested payment amounts in the smallest currency unit",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000, 250000),
)

transaction_transitions_total = Counter(
    "transaction_transitions_total",
    "Applied status transitions",
    ["to_status", "source"],  # source: callback, status_query, supervisor, initiation
)

# Gateway API metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total gateway API requests",
    ["operation", "outcome"],  # operation: push, status_query, disbursement, auth
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total gateway API errors",
    ["operation", "error_type"],  # transient, permanent
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

gateway_token_refreshes_total = Counter(
    "gateway_token_refreshes_total",
    "OAuth access token refreshes",
    ["outcome"],
)

# Callback metrics
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Gateway callbacks received",
    ["kind", "outcome"],  # outcome: applied, duplicate, orphan, malformed
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Supervisor metrics
supervisor_cycles_total = Counter(
    "supervisor_cycles_total",
    "Completed supervisor cycles",
)

supervisor_actions_total = Counter(
    "supervisor_actions_total",
    "Supervisor actions per stale transaction",
    ["action"],  # resolved, retry_scheduled, timed_out, abandoned, skipped
)

supervisor_cycle_duration_seconds = Histogram(
    "supervisor_cycle_duration_seconds",
    "Supervisor cycle duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

supervisor_last_run_timestamp = Gauge(
    "supervisor_last_run_timestamp",
    "Timestamp of last supervisor cycle",
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Refund requests by outcome",
    ["outcome"],  # initiated, rejected, failed, completed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_initiation(purpose: str, outcome: str, amount: int) -> None:
        """Record a push payment initiation."""
        payment_initiations_total.labels(purpose=purpose, outcome=outcome).inc()
        payment_amount.observe(amount)

    @staticmethod
    def record_transition(to_status: str, source: str) -> None:
        """Record an applied status transition."""
        transaction_transitions_total.labels(to_status=to_status, source=source).inc()

    @staticmethod
    def record_gateway_call(operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(operation=operation, outcome=outcome).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(operation: str, error_type: str) -> None:
        """Record a gateway API error."""
        gateway_errors_total.labels(operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_token_refresh(outcome: str) -> None:
        """Record an OAuth token refresh."""
        gateway_token_refreshes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_callback(kind: str, outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callbacks_received_total.labels(kind=kind, outcome=outcome).inc()
        callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_supervisor_action(action: str) -> None:
        """Record what the supervisor did with one stale transaction."""
        supervisor_actions_total.labels(action=action).inc()

    @staticmethod
    def record_supervisor_cycle(duration_seconds: float) -> None:
        """Record a finished supervisor cycle."""
        supervisor_cycles_total.inc()
        supervisor_cycle_duration_seconds.observe(duration_seconds)
        supervisor_last_run_timestamp.set(time.time())

    @staticmethod
    def record_refund(outcome: str) -> None:
        """Record a refund outcome."""
        refunds_total.labels(outcome=outcome).inc()


# Export singleton instance
metrics = MetricsCollector()
