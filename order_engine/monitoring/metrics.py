"""
Prometheus metrics for order lifecycle and payment reconciliation.

Tracks:
- Orders created and status transitions
- Payment status transitions and refunds
- Gateway calls, errors and circuit breaker state
- Webhook events by source, type and outcome
- Ledger lock contention
- Notification failures and stale payment sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency"],
)

order_total_cents = Histogram(
    "order_total_cents",
    "Order grand totals in cents",
    buckets=(500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 500000),
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Order status transitions",
    ["from_status", "to_status"],
)

order_transition_rejections_total = Counter(
    "order_transition_rejections_total",
    "Rejected order transitions",
    ["reason"],  # invalid_transition, conflict
)

# Payment metrics
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Payment status transitions",
    ["to_status"],
)

refunds_requested_total = Counter(
    "refunds_requested_total",
    "Refunds requested",
    ["status"],  # reserved, submitted, failed
)

refund_amount_cents = Histogram(
    "refund_amount_cents",
    "Refund amounts in cents",
    buckets=(100, 500, 1000, 5000, 10000, 50000, 100000, 500000),
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit, timeout, circuit_open
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["source", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["source", "event_type", "outcome"],  # applied, duplicate, ignored, stale
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for a bad signature",
    ["source"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
ledger_lock_timeouts_total = Counter(
    "ledger_lock_timeouts_total",
    "Lock waits that exceeded the configured timeout",
    ["entity"],  # order, payment
)

# Collaborator metrics
notifications_failed_total = Counter(
    "notifications_failed_total",
    "Notifications the dispatcher failed to accept",
    ["kind"],
)

# Sweeper metrics
stale_payments_checked_total = Counter(
    "stale_payments_checked_total",
    "Stale payments re-checked against the gateway",
    ["outcome"],  # unchanged, reconciled, failed
)

sweep_last_run_timestamp = Gauge(
    "sweep_last_run_timestamp",
    "Timestamp of the last stale payment sweep",
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Stale payment sweep duration in seconds",
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, total_cents: int) -> None:
        """Record an order creation."""
        orders_created_total.labels(currency=currency).inc()
        order_total_cents.observe(total_cents)

    @staticmethod
    def record_order_transition(from_status: str, to_status: str) -> None:
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_transition_rejected(reason: str) -> None:
        order_transition_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_payment_transition(to_status: str) -> None:
        payment_transitions_total.labels(to_status=to_status).inc()

    @staticmethod
    def record_refund(status: str, amount_cents: int = 0) -> None:
        """Record a refund request stage."""
        refunds_requested_total.labels(status=status).inc()
        if amount_cents > 0:
            refund_amount_cents.observe(amount_cents)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a payment gateway error."""
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        source: str, event_type: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(source=source, event_type=event_type).inc()
        webhook_events_processed_total.labels(
            source=source, event_type=event_type, outcome=outcome
        ).inc()
        webhook_processing_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_signature_failure(source: str) -> None:
        webhook_signature_failures_total.labels(source=source).inc()

    @staticmethod
    def record_lock_timeout(entity: str) -> None:
        ledger_lock_timeouts_total.labels(entity=entity).inc()

    @staticmethod
    def record_notification_failure(kind: str) -> None:
        notifications_failed_total.labels(kind=kind).inc()

    @staticmethod
    def record_stale_payment(outcome: str) -> None:
        stale_payments_checked_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_sweep(duration_seconds: float) -> None:
        """Record a completed sweep run."""
        sweep_duration_seconds.observe(duration_seconds)
        sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
