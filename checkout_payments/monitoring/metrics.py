"""
Prometheus metrics for checkout and payment monitoring.

Tracks:
- Orders created and rejected per rail
- Provider API calls, errors and circuit state
- Webhook outcomes and payment status transitions
- Completion side effects
- Cancellations and refund outcomes
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_total = Counter(
    "checkout_orders_total",
    "Total checkout attempts",
    ["rail", "status"],  # created, rejected
)

order_amount = Histogram(
    "checkout_order_amount",
    "Order totals in store currency",
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

checkout_duration_seconds = Histogram(
    "checkout_duration_seconds",
    "Checkout (order creation) duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Provider metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total payment provider requests",
    ["provider", "operation", "status"],
)

provider_errors_total = Counter(
    "provider_errors_total",
    "Total payment provider errors",
    ["provider", "error_type"],  # transient, permanent, rate_limit
)

provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Payment provider call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

provider_circuit_breaker_state = Gauge(
    "provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["rail"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["rail", "outcome"],  # applied, no_change, duplicate, rejected, unresolved
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["rail"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

payment_transitions_total = Counter(
    "payment_status_transitions_total",
    "Payment status transitions applied",
    ["rail", "from_status", "to_status"],
)

# Completion metrics
completion_side_effects_total = Counter(
    "completion_side_effects_total",
    "Order completion side effects",
    ["effect", "status"],  # succeeded, failed
)

# Cancellation metrics
cancellations_total = Counter(
    "order_cancellations_total",
    "Order cancellations",
    ["refund_status"],
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

outbox_last_run_timestamp = Gauge(
    "outbox_last_run_timestamp",
    "Timestamp of the last outbox batch",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order(rail: str, status: str, total: float = 0.0) -> None:
        """Record a checkout attempt."""
        orders_total.labels(rail=rail, status=status).inc()
        if status == "created":
            order_amount.observe(total)

    @staticmethod
    def record_checkout_duration(duration_seconds: float) -> None:
        """Record checkout duration."""
        checkout_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a payment provider API call."""
        provider_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_request_duration_seconds.labels(
            provider=provider, operation=operation
        ).observe(duration_seconds)

    @staticmethod
    def record_provider_error(provider: str, error_type: str) -> None:
        """Record a payment provider error."""
        provider_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(rail: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(rail=rail).inc()
        webhook_events_processed_total.labels(rail=rail, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(rail=rail).observe(duration_seconds)

    @staticmethod
    def record_payment_transition(rail: str, from_status: str, to_status: str) -> None:
        """Record a payment status transition."""
        payment_transitions_total.labels(
            rail=rail, from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_side_effect(effect: str, status: str) -> None:
        """Record a completion side effect outcome."""
        completion_side_effects_total.labels(effect=effect, status=status).inc()

    @staticmethod
    def record_cancellation(refund_status: str) -> None:
        """Record an order cancellation."""
        cancellations_total.labels(refund_status=refund_status).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_batch(published: dict[str, int], duration_seconds: float) -> None:
        """Record an outbox batch run."""
        for event_type, count in published.items():
            outbox_events_published_total.labels(event_type=event_type).inc(count)
        outbox_processing_duration_seconds.observe(duration_seconds)
        outbox_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
