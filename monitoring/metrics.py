"""
Prometheus metrics for order reconciliation monitoring.

Tracks:
- Orders created and their amounts
- State transitions, applied vs. no-op
- Gateway API calls, errors and circuit breaker state
- Webhook events, anomalies and signature failures
- Refunds
- Notifications and outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["currency"],
)

order_amount_minor_units = Histogram(
    "order_amount_minor_units",
    "Order totals in minor currency units",
    buckets=(10000, 50000, 100000, 250000, 500000, 1000000, 5000000),
)

order_creation_duration_seconds = Histogram(
    "order_creation_duration_seconds",
    "Order placement duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# State machine metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Order state transitions attempted",
    ["transition", "outcome"],  # outcome: applied, noop
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],  # operation: create_order, fetch_payment, create_refund
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total payment gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Payment gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # applied, noop, ignored, not_found, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_anomalies_total = Counter(
    "webhook_anomalies_total",
    "Webhook events that matched no order or could not be applied",
    ["event_type", "reason"],
)

signature_failures_total = Counter(
    "signature_failures_total",
    "Rejected checkout or webhook signatures",
    ["source"],  # client, webhook
)

# Refund metrics
refunds_total = Counter(
    "refunds_total",
    "Refund attempts by outcome",
    ["status"],  # created, rejected, exceeds_total
)

# Notification / outbox metrics
notifications_sent_total = Counter(
    "notifications_sent_total",
    "Notifications delivered",
    ["event_type", "status"],  # sent, logged, failed
)

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

# Gateway sync sweep metrics
gateway_sync_last_run_timestamp = Gauge(
    "gateway_sync_last_run_timestamp",
    "Timestamp of last pending-order gateway sync",
)

gateway_sync_recovered_total = Counter(
    "gateway_sync_recovered_total",
    "Pending orders moved to paid by the gateway sync sweep",
)

# Catalog metrics
catalog_changes_total = Counter(
    "catalog_changes_total",
    "Admin changes to the product catalog",
    ["action"],  # created, updated, deleted
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_order_created(currency: str, amount_minor: int, duration_seconds: float) -> None:
        """Record a newly placed order."""
        orders_created_total.labels(currency=currency).inc()
        order_amount_minor_units.observe(amount_minor)
        order_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_transition(transition: str, applied: bool) -> None:
        """Record a state transition attempt."""
        outcome = "applied" if applied else "noop"
        order_transitions_total.labels(transition=transition, outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_anomaly(event_type: str, reason: str) -> None:
        webhook_anomalies_total.labels(event_type=event_type, reason=reason).inc()

    @staticmethod
    def record_signature_failure(source: str) -> None:
        signature_failures_total.labels(source=source).inc()

    @staticmethod
    def record_refund(status: str) -> None:
        refunds_total.labels(status=status).inc()

    @staticmethod
    def record_notification(event_type: str, status: str) -> None:
        notifications_sent_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_gateway_sync(recovered: int) -> None:
        """Record a completed gateway sync sweep."""
        gateway_sync_recovered_total.inc(recovered)
        gateway_sync_last_run_timestamp.set(time.time())

    @staticmethod
    def record_catalog_change(action: str) -> None:
        catalog_changes_total.labels(action=action).inc()


# Export singleton instance
metrics = MetricsCollector()
