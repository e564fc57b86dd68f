"""
Prometheus metrics for subscription billing monitoring.

Tracks:
- Payment sessions opened and their final status
- Cardcom API calls, errors and circuit breaker state
- Webhook events by outcome
- Subscription transitions and renewal charges
- Reconciliation discrepancies
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment session metrics
payment_sessions_opened_total = Counter(
    "payment_sessions_opened_total",
    "Total hosted payment sessions opened",
    ["plan", "operation"],
)

payment_session_outcomes_total = Counter(
    "payment_session_outcomes_total",
    "Final outcome of payment sessions seen by status checks",
    ["status"],  # completed, failed, expired, timeout
)

payment_status_checks_total = Counter(
    "payment_status_checks_total",
    "Total payment status checks",
    ["result"],  # success, processing, failed, timeout
)

# Cardcom API metrics
cardcom_api_requests_total = Counter(
    "cardcom_api_requests_total",
    "Total Cardcom API requests",
    ["operation", "status"],
)

cardcom_api_errors_total = Counter(
    "cardcom_api_errors_total",
    "Total Cardcom API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

cardcom_api_duration_seconds = Histogram(
    "cardcom_api_duration_seconds",
    "Cardcom API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

cardcom_circuit_breaker_state = Gauge(
    "cardcom_circuit_breaker_state",
    "Cardcom circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["status"],  # success, failed, duplicate, locked, error
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_retries_total = Counter(
    "webhook_retries_total",
    "Unprocessed webhooks retried",
    ["result"],  # success, failed
)

# Subscription metrics
subscription_transitions_total = Counter(
    "subscription_transitions_total",
    "Subscription status transitions",
    ["from_status", "to_status"],
)

renewal_charges_total = Counter(
    "renewal_charges_total",
    "Recurring renewal charges",
    ["plan", "result"],  # succeeded, failed, skipped
)

renewal_charge_amount_cents = Histogram(
    "renewal_charge_amount_cents",
    "Renewal charge amounts in cents",
    buckets=(10000, 37100, 100000, 337100, 1000000),
)

emails_sent_total = Counter(
    "emails_sent_total",
    "Notification emails",
    ["template", "status"],
)

# Reconciliation metrics
reconciliation_discrepancies_total = Gauge(
    "reconciliation_discrepancies_total",
    "Total reconciliation discrepancies",
)

reconciliation_discrepancy_cents = Gauge(
    "reconciliation_discrepancy_cents",
    "Reconciliation discrepancy amount in cents",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation job duration in seconds",
    buckets=(10, 30, 60, 120, 300, 600, 1800),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
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

# Lock metrics
distributed_lock_acquisitions_total = Counter(
    "distributed_lock_acquisitions_total",
    "Total distributed lock acquisitions",
    ["status"],  # acquired, failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_session_opened(plan: str, operation: str) -> None:
        """Record a hosted payment session."""
        payment_sessions_opened_total.labels(plan=plan, operation=operation).inc()

    @staticmethod
    def record_session_outcome(status: str) -> None:
        """Record a terminal session status."""
        payment_session_outcomes_total.labels(status=status).inc()

    @staticmethod
    def record_status_check(result: str) -> None:
        """Record a status check result."""
        payment_status_checks_total.labels(result=result).inc()

    @staticmethod
    def record_cardcom_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Cardcom API call."""
        cardcom_api_requests_total.labels(operation=operation, status=status).inc()
        cardcom_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_cardcom_api_error(error_type: str) -> None:
        """Record Cardcom API error."""
        cardcom_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        cardcom_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(status=status).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_webhook_retry(success: bool) -> None:
        """Record a retried webhook."""
        webhook_retries_total.labels(result="success" if success else "failed").inc()

    @staticmethod
    def record_subscription_transition(from_status: str, to_status: str) -> None:
        """Record subscription status transition."""
        subscription_transitions_total.labels(
            from_status=from_status, to_status=to_status
        ).inc()

    @staticmethod
    def record_renewal_charge(plan: str, result: str, amount_cents: int = 0) -> None:
        """Record a renewal charge attempt."""
        renewal_charges_total.labels(plan=plan, result=result).inc()
        if amount_cents > 0:
            renewal_charge_amount_cents.observe(amount_cents)

    @staticmethod
    def record_email(template: str, sent: bool) -> None:
        """Record an email notification."""
        emails_sent_total.labels(template=template, status="sent" if sent else "failed").inc()

    @staticmethod
    def set_reconciliation_metrics(
        discrepancies_count: int, discrepancy_cents: int, duration_seconds: float
    ) -> None:
        """Set reconciliation metrics."""
        reconciliation_discrepancies_total.set(discrepancies_count)
        reconciliation_discrepancy_cents.set(discrepancy_cents)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_distributed_lock(status: str) -> None:
        """Record distributed lock acquisition."""
        distributed_lock_acquisitions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
