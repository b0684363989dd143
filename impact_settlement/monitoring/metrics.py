"""
Prometheus metrics for settlement monitoring.

Tracks:
- Transactions created by payment mode and status
- Grams credited and redeemed on wallets
- Gift card state transitions
- Stripe API calls, errors and circuit breaker state
- Webhook event outcomes
- Side-effect dispatch failures
"""
from prometheus_client import Counter, Gauge, Histogram

# Transaction metrics
transactions_created_total = Counter(
    "transactions_created_total",
    "Total number of transactions created",
    ["payment_mode", "status"],
)

transaction_amount_euros = Histogram(
    "transaction_amount_euros",
    "Transaction amounts in euros",
    buckets=(0.5, 1, 2.5, 5, 10, 25, 50, 100, 250, 1000),
)

settlement_duration_seconds = Histogram(
    "settlement_duration_seconds",
    "Time spent settling one purchase request",
    ["payment_mode"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Wallet metrics
wallet_mutations_total = Counter(
    "wallet_mutations_total",
    "Total wallet mutations",
    ["operation", "owner_type"],  # credit, redeem, adjust
)

wallet_grams_total = Counter(
    "wallet_grams_total",
    "Total grams moved through wallets",
    ["operation"],
)

threshold_crossings_total = Counter(
    "threshold_crossings_total",
    "Users whose cumulative spend crossed the certification threshold",
)

# Gift card metrics
gift_card_transitions_total = Counter(
    "gift_card_transitions_total",
    "Gift card state transitions",
    ["outcome"],  # redeemed, invalidated, conflict, not_found
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["error_type"],  # transient, permanent, rate_limit, timeout
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
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
    ["event_type", "outcome"],  # settled, failed, duplicate, discarded, ignored
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_dedup_hits_total = Counter(
    "webhook_dedup_hits_total",
    "Webhook events short-circuited by the dedup cache",
    ["source"],  # redis, database
)

# Side effects
side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Side-effect dispatches that raised",
    ["notification"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transaction_created(payment_mode: str, status: str, amount: float) -> None:
        transactions_created_total.labels(payment_mode=payment_mode, status=status).inc()
        transaction_amount_euros.observe(amount)

    @staticmethod
    def record_settlement_duration(payment_mode: str, duration_seconds: float) -> None:
        settlement_duration_seconds.labels(payment_mode=payment_mode).observe(duration_seconds)

    @staticmethod
    def record_wallet_mutation(operation: str, owner_type: str, grams: int) -> None:
        """Record a wallet credit, redemption or adjustment."""
        wallet_mutations_total.labels(operation=operation, owner_type=owner_type).inc()
        wallet_grams_total.labels(operation=operation).inc(abs(grams))

    @staticmethod
    def record_threshold_crossing() -> None:
        threshold_crossings_total.inc()

    @staticmethod
    def record_gift_card_transition(outcome: str) -> None:
        gift_card_transitions_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_stripe_api_call(
        operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(operation=operation, status=status).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_stripe_api_error(error_type: str) -> None:
        stripe_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, outcome: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_webhook_dedup_hit(source: str) -> None:
        webhook_dedup_hits_total.labels(source=source).inc()

    @staticmethod
    def record_side_effect_failure(notification: str) -> None:
        side_effect_failures_total.labels(notification=notification).inc()


# Export singleton instance
metrics = MetricsCollector()
