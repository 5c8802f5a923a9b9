"""
Prometheus metrics for checkout monitoring.

Tracks:
- Cart operations by outcome
- Reservation reclaim sweeps
- Order creation outcomes and compensations
- Payment gateway requests
- Payment outcome events (webhook and broker)
- Order expiry sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Cart metrics
cart_operations_total = Counter(
    "cart_operations_total",
    "Total cart operations",
    ["operation", "outcome"],  # operation: add, remove, clear, restore
)

hold_lock_contention_total = Counter(
    "hold_lock_contention_total",
    "Hold lock acquisitions that timed out or were skipped",
    ["caller"],  # cart, reclaimer
)

# Reclaimer metrics
holds_reclaimed_total = Counter(
    "holds_reclaimed_total",
    "Total expired holds returned to the stock ledger",
)

units_reclaimed_total = Counter(
    "units_reclaimed_total",
    "Total stock units returned to the ledger by the reclaimer",
)

reclaim_sweep_duration_seconds = Histogram(
    "reclaim_sweep_duration_seconds",
    "Reclaimer sweep duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

reclaim_last_run_timestamp = Gauge(
    "reclaim_last_run_timestamp",
    "Timestamp of last reclaimer sweep",
)

# Order metrics
orders_created_total = Counter(
    "orders_created_total",
    "Order creation attempts by outcome",
    ["outcome"],  # created, insufficient_stock, stock_conflict, payment_timeout, ...
)

order_amount_cents = Histogram(
    "order_amount_cents",
    "Order totals in minor units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

stock_compensations_total = Counter(
    "stock_compensations_total",
    "Authoritative stock compensations",
    ["path", "status"],  # path: order_creation, payment_failed, order_expiry
)

orders_expired_total = Counter(
    "orders_expired_total",
    "Orders whose stock was released by the expiry sweep",
    ["from_status"],
)

# Payment gateway metrics
payment_requests_total = Counter(
    "payment_requests_total",
    "Payment creation requests sent to the provider",
    ["backend", "outcome"],  # outcome: success, timeout, error
)

payment_request_duration_seconds = Histogram(
    "payment_request_duration_seconds",
    "Payment creation round trip in seconds",
    ["backend"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

stripe_circuit_breaker_state = Gauge(
    "stripe_circuit_breaker_state",
    "Stripe circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Reconciliation metrics
payment_events_total = Counter(
    "payment_events_total",
    "Payment outcome events handled by the reconciler",
    ["source", "outcome", "result"],  # result: applied, duplicate, unknown_reference
)

payment_event_duration_seconds = Histogram(
    "payment_event_duration_seconds",
    "Payment event processing duration in seconds",
    ["source"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_cart_operation(operation: str, outcome: str) -> None:
        """Record a cart operation."""
        cart_operations_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_lock_contention(caller: str) -> None:
        """Record a hold lock that could not be taken."""
        hold_lock_contention_total.labels(caller=caller).inc()

    @staticmethod
    def record_reclaim_sweep(holds: int, units: int, duration_seconds: float) -> None:
        """Record the outcome of one reclaimer sweep."""
        holds_reclaimed_total.inc(holds)
        units_reclaimed_total.inc(units)
        reclaim_sweep_duration_seconds.observe(duration_seconds)
        reclaim_last_run_timestamp.set(time.time())

    @staticmethod
    def record_order(outcome: str, amount_cents: int = 0) -> None:
        """Record an order creation attempt."""
        orders_created_total.labels(outcome=outcome).inc()
        if amount_cents > 0:
            order_amount_cents.observe(amount_cents)

    @staticmethod
    def record_compensation(path: str, status: str) -> None:
        """Record a stock compensation attempt."""
        stock_compensations_total.labels(path=path, status=status).inc()

    @staticmethod
    def record_order_expired(from_status: str) -> None:
        """Record an order released by the expiry sweep."""
        orders_expired_total.labels(from_status=from_status).inc()

    @staticmethod
    def record_payment_request(backend: str, outcome: str, duration_seconds: float) -> None:
        """Record a payment gateway round trip."""
        payment_requests_total.labels(backend=backend, outcome=outcome).inc()
        payment_request_duration_seconds.labels(backend=backend).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        stripe_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_payment_event(
        source: str, outcome: str, result: str, duration_seconds: float
    ) -> None:
        """Record a reconciled payment event."""
        payment_events_total.labels(source=source, outcome=outcome, result=result).inc()
        payment_event_duration_seconds.labels(source=source).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
