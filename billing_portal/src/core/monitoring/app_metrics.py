from prometheus_client import Counter, Histogram
import time
import structlog
from typing import Optional

logger = structlog.get_logger(__name__)

# --- Prometheus Metric Definitions ---
# Defined globally so they are registered with the default REGISTRY.

# 1. Payment Metrics
PAYMENT_INTENTS_TOTAL = Counter(
    'payment_intents_total',
    'Payment intent creation attempts, labeled by outcome.',
    ['outcome']  # e.g., 'created', 'validation_error', 'amount_mismatch', 'processor_error'
)

PAYMENT_CONFIRMATIONS_TOTAL = Counter(
    'payment_confirmations_total',
    'Client-driven payment confirmations, labeled by outcome.',
    ['outcome']  # e.g., 'applied', 'already_applied', 'unauthorized', 'persistence_error'
)

PAYMENT_AMOUNT_DOLLARS = Histogram(
    'payment_amount_dollars',
    'Distribution of applied self-pay payment amounts, in dollars.',
    buckets=(10.0, 25.0, 50.0, 100.0, 250.0, 500.0, 1000.0, 2500.0, 5000.0, float('inf'))
)

SERVICES_MARKED_PAID_TOTAL = Counter(
    'services_marked_paid_total',
    'Total service line items transitioned from unpaid to paid.'
)

# 2. Webhook Metrics
WEBHOOK_EVENTS_TOTAL = Counter(
    'payment_webhook_events_total',
    'Payment processor notifications received, labeled by event type and outcome.',
    ['event_type', 'outcome']  # outcome: 'applied', 'no_change', 'duplicate', 'ignored', 'rejected'
)

# 3. Database Metrics
DATABASE_QUERY_DURATION_SECONDS = Histogram(
    'database_query_duration_seconds',
    'Duration of key database queries, in seconds.',
    ['query_name']
)

# 4. Cache Metrics
CACHE_OPERATIONS_TOTAL = Counter(
    'cache_operations_total',
    'Total cache operations, labeled by type and outcome.',
    ['cache_type', 'operation_type', 'outcome']
)

# 5. Auth Metrics
LOGIN_ATTEMPTS_TOTAL = Counter(
    'login_attempts_total',
    'Sign-in attempts, labeled by method and outcome.',
    ['method', 'outcome']  # method: 'magic_link', 'password'
)


class MetricsCollector:
    """
    Records application metrics using the Prometheus client. Stateless; all
    state lives in the module-level metric objects.
    """

    def __init__(self):
        logger.info("MetricsCollector initialized (stateless, uses global metrics).")

    def record_payment_intent(self, outcome: str):
        PAYMENT_INTENTS_TOTAL.labels(outcome=outcome).inc()

    def record_payment_confirmation(self, outcome: str, amount: Optional[float] = None, services_updated: int = 0):
        PAYMENT_CONFIRMATIONS_TOTAL.labels(outcome=outcome).inc()
        if amount is not None and amount > 0:
            PAYMENT_AMOUNT_DOLLARS.observe(amount)
        if services_updated > 0:
            SERVICES_MARKED_PAID_TOTAL.inc(services_updated)

    def record_webhook_event(self, event_type: str, outcome: str):
        WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome=outcome).inc()

    def record_login_attempt(self, method: str, outcome: str):
        LOGIN_ATTEMPTS_TOTAL.labels(method=method, outcome=outcome).inc()

    def record_cache_operation(self, cache_type: str, operation_type: str, outcome: str):
        CACHE_OPERATIONS_TOTAL.labels(cache_type=cache_type, operation_type=operation_type, outcome=outcome).inc()

    def record_database_query_duration(self, query_name: str, duration_seconds: float):
        DATABASE_QUERY_DURATION_SECONDS.labels(query_name=query_name).observe(duration_seconds)

    class _DatabaseTimer:
        def __init__(self, collector_instance: 'MetricsCollector', query_name: str):
            self.collector = collector_instance
            self.query_name = query_name
            self.start_time: Optional[float] = None

        def __enter__(self):
            self.start_time = time.perf_counter()
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            if self.start_time is not None:
                duration_seconds = time.perf_counter() - self.start_time
                self.collector.record_database_query_duration(self.query_name, duration_seconds)

    def time_db_query(self, query_name: str) -> _DatabaseTimer:
        """Returns a context manager that times a database query."""
        return self._DatabaseTimer(self, query_name)
