"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking lifecycle metrics
booking_transitions = Counter(
    'booking_transitions_total',
    'Booking status transition attempts',
    ['result']  # success, conflict, retry
)

transition_latency = Histogram(
    'booking_transition_latency_seconds',
    'Booking transition latency including CAS retries',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

# Event ingestion metrics
webhook_events = Counter(
    'webhook_events_total',
    'Domain events received',
    ['event', 'result']  # ok, partial, duplicate, rejected
)

side_effect_failures = Counter(
    'side_effect_failures_total',
    'Best-effort side effects that failed after a committed transition',
    ['name']
)

loyalty_points_awarded = Counter(
    'loyalty_points_awarded_total',
    'Loyalty points awarded for completed bookings'
)

# Outbox / delivery metrics
outbox_entries_created = Counter(
    'outbox_entries_created_total',
    'Outbox entries written',
    ['source']  # event, broadcast, task
)

delivery_attempts = Counter(
    'delivery_attempts_total',
    'Per-endpoint delivery attempts',
    ['channel', 'outcome']  # delivered, transient, permanent
)

delivery_latency = Histogram(
    'delivery_attempt_latency_seconds',
    'Single delivery attempt latency',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

notifications_suppressed = Counter(
    'notifications_suppressed_total',
    'Notifications suppressed by restaurant preferences',
    ['reason']
)

subscription_deactivations = Counter(
    'push_subscription_deactivations_total',
    'Push subscriptions deactivated after a permanent failure'
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set, hit/miss
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )

# Convenience functions for instrumentation
def record_transition(result: str):
    """Record transition attempt. Result: success, conflict, retry"""
    booking_transitions.labels(result=result).inc()

def record_webhook_event(event: str, result: str):
    webhook_events.labels(event=event, result=result).inc()

def record_delivery(channel: str, outcome: str):
    """Record delivery attempt. Outcome: delivered, transient, permanent"""
    delivery_attempts.labels(channel=channel, outcome=outcome).inc()

def record_cache_operation(operation: str, hit: bool):
    """Record cache operation."""
    result = "hit" if hit else "miss"
    cache_operations.labels(operation=operation, result=result).inc()
