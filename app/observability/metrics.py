"""
Prometheus Metrics for the scheduling engine

Tracks key indicators:
- Booking operations by outcome
- Rejections by error code
- Lock wait latency
- Rescheduling queue attempts, depth and escalations
- Outbound events published and delivered
"""

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST
)
import logging

logger = logging.getLogger(__name__)

# Create registry
registry = CollectorRegistry()

# ==============================================================================
# BOOKING METRICS
# ==============================================================================

BOOKING_OPERATIONS = Counter(
    'scheduling_operations_total',
    'Booking service operations',
    ['operation', 'outcome'],  # book/modify/cancel/..., ok/rejected
    registry=registry
)

REJECTIONS = Counter(
    'scheduling_rejections_total',
    'Rejected operations by error code',
    ['operation', 'code'],
    registry=registry
)

LOCK_WAIT_LATENCY = Histogram(
    'scheduling_lock_wait_seconds',
    'Time spent acquiring resource locks',
    ['backend'],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    registry=registry
)

# ==============================================================================
# QUEUE METRICS
# ==============================================================================

QUEUE_ATTEMPTS = Counter(
    'reschedule_queue_attempts_total',
    'Matching attempts by outcome',
    ['outcome'],  # rebooked, match_exhausted, conflict, busy, dropped
    registry=registry
)

QUEUE_ESCALATIONS = Counter(
    'reschedule_queue_escalations_total',
    'Entries moved to EscalationRequired',
    registry=registry
)

QUEUE_DEPTH = Gauge(
    'reschedule_queue_depth',
    'Entries currently queued or matching',
    registry=registry
)

# ==============================================================================
# EVENT METRICS
# ==============================================================================

EVENTS_PUBLISHED = Counter(
    'scheduling_events_published_total',
    'Events written to the outbox',
    ['event_type'],
    registry=registry
)

EVENT_DELIVERIES = Counter(
    'scheduling_event_deliveries_total',
    'Outbox delivery attempts by status',
    ['status'],  # delivered, failed
    registry=registry
)


# ==============================================================================
# HELPERS
# ==============================================================================

def observe_operation(operation: str, outcome: str):
    """Record a booking service operation"""
    BOOKING_OPERATIONS.labels(operation=operation, outcome=outcome).inc()


def observe_rejection(operation: str, code: str):
    """Record a rejected operation"""
    REJECTIONS.labels(operation=operation, code=code).inc()
    BOOKING_OPERATIONS.labels(operation=operation, outcome="rejected").inc()


def observe_lock_wait(backend: str, duration_seconds: float):
    """Record lock acquisition latency"""
    LOCK_WAIT_LATENCY.labels(backend=backend).observe(duration_seconds)


def observe_queue_attempt(outcome: str):
    """Record a matching attempt"""
    QUEUE_ATTEMPTS.labels(outcome=outcome).inc()


def observe_escalation():
    """Record an entry reaching EscalationRequired"""
    QUEUE_ESCALATIONS.inc()


def observe_queue_depth(depth: int):
    """Record current queue depth"""
    QUEUE_DEPTH.set(depth)


def observe_event_published(event_type: str):
    """Record an event written to the outbox"""
    EVENTS_PUBLISHED.labels(event_type=event_type).inc()


def observe_event_delivery(status: str):
    """Record an outbox delivery attempt"""
    EVENT_DELIVERIES.labels(status=status).inc()


# ==============================================================================
# METRICS ENDPOINT
# ==============================================================================

def get_metrics() -> tuple:
    """Generate Prometheus metrics output"""
    return generate_latest(registry), CONTENT_TYPE_LATEST
