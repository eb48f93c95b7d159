"""
Observability Module

Provides Prometheus metrics for the scheduling engine.
"""

from .metrics import (
    observe_operation,
    observe_rejection,
    observe_lock_wait,
    observe_queue_attempt,
    observe_escalation,
    observe_queue_depth,
    observe_event_published,
    observe_event_delivery,
    get_metrics,
)

__all__ = [
    "observe_operation",
    "observe_rejection",
    "observe_lock_wait",
    "observe_queue_attempt",
    "observe_escalation",
    "observe_queue_depth",
    "observe_event_published",
    "observe_event_delivery",
    "get_metrics",
]
