"""
Outbound event envelope for the Notification Gateway.

Delivery is at-least-once; receivers de-duplicate by ``event_id``.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AwareDatetime, BaseModel, Field


class EventType(str, Enum):
    BOOKED = "Booked"
    MODIFIED = "Modified"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"
    INVALIDATED_FOR_RESCHEDULE = "InvalidatedForReschedule"
    REBOOKED = "Rebooked"
    ESCALATION_REQUIRED = "EscalationRequired"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class SchedulingEvent(BaseModel):
    """State-change event emitted by the booking service and the queue."""
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    appointment_id: str
    occurred_at: AwareDatetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)


class OutboxRecord(BaseModel):
    """Outbox row wrapping an event with its delivery bookkeeping."""
    event: SchedulingEvent
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    delivered_at: Optional[AwareDatetime] = None
