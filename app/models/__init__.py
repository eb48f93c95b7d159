"""Data models for the scheduling engine."""
from app.models.events import EventType, SchedulingEvent
from app.models.scheduling import (
    Appointment,
    AppointmentStatus,
    Clinic,
    Doctor,
    RescheduleQueueEntry,
    RescheduleReason,
    Unit,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "Clinic",
    "Doctor",
    "EventType",
    "RescheduleQueueEntry",
    "RescheduleReason",
    "SchedulingEvent",
    "Unit",
]
