"""
Pydantic models for the scheduling engine.

Master data (Clinic, Unit, Doctor) is read-only from the engine's point of
view. Appointment and RescheduleQueueEntry are the only mutable records; they
reference other entities by id only.
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import AwareDatetime, BaseModel, Field, model_validator


class AppointmentStatus(str, Enum):
    """Appointment lifecycle status."""
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    PENDING_RESCHEDULE = "pending_reschedule"


# Statuses that occupy doctor/unit/patient time
ACTIVE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.PENDING_RESCHEDULE})


class RescheduleReason(str, Enum):
    """Why an appointment entered the rescheduling queue."""
    PATIENT_REQUESTED = "patient_requested"
    DOCTOR_UNAVAILABLE = "doctor_unavailable"
    UNIT_CLOSED = "unit_closed"


REASON_PRIORITY: Dict[RescheduleReason, int] = {
    RescheduleReason.PATIENT_REQUESTED: 3,
    RescheduleReason.DOCTOR_UNAVAILABLE: 2,
    RescheduleReason.UNIT_CLOSED: 1,
}


class QueueEntryState(str, Enum):
    """Rescheduling queue entry state. Rebooked entries are removed, not stored."""
    QUEUED = "queued"
    MATCHING = "matching"
    ESCALATION_REQUIRED = "escalation_required"


class ExceptionKind(str, Enum):
    """One-off schedule exception type."""
    CLOSED = "closed"
    OPEN = "open"


class ConflictResource(str, Enum):
    """Resource checked for overlaps, in check order."""
    DOCTOR = "doctor"
    UNIT = "unit"
    PATIENT = "patient"


# =============================================================================
# Time ranges
# =============================================================================

class TimeRange(BaseModel):
    """Half-open [start, end) datetime interval."""
    start: AwareDatetime = Field(..., description="Inclusive start")
    end: AwareDatetime = Field(..., description="Exclusive end")

    @model_validator(mode="after")
    def _check_order(self):
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


class DateRange(BaseModel):
    """Inclusive range of calendar dates."""
    start_date: date = Field(..., description="First affected date")
    end_date: date = Field(..., description="Last affected date (inclusive)")

    @model_validator(mode="after")
    def _check_order(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


# =============================================================================
# Master data
# =============================================================================

class WeeklyWindow(BaseModel):
    """Recurring weekly availability window (weekday 0 = Monday)."""
    weekday: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _check_order(self):
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self


class ScheduleException(BaseModel):
    """
    One-off exception for a single date.

    A closed exception without times closes the whole day; with times it
    blocks that range. An open exception replaces the recurring windows for
    the date with its own window.
    """
    date: date
    kind: ExceptionKind
    start_time: Optional[time] = None
    end_time: Optional[time] = None

    @model_validator(mode="after")
    def _check_window(self):
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("start_time and end_time must be given together")
        if self.kind == ExceptionKind.OPEN and self.start_time is None:
            raise ValueError("open exceptions need a window")
        if self.start_time is not None and self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time")
        return self

    @property
    def whole_day(self) -> bool:
        return self.start_time is None


class DoctorSchedule(BaseModel):
    """Recurring windows layered with dated exceptions."""
    windows: List[WeeklyWindow] = Field(default_factory=list)
    exceptions: List[ScheduleException] = Field(default_factory=list)

    def windows_for(self, weekday: int) -> List[WeeklyWindow]:
        return [w for w in self.windows if w.weekday == weekday]

    def exceptions_on(self, day: date) -> List[ScheduleException]:
        return [e for e in self.exceptions if e.date == day]


class Unit(BaseModel):
    """Physical treatment room."""
    id: str
    clinic_id: str
    name: str
    is_active: bool = True
    closures: List[TimeRange] = Field(default_factory=list)


class Clinic(BaseModel):
    """Clinic with its units; min/max override the engine defaults when set."""
    id: str
    name: str
    timezone: str = "UTC"
    units: List[Unit] = Field(default_factory=list)
    min_duration_minutes: Optional[int] = Field(None, gt=0)
    max_duration_minutes: Optional[int] = Field(None, gt=0)


class Doctor(BaseModel):
    """Doctor with a weekly schedule."""
    id: str
    name: str
    specialty: str = ""
    default_clinic_id: str
    default_unit_id: Optional[str] = None
    schedule: DoctorSchedule = Field(default_factory=DoctorSchedule)


# =============================================================================
# Mutable records
# =============================================================================

class Appointment(BaseModel):
    """Booked appointment occupying [start, end) for a doctor, unit and patient."""
    id: str
    patient_id: str
    doctor_id: str
    unit_id: str
    clinic_id: str
    start: AwareDatetime
    end: AwareDatetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    version: int = Field(1, ge=1)
    treatment_type: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: AwareDatetime
    updated_at: AwareDatetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end


class RescheduleQueueEntry(BaseModel):
    """Backlog entry for an appointment waiting for a new slot."""
    id: str
    appointment_id: str
    doctor_id: str
    unit_id: str
    clinic_id: str
    patient_id: str
    reason: RescheduleReason
    state: QueueEntryState = QueueEntryState.QUEUED
    enqueued_at: AwareDatetime
    attempt_count: int = 0
    next_eligible_at: AwareDatetime
    last_error: Optional[str] = None
    updated_at: AwareDatetime

    @property
    def priority(self) -> int:
        return REASON_PRIORITY[self.reason]

    def selection_key(self):
        """Higher priority first, then FIFO within a reason class."""
        return (-self.priority, self.enqueued_at, self.appointment_id)


# =============================================================================
# Request / response bodies
# =============================================================================

class BookingRequest(BaseModel):
    """Request to book a new appointment."""
    patient_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    unit_id: str = Field(..., min_length=1)
    start: AwareDatetime
    end: AwareDatetime
    treatment_type: Optional[str] = None


class ModifyRequest(BaseModel):
    """Move an appointment in time and/or to another unit."""
    expected_version: int = Field(..., ge=1)
    start: Optional[AwareDatetime] = None
    end: Optional[AwareDatetime] = None
    unit_id: Optional[str] = None


class VersionedActionRequest(BaseModel):
    """Body for cancel/complete/request-reschedule."""
    expected_version: int = Field(..., ge=1)
    reason: Optional[str] = None


class SnoozeRequest(BaseModel):
    """Defer a queue entry, mirroring the front-desk snooze dialog."""
    number: int = Field(..., gt=0)
    time_unit: Literal["days", "weeks", "months"] = "days"


class ScheduleChangedNotice(BaseModel):
    """Master-data notice: a doctor's schedule changed for these dates."""
    doctor_id: str
    start_date: date
    end_date: date


class UnitClosedNotice(BaseModel):
    """Master-data notice: a unit is closed for this interval."""
    unit_id: str
    start: AwareDatetime
    end: AwareDatetime


class AvailabilityResponse(BaseModel):
    """Open windows for a doctor+unit pair on a date."""
    doctor_id: str
    unit_id: str
    date: date
    windows: List[TimeRange]


class InvalidationResponse(BaseModel):
    """Appointments moved to the rescheduling queue by a master-data notice."""
    invalidated_appointment_ids: List[str]


class QueuePage(BaseModel):
    """Paginated rescheduling queue listing."""
    items: List[RescheduleQueueEntry]
    total: int
    page: int
    limit: int
