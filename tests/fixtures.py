"""
Test fixtures for the scheduling engine
"""

import random
import uuid
from datetime import date, datetime, time, timedelta, timezone

from app.config import SchedulingSettings
from app.models.scheduling import (
    Appointment,
    AppointmentStatus,
    Clinic,
    Doctor,
    DoctorSchedule,
    QueueEntryState,
    RescheduleQueueEntry,
    RescheduleReason,
    ScheduleException,
    Unit,
    WeeklyWindow,
)
from app.services.appointment_store import InMemoryAppointmentRepository, InMemoryQueueRepository
from app.services.master_data import InMemoryMasterData
from app.services.outbox_service import InMemoryOutbox
from app.services.scheduling_service import assemble_engine

# Sample test data (2030-01-07 is a Monday)
TEST_CLINIC_ID = 'clinic-001'
SUNDAY = date(2030, 1, 6)
MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)
WEDNESDAY = date(2030, 1, 9)


def at(day: date, hour: int, minute: int = 0, tz=timezone.utc) -> datetime:
    """Aware datetime on ``day`` at hour:minute."""
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


class FakeClock:
    """Settable clock injected into the engine."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def window(weekday: int, start: str, end: str) -> WeeklyWindow:
    return WeeklyWindow(
        weekday=weekday,
        start_time=time.fromisoformat(start),
        end_time=time.fromisoformat(end),
    )


def closed_on(day: date, start: str = None, end: str = None) -> ScheduleException:
    return ScheduleException(
        date=day,
        kind='closed',
        start_time=time.fromisoformat(start) if start else None,
        end_time=time.fromisoformat(end) if end else None,
    )


def open_on(day: date, start: str, end: str) -> ScheduleException:
    return ScheduleException(
        date=day, kind='open',
        start_time=time.fromisoformat(start), end_time=time.fromisoformat(end),
    )


def create_test_unit(**kwargs) -> Unit:
    """Create a test unit"""
    return Unit(
        id=kwargs.get('id', 'unit-1'),
        clinic_id=kwargs.get('clinic_id', TEST_CLINIC_ID),
        name=kwargs.get('name', 'Gabinete 1'),
        is_active=kwargs.get('is_active', True),
        closures=kwargs.get('closures', []),
    )


def create_test_clinic(**kwargs) -> Clinic:
    """Create a test clinic with two units"""
    clinic_id = kwargs.get('id', TEST_CLINIC_ID)
    units = kwargs.get('units', [
        create_test_unit(id='unit-1', clinic_id=clinic_id, name='Gabinete 1'),
        create_test_unit(id='unit-2', clinic_id=clinic_id, name='Gabinete 2'),
    ])
    return Clinic(
        id=clinic_id,
        name=kwargs.get('name', 'Test Dental Clinic'),
        timezone=kwargs.get('timezone', 'UTC'),
        units=units,
        min_duration_minutes=kwargs.get('min_duration_minutes'),
        max_duration_minutes=kwargs.get('max_duration_minutes'),
    )


def create_test_doctor(**kwargs) -> Doctor:
    """Create a test doctor working Mondays 09:00-12:00 by default"""
    return Doctor(
        id=kwargs.get('id', 'doctor-1'),
        name=kwargs.get('name', 'Dra. García'),
        specialty=kwargs.get('specialty', 'general'),
        default_clinic_id=kwargs.get('default_clinic_id', TEST_CLINIC_ID),
        default_unit_id=kwargs.get('default_unit_id', 'unit-1'),
        schedule=DoctorSchedule(
            windows=kwargs.get('windows', [window(0, '09:00', '12:00')]),
            exceptions=kwargs.get('exceptions', []),
        ),
    )


def make_appointment(**kwargs) -> Appointment:
    """Create an appointment record (not validated against master data)"""
    start = kwargs.get('start', at(MONDAY, 9))
    end = kwargs.get('end', start + timedelta(minutes=30))
    created = kwargs.get('created_at', at(SUNDAY, 12))
    return Appointment(
        id=kwargs.get('id', str(uuid.uuid4())),
        patient_id=kwargs.get('patient_id', 'patient-1'),
        doctor_id=kwargs.get('doctor_id', 'doctor-1'),
        unit_id=kwargs.get('unit_id', 'unit-1'),
        clinic_id=kwargs.get('clinic_id', TEST_CLINIC_ID),
        start=start,
        end=end,
        status=kwargs.get('status', AppointmentStatus.SCHEDULED),
        version=kwargs.get('version', 1),
        treatment_type=kwargs.get('treatment_type', 'cleaning'),
        created_at=created,
        updated_at=created,
    )


def make_queue_entry(appointment_id: str, **kwargs) -> RescheduleQueueEntry:
    """Create a queue entry record directly"""
    enqueued = kwargs.get('enqueued_at', at(SUNDAY, 12))
    return RescheduleQueueEntry(
        id=kwargs.get('id', str(uuid.uuid4())),
        appointment_id=appointment_id,
        doctor_id=kwargs.get('doctor_id', 'doctor-1'),
        unit_id=kwargs.get('unit_id', 'unit-1'),
        clinic_id=kwargs.get('clinic_id', TEST_CLINIC_ID),
        patient_id=kwargs.get('patient_id', 'patient-1'),
        reason=kwargs.get('reason', RescheduleReason.DOCTOR_UNAVAILABLE),
        state=kwargs.get('state', QueueEntryState.QUEUED),
        enqueued_at=enqueued,
        attempt_count=kwargs.get('attempt_count', 0),
        next_eligible_at=kwargs.get('next_eligible_at', enqueued),
        updated_at=enqueued,
    )


def fast_settings(**kwargs) -> SchedulingSettings:
    """Settings with short timeouts and deterministic concurrency"""
    values = dict(
        worker_concurrency=2,
        lock_timeout_seconds=1.0,
        match_timeout_seconds=5.0,
        poll_interval_seconds=0.01,
    )
    values.update(kwargs)
    return SchedulingSettings(**values)


def create_test_engine(clinics=None, doctors=None, settings=None, clock=None,
                       appointments=None, queue_store=None, locks=None):
    """In-memory engine over the given master data"""
    directory = InMemoryMasterData(
        clinics=clinics if clinics is not None else [create_test_clinic()],
        doctors=doctors if doctors is not None else [create_test_doctor()],
    )
    return assemble_engine(
        directory,
        appointments or InMemoryAppointmentRepository(),
        queue_store or InMemoryQueueRepository(),
        InMemoryOutbox(),
        locks=locks,
        settings=settings or fast_settings(),
        clock=clock or FakeClock(at(SUNDAY, 12)),
        rng=random.Random(42),
    )


def event_types(engine):
    """Published event type names, in order"""
    return [e.event_type.value for e in engine.events.events]
