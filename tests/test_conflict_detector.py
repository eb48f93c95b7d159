"""
Tests for conflict detection
"""

import pytest

from app.exceptions import ConflictError
from app.models.scheduling import AppointmentStatus, ConflictResource
from app.services.appointment_store import InMemoryAppointmentRepository
from app.services.conflict_detector import Candidate, ConflictChecker
from tests.fixtures import MONDAY, at, make_appointment


@pytest.fixture
def store():
    return InMemoryAppointmentRepository()


@pytest.fixture
def checker(store):
    return ConflictChecker(store)


def candidate(doctor_id='doctor-1', unit_id='unit-1', patient_id='patient-1',
              start=None, end=None):
    return Candidate(
        doctor_id=doctor_id,
        unit_id=unit_id,
        patient_id=patient_id,
        start=start or at(MONDAY, 9),
        end=end or at(MONDAY, 9, 30),
    )


def test_free_candidate(checker):
    assert checker.check(candidate()) is None


def test_doctor_is_checked_first(store, checker):
    store.save(make_appointment(id='apt-1'))

    conflict = checker.check(candidate(patient_id='patient-1'))

    assert conflict.resource == ConflictResource.DOCTOR
    assert conflict.conflicting_appointment_id == 'apt-1'


def test_unit_conflict(store, checker):
    store.save(make_appointment(id='apt-1', doctor_id='doctor-2', patient_id='patient-2'))

    conflict = checker.check(candidate(start=at(MONDAY, 9, 15), end=at(MONDAY, 9, 45)))

    assert conflict.resource == ConflictResource.UNIT
    assert conflict.conflicting_appointment_id == 'apt-1'


def test_patient_conflict(store, checker):
    store.save(make_appointment(id='apt-1', doctor_id='doctor-2', unit_id='unit-2'))

    conflict = checker.check(candidate())

    assert conflict.resource == ConflictResource.PATIENT


def test_earliest_overlap_is_reported(store, checker):
    store.save(make_appointment(id='apt-late', patient_id='p2', start=at(MONDAY, 10), end=at(MONDAY, 10, 30)))
    store.save(make_appointment(id='apt-early', patient_id='p3', start=at(MONDAY, 9), end=at(MONDAY, 9, 30)))

    conflict = checker.check(candidate(patient_id='p4', start=at(MONDAY, 9), end=at(MONDAY, 11)))

    assert conflict.conflicting_appointment_id == 'apt-early'


def test_touching_intervals_do_not_conflict(store, checker):
    store.save(make_appointment(id='apt-1'))

    assert checker.check(candidate(start=at(MONDAY, 9, 30), end=at(MONDAY, 10))) is None
    assert checker.check(candidate(start=at(MONDAY, 8, 30), end=at(MONDAY, 9))) is None


@pytest.mark.parametrize('status', [AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED])
def test_inactive_appointments_do_not_conflict(store, checker, status):
    store.save(make_appointment(id='apt-1', status=status))

    assert checker.check(candidate()) is None


def test_pending_reschedule_still_conflicts(store, checker):
    store.save(make_appointment(id='apt-1', status=AppointmentStatus.PENDING_RESCHEDULE))

    assert checker.check(candidate()).resource == ConflictResource.DOCTOR


def test_excluded_appointment_is_ignored(store, checker):
    store.save(make_appointment(id='apt-1'))

    assert checker.check(candidate(), exclude_appointment_id='apt-1') is None


def test_ensure_no_conflict_raises(store, checker):
    store.save(make_appointment(id='apt-1', doctor_id='doctor-2', patient_id='patient-2'))

    with pytest.raises(ConflictError) as exc_info:
        checker.ensure_no_conflict(candidate())

    assert exc_info.value.resource == 'unit'
    assert exc_info.value.conflicting_appointment_id == 'apt-1'
    assert exc_info.value.to_dict()['error'] == 'conflict'
