"""
Shared pytest fixtures
"""

import pytest

from tests.fixtures import (
    SUNDAY,
    FakeClock,
    at,
    create_test_clinic,
    create_test_doctor,
    create_test_engine,
)


@pytest.fixture
def clock():
    """Clock fixed at Sunday 2030-01-06 12:00 UTC"""
    return FakeClock(at(SUNDAY, 12))


@pytest.fixture
def engine(clock):
    """In-memory engine: one clinic (unit-1, unit-2), doctor-1 and doctor-2 on Mondays 09-12"""
    return create_test_engine(
        clinics=[create_test_clinic()],
        doctors=[
            create_test_doctor(id='doctor-1', name='Dra. García'),
            create_test_doctor(id='doctor-2', name='Dr. López'),
        ],
        clock=clock,
    )

