"""
Tests for the HTTP surface: appointments, availability, queue and webhooks
"""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from app import config
from app.app_factory import create_app
from app.exceptions import StoreError
from app.services.appointment_store import InMemoryAppointmentRepository
from app.services.scheduling_service import get_engine
from tests.fixtures import (
    MONDAY,
    at,
    closed_on,
    create_test_clinic,
    create_test_doctor,
    create_test_engine,
)


class BrokenAppointmentRepository(InMemoryAppointmentRepository):

    def save(self, appointment):
        raise StoreError("appointments table unavailable")


def client_for(engine):
    app = create_app(use_lifespan=False)
    app.dependency_overrides[get_engine] = lambda: engine
    return TestClient(app)


@pytest.fixture
def client(engine):
    return client_for(engine)


def booking_body(patient_id='patient-1', doctor_id='doctor-1', unit_id='unit-1',
                 start=None, end=None):
    return {
        'patient_id': patient_id,
        'doctor_id': doctor_id,
        'unit_id': unit_id,
        'start': (start or at(MONDAY, 9)).isoformat(),
        'end': (end or at(MONDAY, 9, 30)).isoformat(),
    }


class TestAppointments:

    def test_book_returns_201(self, client):
        response = client.post('/api/appointments', json=booking_body())

        assert response.status_code == 201
        data = response.json()
        assert data['status'] == 'scheduled'
        assert data['version'] == 1

    def test_conflict_returns_409_with_resource(self, client):
        first = client.post('/api/appointments', json=booking_body(patient_id='P1')).json()

        response = client.post('/api/appointments', json=booking_body(
            patient_id='P2', doctor_id='doctor-2',
            start=at(MONDAY, 9, 15), end=at(MONDAY, 9, 45),
        ))

        assert response.status_code == 409
        detail = response.json()['detail']
        assert detail['error'] == 'conflict'
        assert detail['resource'] == 'unit'
        assert detail['conflicting_appointment_id'] == first['id']

    def test_outside_working_hours_returns_422(self, client):
        response = client.post('/api/appointments', json=booking_body(
            start=at(MONDAY, 14), end=at(MONDAY, 14, 30),
        ))

        assert response.status_code == 422
        assert response.json()['detail']['error'] == 'validation_error'

    def test_naive_datetime_rejected(self, client):
        body = booking_body()
        body['start'] = '2030-01-07T09:00:00'

        assert client.post('/api/appointments', json=body).status_code == 422

    def test_get_and_not_found(self, client):
        created = client.post('/api/appointments', json=booking_body()).json()

        assert client.get(f"/api/appointments/{created['id']}").json()['id'] == created['id']
        response = client.get('/api/appointments/apt-404')
        assert response.status_code == 404
        assert response.json()['detail']['error'] == 'not_found'

    def test_list_by_date(self, client):
        client.post('/api/appointments', json=booking_body())

        response = client.get('/api/appointments', params={
            'start_date': MONDAY.isoformat(), 'end_date': MONDAY.isoformat(), 'doctor_id': 'doctor-1',
        })

        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_modify_with_stale_version_returns_409(self, client):
        created = client.post('/api/appointments', json=booking_body()).json()
        path = f"/api/appointments/{created['id']}"
        move = {
            'expected_version': 1,
            'start': at(MONDAY, 10).isoformat(),
            'end': at(MONDAY, 10, 30).isoformat(),
        }

        assert client.patch(path, json=move).json()['version'] == 2
        response = client.patch(path, json=move)

        assert response.status_code == 409
        assert response.json()['detail']['error'] == 'stale_version'
        assert response.json()['detail']['current_version'] == 2

    def test_cancel_complete_and_request_reschedule(self, client):
        one = client.post('/api/appointments', json=booking_body(patient_id='P1')).json()
        two = client.post('/api/appointments', json=booking_body(
            patient_id='P2', start=at(MONDAY, 10), end=at(MONDAY, 10, 30),
        )).json()
        three = client.post('/api/appointments', json=booking_body(
            patient_id='P3', start=at(MONDAY, 11), end=at(MONDAY, 11, 30),
        )).json()

        cancelled = client.post(f"/api/appointments/{one['id']}/cancel",
                                json={'expected_version': 1, 'reason': 'sick'})
        completed = client.post(f"/api/appointments/{two['id']}/complete",
                                json={'expected_version': 1})
        pending = client.post(f"/api/appointments/{three['id']}/request-reschedule",
                              json={'expected_version': 1})

        assert cancelled.json()['status'] == 'cancelled'
        assert completed.json()['status'] == 'completed'
        assert pending.json()['status'] == 'pending_reschedule'

    def test_store_failure_returns_503_with_retry_after(self):
        engine = create_test_engine(appointments=BrokenAppointmentRepository())

        response = client_for(engine).post('/api/appointments', json=booking_body())

        assert response.status_code == 503
        assert response.headers['Retry-After'] == '1'
        assert response.json()['detail']['error'] == 'busy'


class TestAvailability:

    def test_open_windows(self, client):
        client.post('/api/appointments', json=booking_body())

        response = client.get('/api/availability', params={
            'doctor_id': 'doctor-1', 'unit_id': 'unit-1', 'date': MONDAY.isoformat(),
        })

        assert response.status_code == 200
        windows = response.json()['windows']
        assert len(windows) == 1
        assert windows[0]['start'].startswith('2030-01-07T09:30')

    def test_unknown_doctor(self, client):
        response = client.get('/api/availability', params={
            'doctor_id': 'doctor-404', 'unit_id': 'unit-1', 'date': MONDAY.isoformat(),
        })
        assert response.status_code == 422


class TestReschedulingQueueApi:

    def test_list_snooze_and_retry(self, client):
        created = client.post('/api/appointments', json=booking_body()).json()
        client.post(f"/api/appointments/{created['id']}/request-reschedule",
                    json={'expected_version': 1})

        listing = client.get('/api/rescheduling-queue', params={'state': 'queued'}).json()
        assert listing['total'] == 1
        assert listing['items'][0]['reason'] == 'patient_requested'

        snoozed = client.post(f"/api/rescheduling-queue/{created['id']}/snooze",
                              json={'number': 1, 'time_unit': 'weeks'})
        assert snoozed.status_code == 200
        assert snoozed.json()['next_eligible_at'].startswith('2030-01-13T12:00')

        retry = client.post(f"/api/rescheduling-queue/{created['id']}/retry")
        assert retry.status_code == 422

    def test_snooze_unknown_entry(self, client):
        response = client.post('/api/rescheduling-queue/apt-404/snooze',
                               json={'number': 1, 'time_unit': 'days'})
        assert response.status_code == 404

    def test_limit_bounds(self, client):
        assert client.get('/api/rescheduling-queue', params={'limit': 500}).status_code == 422


class TestMasterDataWebhooks:

    def test_schedule_changed(self, engine, client):
        created = client.post('/api/appointments', json=booking_body()).json()
        engine.directory.upsert_doctor(create_test_doctor(exceptions=[closed_on(MONDAY)]))

        response = client.post('/webhooks/master-data/schedule-changed', json={
            'doctor_id': 'doctor-1',
            'start_date': MONDAY.isoformat(),
            'end_date': MONDAY.isoformat(),
        })

        assert response.status_code == 200
        assert response.json()['invalidated_appointment_ids'] == [created['id']]

    def test_unit_closed(self, client):
        created = client.post('/api/appointments', json=booking_body()).json()

        response = client.post('/webhooks/master-data/unit-closed', json={
            'unit_id': 'unit-1',
            'start': at(MONDAY, 0).isoformat(),
            'end': at(MONDAY, 23).isoformat(),
        })

        assert response.json()['invalidated_appointment_ids'] == [created['id']]

    def test_inverted_range_rejected(self, client):
        response = client.post('/webhooks/master-data/unit-closed', json={
            'unit_id': 'unit-1',
            'start': at(MONDAY, 23).isoformat(),
            'end': at(MONDAY, 0).isoformat(),
        })
        assert response.status_code == 422

    def test_signature_required_when_secret_set(self, client, monkeypatch):
        monkeypatch.setattr(config, 'MASTER_DATA_WEBHOOK_SECRET', 'shh')
        body = json.dumps({
            'doctor_id': 'doctor-1',
            'start_date': MONDAY.isoformat(),
            'end_date': MONDAY.isoformat(),
        }).encode()
        signature = hmac.new(b'shh', body, hashlib.sha256).hexdigest()
        headers = {'Content-Type': 'application/json'}

        unsigned = client.post('/webhooks/master-data/schedule-changed', content=body, headers=headers)
        signed = client.post('/webhooks/master-data/schedule-changed', content=body,
                             headers={**headers, 'X-Signature': signature})

        assert unsigned.status_code == 401
        assert signed.status_code == 200


class TestServiceEndpoints:

    def test_health(self, client):
        assert client.get('/health').json() == {'status': 'healthy', 'service': 'scheduling-engine'}

    def test_metrics(self, client):
        client.post('/api/appointments', json=booking_body())

        response = client.get('/metrics')

        assert response.status_code == 200
        assert 'scheduling_operations_total' in response.text


def test_clinic_timezone_in_availability():
    engine = create_test_engine(
        clinics=[create_test_clinic(timezone='Europe/Madrid')],
        doctors=[create_test_doctor()],
    )

    response = client_for(engine).get('/api/availability', params={
        'doctor_id': 'doctor-1', 'unit_id': 'unit-1', 'date': MONDAY.isoformat(),
    })

    assert response.json()['windows'][0]['start'].startswith('2030-01-07T09:00:00+01:00')
