"""
Supabase-backed repositories and master-data directory.

Tables (see migrations/001_scheduling_engine.sql):
- appointments       indexed on (doctor_id, starts_at), (unit_id, starts_at), (patient_id, starts_at)
- reschedule_queue   indexed on (next_eligible_at, priority)
- clinics, units, doctors  (read-only master data)

Every client failure is re-raised as StoreError; the booking service turns
it into a retryable Busy rejection.
"""

import logging
from datetime import datetime
from typing import List, Optional

from app.exceptions import StoreError
from app.models.scheduling import (
    ACTIVE_STATUSES,
    Appointment,
    Clinic,
    Doctor,
    DoctorSchedule,
    QueueEntryState,
    RescheduleQueueEntry,
    TimeRange,
    Unit,
)
from app.services.appointment_store import AppointmentRepository, QueueRepository
from app.services.master_data import MasterDataDirectory

logger = logging.getLogger(__name__)

APPOINTMENTS_TABLE = "appointments"
QUEUE_TABLE = "reschedule_queue"

_ACTIVE = [s.value for s in ACTIVE_STATUSES]


def _appointment_to_row(appointment: Appointment) -> dict:
    row = appointment.model_dump(mode="json")
    row["starts_at"] = row.pop("start")
    row["ends_at"] = row.pop("end")
    return row


def _appointment_from_row(row: dict) -> Appointment:
    data = dict(row)
    data["start"] = data.pop("starts_at")
    data["end"] = data.pop("ends_at")
    return Appointment.model_validate(data)


class SupabaseAppointmentRepository(AppointmentRepository):
    """Appointments in the ``appointments`` table."""

    def __init__(self, client):
        self.client = client

    def get(self, appointment_id):
        try:
            result = self.client.table(APPOINTMENTS_TABLE).select('*').eq(
                'id', appointment_id
            ).limit(1).execute()
        except Exception as e:
            raise StoreError(f"Failed to load appointment {appointment_id}", e) from e
        rows = result.data or []
        return _appointment_from_row(rows[0]) if rows else None

    def save(self, appointment):
        try:
            result = self.client.table(APPOINTMENTS_TABLE).upsert(
                _appointment_to_row(appointment), on_conflict='id'
            ).execute()
        except Exception as e:
            raise StoreError(f"Failed to save appointment {appointment.id}", e) from e
        if not result.data:
            raise StoreError(f"Saving appointment {appointment.id} returned no data")
        return _appointment_from_row(result.data[0])

    def list_for_doctor(self, doctor_id, start, end, active_only=True):
        return self._overlapping('doctor_id', doctor_id, start, end, active_only)

    def list_for_unit(self, unit_id, start, end, active_only=True):
        return self._overlapping('unit_id', unit_id, start, end, active_only)

    def list_for_patient(self, patient_id, start, end, active_only=True):
        return self._overlapping('patient_id', patient_id, start, end, active_only)

    def list_in_range(self, start, end, doctor_id=None, unit_id=None):
        try:
            query = self.client.table(APPOINTMENTS_TABLE).select('*').lt(
                'starts_at', end.isoformat()
            ).gt('ends_at', start.isoformat())
            if doctor_id:
                query = query.eq('doctor_id', doctor_id)
            if unit_id:
                query = query.eq('unit_id', unit_id)
            result = query.order('starts_at').execute()
        except Exception as e:
            raise StoreError("Failed to list appointments", e) from e
        return [_appointment_from_row(row) for row in (result.data or [])]

    def _overlapping(self, column: str, value: str, start: datetime, end: datetime,
                     active_only: bool) -> List[Appointment]:
        try:
            query = self.client.table(APPOINTMENTS_TABLE).select('*').eq(
                column, value
            ).lt('starts_at', end.isoformat()).gt('ends_at', start.isoformat())
            if active_only:
                query = query.in_('status', _ACTIVE)
            result = query.order('starts_at').execute()
        except Exception as e:
            raise StoreError(f"Failed to list appointments by {column}", e) from e
        return [_appointment_from_row(row) for row in (result.data or [])]


class SupabaseQueueRepository(QueueRepository):
    """Queue entries in the ``reschedule_queue`` table."""

    def __init__(self, client):
        self.client = client

    def get_by_appointment(self, appointment_id):
        try:
            result = self.client.table(QUEUE_TABLE).select('*').eq(
                'appointment_id', appointment_id
            ).limit(1).execute()
        except Exception as e:
            raise StoreError(f"Failed to load queue entry for {appointment_id}", e) from e
        rows = result.data or []
        return RescheduleQueueEntry.model_validate(rows[0]) if rows else None

    def save(self, entry):
        row = entry.model_dump(mode="json")
        row["priority"] = entry.priority
        try:
            result = self.client.table(QUEUE_TABLE).upsert(row, on_conflict='appointment_id').execute()
        except Exception as e:
            raise StoreError(f"Failed to save queue entry for {entry.appointment_id}", e) from e
        if not result.data:
            raise StoreError(f"Saving queue entry for {entry.appointment_id} returned no data")
        return RescheduleQueueEntry.model_validate(result.data[0])

    def delete(self, appointment_id):
        try:
            result = self.client.table(QUEUE_TABLE).delete().eq(
                'appointment_id', appointment_id
            ).execute()
        except Exception as e:
            raise StoreError(f"Failed to delete queue entry for {appointment_id}", e) from e
        return bool(result.data)

    def select_eligible(self, now, limit):
        try:
            result = self.client.table(QUEUE_TABLE).select('*').eq(
                'state', QueueEntryState.QUEUED.value
            ).lte(
                'next_eligible_at', now.isoformat()
            ).order('priority', desc=True).order('enqueued_at').limit(limit).execute()
        except Exception as e:
            raise StoreError("Failed to select eligible queue entries", e) from e
        entries = [RescheduleQueueEntry.model_validate(row) for row in (result.data or [])]
        entries.sort(key=lambda e: e.selection_key())
        return entries

    def list_entries(self, state=None, clinic_id=None, doctor_id=None):
        try:
            query = self.client.table(QUEUE_TABLE).select('*')
            if state is not None:
                query = query.eq('state', state.value)
            if clinic_id:
                query = query.eq('clinic_id', clinic_id)
            if doctor_id:
                query = query.eq('doctor_id', doctor_id)
            result = query.order('priority', desc=True).order('enqueued_at').execute()
        except Exception as e:
            raise StoreError("Failed to list queue entries", e) from e
        entries = [RescheduleQueueEntry.model_validate(row) for row in (result.data or [])]
        entries.sort(key=lambda e: e.selection_key())
        return entries

    def count(self, state):
        try:
            result = self.client.table(QUEUE_TABLE).select(
                'appointment_id', count='exact'
            ).eq('state', state.value).limit(1).execute()
        except Exception as e:
            raise StoreError(f"Failed to count {state.value} queue entries", e) from e
        return result.count or 0


class SupabaseMasterData(MasterDataDirectory):
    """Read-only view of the clinics, units and doctors tables."""

    def __init__(self, client):
        self.client = client

    def get_clinic(self, clinic_id):
        row = self._one('clinics', clinic_id)
        if row is None:
            return None
        units = self._select('units', 'clinic_id', clinic_id)
        return Clinic(
            id=row['id'],
            name=row['name'],
            timezone=row.get('timezone') or 'UTC',
            units=[self._unit(u) for u in units],
            min_duration_minutes=row.get('min_duration_minutes'),
            max_duration_minutes=row.get('max_duration_minutes'),
        )

    def get_unit(self, unit_id):
        row = self._one('units', unit_id)
        return self._unit(row) if row else None

    def get_doctor(self, doctor_id):
        row = self._one('doctors', doctor_id)
        if row is None:
            return None
        return Doctor(
            id=row['id'],
            name=row['name'],
            specialty=row.get('specialty') or '',
            default_clinic_id=row['default_clinic_id'],
            default_unit_id=row.get('default_unit_id'),
            schedule=DoctorSchedule.model_validate(row.get('schedule') or {}),
        )

    def units_for_clinic(self, clinic_id):
        return [self._unit(u) for u in self._select('units', 'clinic_id', clinic_id)]

    @staticmethod
    def _unit(row: dict) -> Unit:
        return Unit(
            id=row['id'],
            clinic_id=row['clinic_id'],
            name=row['name'],
            is_active=row.get('is_active', True),
            closures=[TimeRange.model_validate(c) for c in (row.get('closures') or [])],
        )

    def _one(self, table: str, row_id: str) -> Optional[dict]:
        rows = self._select(table, 'id', row_id, limit=1)
        return rows[0] if rows else None

    def _select(self, table: str, column: str, value: str, limit: Optional[int] = None) -> List[dict]:
        try:
            query = self.client.table(table).select('*').eq(column, value)
            if limit:
                query = query.limit(limit)
            result = query.execute()
        except Exception as e:
            raise StoreError(f"Failed to read {table}", e) from e
        return result.data or []
