"""
In-memory repositories for appointments and rescheduling queue entries.

These back the engine in single-process deployments and in tests. They keep
the same secondary indexes the Postgres schema declares:

- appointments by (doctor_id, start), (unit_id, start) and (patient_id, start)
- queue entries by (next_eligible_at, priority)

Records are copied on the way in and out so callers can never mutate stored
state without going through ``save``.
"""

import bisect
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from app.models.scheduling import (
    Appointment,
    QueueEntryState,
    RescheduleQueueEntry,
)

logger = logging.getLogger(__name__)


class AppointmentRepository:
    """Contract shared by the in-memory and Supabase appointment stores."""

    def get(self, appointment_id: str) -> Optional[Appointment]:
        raise NotImplementedError

    def save(self, appointment: Appointment) -> Appointment:
        raise NotImplementedError

    def list_for_doctor(self, doctor_id: str, start: datetime, end: datetime,
                        active_only: bool = True) -> List[Appointment]:
        raise NotImplementedError

    def list_for_unit(self, unit_id: str, start: datetime, end: datetime,
                      active_only: bool = True) -> List[Appointment]:
        raise NotImplementedError

    def list_for_patient(self, patient_id: str, start: datetime, end: datetime,
                         active_only: bool = True) -> List[Appointment]:
        raise NotImplementedError

    def list_in_range(self, start: datetime, end: datetime,
                      doctor_id: Optional[str] = None,
                      unit_id: Optional[str] = None) -> List[Appointment]:
        raise NotImplementedError


class QueueRepository:
    """Contract shared by the in-memory and Supabase queue stores."""

    def get_by_appointment(self, appointment_id: str) -> Optional[RescheduleQueueEntry]:
        raise NotImplementedError

    def save(self, entry: RescheduleQueueEntry) -> RescheduleQueueEntry:
        raise NotImplementedError

    def delete(self, appointment_id: str) -> bool:
        raise NotImplementedError

    def select_eligible(self, now: datetime, limit: int) -> List[RescheduleQueueEntry]:
        raise NotImplementedError

    def list_entries(self, state: Optional[QueueEntryState] = None,
                     clinic_id: Optional[str] = None,
                     doctor_id: Optional[str] = None) -> List[RescheduleQueueEntry]:
        raise NotImplementedError

    def count(self, state: QueueEntryState) -> int:
        raise NotImplementedError


class _StartIndex:
    """Sorted (start, appointment_id) keys per resource id."""

    def __init__(self):
        self._keys: Dict[str, List[Tuple[datetime, str]]] = defaultdict(list)

    def add(self, resource_id: str, start: datetime, appointment_id: str):
        bisect.insort(self._keys[resource_id], (start, appointment_id))

    def remove(self, resource_id: str, start: datetime, appointment_id: str):
        keys = self._keys.get(resource_id)
        if not keys:
            return
        pos = bisect.bisect_left(keys, (start, appointment_id))
        if pos < len(keys) and keys[pos] == (start, appointment_id):
            keys.pop(pos)

    def candidates(self, resource_id: str, start: datetime, end: datetime,
                   max_duration: timedelta) -> List[str]:
        """Ids whose start lies in [start - max_duration, end)."""
        keys = self._keys.get(resource_id)
        if not keys:
            return []
        lo = bisect.bisect_left(keys, (start - max_duration,))
        hi = bisect.bisect_left(keys, (end,))
        return [appointment_id for _, appointment_id in keys[lo:hi]]


class InMemoryAppointmentRepository(AppointmentRepository):
    """Appointment table with start-time indexes per doctor, unit and patient."""

    def __init__(self):
        self._rows: Dict[str, Appointment] = {}
        self._by_doctor = _StartIndex()
        self._by_unit = _StartIndex()
        self._by_patient = _StartIndex()
        self._max_duration = timedelta(0)

    def get(self, appointment_id: str) -> Optional[Appointment]:
        row = self._rows.get(appointment_id)
        return row.model_copy() if row else None

    def save(self, appointment: Appointment) -> Appointment:
        previous = self._rows.get(appointment.id)
        if previous is not None:
            self._unindex(previous)

        stored = appointment.model_copy()
        self._rows[stored.id] = stored
        self._index(stored)
        return stored.model_copy()

    def list_for_doctor(self, doctor_id, start, end, active_only=True):
        return self._query(self._by_doctor, doctor_id, start, end, active_only)

    def list_for_unit(self, unit_id, start, end, active_only=True):
        return self._query(self._by_unit, unit_id, start, end, active_only)

    def list_for_patient(self, patient_id, start, end, active_only=True):
        return self._query(self._by_patient, patient_id, start, end, active_only)

    def list_in_range(self, start, end, doctor_id=None, unit_id=None):
        if doctor_id:
            rows = self.list_for_doctor(doctor_id, start, end, active_only=False)
        elif unit_id:
            rows = self.list_for_unit(unit_id, start, end, active_only=False)
        else:
            rows = [r.model_copy() for r in self._rows.values() if r.overlaps(start, end)]
        if unit_id:
            rows = [r for r in rows if r.unit_id == unit_id]
        return sorted(rows, key=lambda r: (r.start, r.id))

    def _query(self, index: _StartIndex, resource_id: str, start: datetime,
               end: datetime, active_only: bool) -> List[Appointment]:
        results = []
        for appointment_id in index.candidates(resource_id, start, end, self._max_duration):
            row = self._rows[appointment_id]
            if active_only and not row.is_active:
                continue
            if row.overlaps(start, end):
                results.append(row.model_copy())
        return results

    def _index(self, row: Appointment):
        self._by_doctor.add(row.doctor_id, row.start, row.id)
        self._by_unit.add(row.unit_id, row.start, row.id)
        self._by_patient.add(row.patient_id, row.start, row.id)
        if row.duration > self._max_duration:
            self._max_duration = row.duration

    def _unindex(self, row: Appointment):
        self._by_doctor.remove(row.doctor_id, row.start, row.id)
        self._by_unit.remove(row.unit_id, row.start, row.id)
        self._by_patient.remove(row.patient_id, row.start, row.id)


class InMemoryQueueRepository(QueueRepository):
    """Queue entries keyed by appointment id with a (next_eligible_at, priority) index."""

    def __init__(self):
        self._rows: Dict[str, RescheduleQueueEntry] = {}
        # Only QUEUED entries are indexed; they are the only selectable ones
        self._eligibility: List[Tuple[datetime, int, datetime, str]] = []

    def get_by_appointment(self, appointment_id):
        row = self._rows.get(appointment_id)
        return row.model_copy() if row else None

    def save(self, entry):
        previous = self._rows.get(entry.appointment_id)
        if previous is not None:
            self._unindex(previous)
        stored = entry.model_copy()
        self._rows[stored.appointment_id] = stored
        if stored.state == QueueEntryState.QUEUED:
            bisect.insort(self._eligibility, self._key(stored))
        return stored.model_copy()

    def delete(self, appointment_id):
        previous = self._rows.pop(appointment_id, None)
        if previous is None:
            return False
        self._unindex(previous)
        return True

    def select_eligible(self, now, limit):
        cutoff = bisect.bisect_right(self._eligibility, (now, float("inf")))
        eligible = [self._rows[key[3]] for key in self._eligibility[:cutoff]]
        eligible.sort(key=lambda e: e.selection_key())
        return [e.model_copy() for e in eligible[:limit]]

    def list_entries(self, state=None, clinic_id=None, doctor_id=None):
        rows = [
            r for r in self._rows.values()
            if (state is None or r.state == state)
            and (clinic_id is None or r.clinic_id == clinic_id)
            and (doctor_id is None or r.doctor_id == doctor_id)
        ]
        rows.sort(key=lambda e: e.selection_key())
        return [r.model_copy() for r in rows]

    def count(self, state):
        if state == QueueEntryState.QUEUED:
            return len(self._eligibility)
        return sum(1 for r in self._rows.values() if r.state == state)

    @staticmethod
    def _key(entry: RescheduleQueueEntry):
        return (entry.next_eligible_at, -entry.priority, entry.enqueued_at, entry.appointment_id)

    def _unindex(self, entry: RescheduleQueueEntry):
        if entry.state != QueueEntryState.QUEUED:
            return
        key = self._key(entry)
        pos = bisect.bisect_left(self._eligibility, key)
        if pos < len(self._eligibility) and self._eligibility[pos] == key:
            self._eligibility.pop(pos)
