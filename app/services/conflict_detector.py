"""
Conflict detection for candidate appointments.

Checks a proposed [start, end) for a doctor, unit and patient against every
active (Scheduled / PendingReschedule) appointment. Callers must hold the
resource locks for the candidate; the checker itself does no locking.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from app.exceptions import ConflictError
from app.models.scheduling import Appointment, ConflictResource
from app.services.appointment_store import AppointmentRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """Proposed appointment placement."""
    doctor_id: str
    unit_id: str
    patient_id: str
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Conflict:
    """First resource found busy and the appointment occupying it."""
    resource: ConflictResource
    conflicting_appointment_id: str


class ConflictChecker:
    """Overlap checks in the fixed order doctor -> unit -> patient."""

    def __init__(self, appointments: AppointmentRepository):
        self.appointments = appointments

    def check(self, candidate: Candidate,
              exclude_appointment_id: Optional[str] = None) -> Optional[Conflict]:
        """
        Return the first conflict, or None when the candidate is free.

        Within a resource the earliest-starting overlapping appointment is
        reported.
        """
        lookups = (
            (ConflictResource.DOCTOR, self.appointments.list_for_doctor, candidate.doctor_id),
            (ConflictResource.UNIT, self.appointments.list_for_unit, candidate.unit_id),
            (ConflictResource.PATIENT, self.appointments.list_for_patient, candidate.patient_id),
        )

        for resource, lookup, resource_id in lookups:
            rows = lookup(resource_id, candidate.start, candidate.end)
            clashing = self._overlapping(rows, candidate, exclude_appointment_id)
            if clashing:
                first = min(clashing, key=lambda a: (a.start, a.id))
                logger.debug(
                    f"Conflict on {resource.value} {resource_id}: "
                    f"appointment {first.id} [{first.start} - {first.end})"
                )
                return Conflict(resource=resource, conflicting_appointment_id=first.id)

        return None

    def ensure_no_conflict(self, candidate: Candidate,
                           exclude_appointment_id: Optional[str] = None):
        """Raise ConflictError when ``check`` finds a conflict."""
        conflict = self.check(candidate, exclude_appointment_id)
        if conflict is not None:
            raise ConflictError(conflict.resource.value, conflict.conflicting_appointment_id)

    @staticmethod
    def _overlapping(rows: List[Appointment], candidate: Candidate,
                     exclude_appointment_id: Optional[str]) -> List[Appointment]:
        return [
            a for a in rows
            if a.id != exclude_appointment_id
            and a.is_active
            and a.overlaps(candidate.start, candidate.end)
        ]
