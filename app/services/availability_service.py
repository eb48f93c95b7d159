"""
Availability Service

Computes open [start, end) windows for a doctor+unit pair:
- Doctor recurring weekly windows (merged)
- Open-override exceptions replacing the recurring windows for a date
- Closed exceptions and unit closures subtracted
- Active (Scheduled / PendingReschedule) appointments of the doctor or unit subtracted

Wall-clock schedule times are interpreted in the clinic timezone (ZoneInfo).
The resolver is read-only; it never mutates appointments or master data.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.exceptions import ValidationError
from app.models.scheduling import Doctor, ExceptionKind, TimeRange, Unit
from app.services.appointment_store import AppointmentRepository
from app.services.intervals import Interval, contains, subtract_all
from app.services.master_data import MasterDataDirectory

logger = logging.getLogger(__name__)


class AvailabilityResolver:
    """
    Finds open windows and earliest slots based on:
    - Doctor work schedules and exceptions
    - Unit closures
    - Existing active appointments
    - Timezone-aware datetime handling
    """

    def __init__(
        self,
        directory: MasterDataDirectory,
        appointments: AppointmentRepository,
        slot_granularity_minutes: int = 15,
    ):
        self.directory = directory
        self.appointments = appointments
        self.slot_granularity_minutes = slot_granularity_minutes

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def available_windows(
        self,
        doctor_id: str,
        unit_id: str,
        on_date: date,
        patient_id: Optional[str] = None,
        exclude_appointment_id: Optional[str] = None,
    ) -> List[TimeRange]:
        """
        Get open windows for a doctor+unit pair on a date.

        Args:
            doctor_id: Doctor id
            unit_id: Unit id
            on_date: Calendar date in the clinic timezone
            patient_id: Also subtract this patient's active appointments
            exclude_appointment_id: Appointment to ignore (the one being moved)

        Returns:
            Merged windows sorted by start; empty when the day is closed or full

        Raises:
            ValidationError: If the doctor or unit is unknown
        """
        intervals = self._open_intervals(
            doctor_id, unit_id, on_date, patient_id, exclude_appointment_id
        )
        return [TimeRange(start=start, end=end) for start, end in intervals]

    def working_windows(self, doctor_id: str, on_date: date,
                        unit_id: Optional[str] = None) -> List[Interval]:
        """Schedule-only windows (no appointments) for the doctor on a date."""
        doctor = self._get_doctor(doctor_id)
        unit = self._get_unit(unit_id) if unit_id else None
        tz = self._timezone_for(doctor, unit)

        exceptions = doctor.schedule.exceptions_on(on_date)
        overrides = [e for e in exceptions if e.kind == ExceptionKind.OPEN]

        if overrides:
            base = [self._at(on_date, e.start_time, e.end_time, tz) for e in overrides]
        else:
            base = [
                self._at(on_date, w.start_time, w.end_time, tz)
                for w in doctor.schedule.windows_for(on_date.weekday())
            ]

        if not base:
            return []

        blocks = []
        for exc in exceptions:
            if exc.kind != ExceptionKind.CLOSED:
                continue
            if exc.whole_day:
                return []
            blocks.append(self._at(on_date, exc.start_time, exc.end_time, tz))

        if unit is not None:
            blocks.extend((c.start, c.end) for c in unit.closures)

        return subtract_all(base, blocks)

    def is_within_working_hours(self, doctor_id: str, unit_id: Optional[str],
                                start: datetime, end: datetime) -> bool:
        """True when [start, end) fits inside one working window."""
        doctor = self._get_doctor(doctor_id)
        unit = self._get_unit(unit_id) if unit_id else None
        local_date = start.astimezone(self._timezone_for(doctor, unit)).date()
        return any(
            contains(window, (start, end))
            for window in self.working_windows(doctor_id, local_date, unit_id)
        )

    def local_date(self, doctor_id: str, unit_id: Optional[str], moment: datetime) -> date:
        """Calendar date of ``moment`` in the clinic timezone."""
        doctor = self._get_doctor(doctor_id)
        unit = self._get_unit(unit_id) if unit_id else None
        return moment.astimezone(self._timezone_for(doctor, unit)).date()

    def find_earliest_slot(
        self,
        doctor_id: str,
        unit_id: str,
        duration: timedelta,
        start_date: date,
        days: int,
        not_before: datetime,
        patient_id: Optional[str] = None,
        exclude_appointment_id: Optional[str] = None,
    ) -> Optional[TimeRange]:
        """
        Walk ``days`` calendar days from ``start_date`` and return the first
        slot of ``duration`` starting at or after ``not_before``.

        Returns:
            The earliest fitting slot, or None when the look-ahead is exhausted
        """
        earliest = self._ceil_to_granularity(not_before)

        for offset in range(days):
            day = start_date + timedelta(days=offset)
            for window_start, window_end in self._open_intervals(
                doctor_id, unit_id, day, patient_id, exclude_appointment_id
            ):
                candidate = window_start
                if candidate < earliest:
                    candidate = earliest
                if candidate + duration <= window_end:
                    return TimeRange(start=candidate, end=candidate + duration)

        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_intervals(
        self,
        doctor_id: str,
        unit_id: str,
        on_date: date,
        patient_id: Optional[str],
        exclude_appointment_id: Optional[str],
    ) -> List[Interval]:
        working = self.working_windows(doctor_id, on_date, unit_id)
        if not working:
            return []

        span_start, span_end = working[0][0], working[-1][1]
        busy = self.appointments.list_for_doctor(doctor_id, span_start, span_end)
        busy += self.appointments.list_for_unit(unit_id, span_start, span_end)
        if patient_id:
            busy += self.appointments.list_for_patient(patient_id, span_start, span_end)

        blocks = [
            (a.start, a.end) for a in busy
            if a.id != exclude_appointment_id
        ]
        return subtract_all(working, blocks)

    def _get_doctor(self, doctor_id: str) -> Doctor:
        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise ValidationError(f"Unknown doctor {doctor_id}")
        return doctor

    def _get_unit(self, unit_id: str) -> Unit:
        unit = self.directory.get_unit(unit_id)
        if unit is None:
            raise ValidationError(f"Unknown unit {unit_id}")
        return unit

    def _timezone_for(self, doctor: Doctor, unit: Optional[Unit]):
        clinic_id = unit.clinic_id if unit is not None else doctor.default_clinic_id
        clinic = self.directory.get_clinic(clinic_id)
        tz_name = clinic.timezone if clinic else "UTC"
        try:
            return ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.error(f"Invalid timezone '{tz_name}' for clinic {clinic_id}, using UTC")
            return timezone.utc

    @staticmethod
    def _at(on_date: date, start: time, end: time, tz) -> Tuple[datetime, datetime]:
        return (
            datetime.combine(on_date, start, tzinfo=tz),
            datetime.combine(on_date, end, tzinfo=tz),
        )

    def _ceil_to_granularity(self, moment: datetime) -> datetime:
        step = self.slot_granularity_minutes * 60
        if step <= 0:
            return moment
        midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        remainder = (moment - midnight).total_seconds() % step
        if remainder == 0:
            return moment
        return moment + timedelta(seconds=step - remainder)
