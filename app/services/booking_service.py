"""
Booking Service

Sole owner of appointment transitions:

    book                -> Scheduled (v1)                      emits Booked
    modify              -> Scheduled (v+1)                     emits Modified | Rebooked
    cancel              -> Cancelled (v+1)                     emits Cancelled
    complete            -> Completed (v+1)                     emits Completed
    invalidate          -> PendingReschedule (v+1) + queue     emits InvalidatedForReschedule
    commit_rebooking    -> Scheduled (v+1), queue entry gone   emits Rebooked

Every transition runs inside the per-resource critical section for the
doctor, unit(s) and patient it touches, so the conflict check and the commit
are atomic with respect to every other transition on those resources.
Events are published after the commit; publishing never fails an operation.
"""

import logging
import uuid
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from app.config import SchedulingSettings
from app.exceptions import (
    AppointmentNotFoundError,
    BusyError,
    InvalidTransitionError,
    SchedulingError,
    StaleVersionError,
    StoreError,
    ValidationError,
)
from app.models.events import EventType
from app.models.scheduling import (
    Appointment,
    AppointmentStatus,
    BookingRequest,
    Clinic,
    DateRange,
    Doctor,
    RescheduleReason,
    TimeRange,
    Unit,
)
from app.observability.metrics import observe_operation, observe_rejection
from app.services.appointment_store import AppointmentRepository
from app.services.availability_service import AvailabilityResolver
from app.services.conflict_detector import Candidate, ConflictChecker
from app.services.locks import resource_keys
from app.services.master_data import MasterDataDirectory
from app.services.outbox_service import EventPublisher, build_event
from app.services.rescheduling_queue import RescheduleQueue, utc_now

logger = logging.getLogger(__name__)

# Re-reads after a concurrent unit change before giving up with Busy
MAX_LOCK_REFRESHES = 3


class BookingService:
    """Create, move, cancel and invalidate appointments without double-booking."""

    def __init__(
        self,
        appointments: AppointmentRepository,
        directory: MasterDataDirectory,
        resolver: AvailabilityResolver,
        checker: ConflictChecker,
        locks,
        queue: RescheduleQueue,
        events: EventPublisher,
        settings: Optional[SchedulingSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.appointments = appointments
        self.directory = directory
        self.resolver = resolver
        self.checker = checker
        self.locks = locks
        self.queue = queue
        self.events = events
        self.settings = settings or SchedulingSettings()
        self.clock = clock
        self.id_factory = id_factory

    # ------------------------------------------------------------------
    # Client operations
    # ------------------------------------------------------------------

    async def book(self, request: BookingRequest) -> Appointment:
        """
        Book a new appointment.

        Raises:
            ValidationError: Bad interval, unknown ids, outside working hours
            ConflictError: Doctor, unit or patient already booked
            BusyError: Locks not acquired in time or the store failed
        """
        with self._observed("book"):
            now = self.clock()
            _, _, clinic = self._validate_placement(
                request.doctor_id, request.unit_id, request.start, request.end, now
            )
            keys = resource_keys([request.doctor_id], [request.unit_id], [request.patient_id])

            async with self._hold(keys):
                self.checker.ensure_no_conflict(Candidate(
                    doctor_id=request.doctor_id,
                    unit_id=request.unit_id,
                    patient_id=request.patient_id,
                    start=request.start,
                    end=request.end,
                ))
                appointment = Appointment(
                    id=self.id_factory(),
                    patient_id=request.patient_id,
                    doctor_id=request.doctor_id,
                    unit_id=request.unit_id,
                    clinic_id=clinic.id,
                    start=request.start,
                    end=request.end,
                    status=AppointmentStatus.SCHEDULED,
                    version=1,
                    treatment_type=request.treatment_type,
                    created_at=now,
                    updated_at=now,
                )
                saved = self._commit(appointment, previous=None)

            logger.info(
                f"✅ Booked appointment {saved.id}: doctor={saved.doctor_id} unit={saved.unit_id} "
                f"patient={saved.patient_id} [{saved.start.isoformat()} - {saved.end.isoformat()})"
            )
            await self._emit(EventType.BOOKED, saved)
            return saved

    async def modify(
        self,
        appointment_id: str,
        expected_version: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        unit_id: Optional[str] = None,
    ) -> Appointment:
        """
        Move an appointment in time and/or to another unit.

        A PendingReschedule appointment moved into a valid slot is a manual
        reschedule: it becomes Scheduled, its queue entry is removed and
        Rebooked is emitted instead of Modified.
        """
        with self._observed("modify"):
            extra_units = [unit_id] if unit_id else []
            async with self._locked(appointment_id, extra_units) as current:
                self._check_version(current, expected_version)
                if not current.is_active:
                    raise InvalidTransitionError(appointment_id, current.status.value, "modify")

                now = self.clock()
                new_start = start or current.start
                new_end = end or current.end
                new_unit_id = unit_id or current.unit_id

                _, _, clinic = self._validate_placement(
                    current.doctor_id, new_unit_id, new_start, new_end, now
                )
                self.checker.ensure_no_conflict(
                    Candidate(
                        doctor_id=current.doctor_id,
                        unit_id=new_unit_id,
                        patient_id=current.patient_id,
                        start=new_start,
                        end=new_end,
                    ),
                    exclude_appointment_id=current.id,
                )

                was_pending = current.status == AppointmentStatus.PENDING_RESCHEDULE
                updated = current.model_copy(update={
                    'start': new_start,
                    'end': new_end,
                    'unit_id': new_unit_id,
                    'clinic_id': clinic.id,
                    'status': AppointmentStatus.SCHEDULED,
                    'version': current.version + 1,
                    'updated_at': now,
                })
                if was_pending:
                    saved = self._commit(updated, current,
                                         lambda: self.queue.mark_rebooked(current.id))
                else:
                    saved = self._commit(updated, current)

            previous = {
                'previous_start': current.start.isoformat(),
                'previous_end': current.end.isoformat(),
                'previous_unit_id': current.unit_id,
            }
            if was_pending:
                logger.info(f"✅ Appointment {saved.id} manually rescheduled (v{saved.version})")
                await self._emit(EventType.REBOOKED, saved, manual=True, **previous)
            else:
                logger.info(f"✅ Appointment {saved.id} modified (v{saved.version})")
                await self._emit(EventType.MODIFIED, saved, **previous)
            return saved

    async def cancel(self, appointment_id: str, expected_version: int,
                     reason: Optional[str] = None) -> Appointment:
        """Cancel an active appointment; any queue entry for it is removed."""
        with self._observed("cancel"):
            async with self._locked(appointment_id) as current:
                self._check_version(current, expected_version)
                if not current.is_active:
                    raise InvalidTransitionError(appointment_id, current.status.value, "cancel")

                updated = current.model_copy(update={
                    'status': AppointmentStatus.CANCELLED,
                    'version': current.version + 1,
                    'cancellation_reason': reason,
                    'updated_at': self.clock(),
                })
                if current.status == AppointmentStatus.PENDING_RESCHEDULE:
                    saved = self._commit(updated, current, lambda: self.queue.remove(current.id))
                else:
                    saved = self._commit(updated, current)

            logger.info(f"Appointment {saved.id} cancelled (v{saved.version})")
            await self._emit(EventType.CANCELLED, saved, reason=reason)
            return saved

    async def complete(self, appointment_id: str, expected_version: int) -> Appointment:
        """Mark a Scheduled appointment as Completed."""
        with self._observed("complete"):
            async with self._locked(appointment_id) as current:
                self._check_version(current, expected_version)
                if current.status != AppointmentStatus.SCHEDULED:
                    raise InvalidTransitionError(appointment_id, current.status.value, "complete")

                updated = current.model_copy(update={
                    'status': AppointmentStatus.COMPLETED,
                    'version': current.version + 1,
                    'updated_at': self.clock(),
                })
                saved = self._commit(updated, current)

            await self._emit(EventType.COMPLETED, saved)
            return saved

    async def invalidate(self, appointment_id: str, reason: RescheduleReason) -> Appointment:
        """
        Move a Scheduled appointment to PendingReschedule and queue it.

        Idempotent: an appointment already PendingReschedule is returned as
        is, with no new queue entry and no new event.
        """
        with self._observed("invalidate"):
            async with self._locked(appointment_id) as current:
                saved, changed = self._invalidate_locked(current, reason)

            if changed:
                await self._emit(EventType.INVALIDATED_FOR_RESCHEDULE, saved, reason=reason.value)
            return saved

    async def request_reschedule(self, appointment_id: str, expected_version: int) -> Appointment:
        """Patient-requested change: version-checked invalidation."""
        with self._observed("request_reschedule"):
            async with self._locked(appointment_id) as current:
                if current.status != AppointmentStatus.PENDING_RESCHEDULE:
                    self._check_version(current, expected_version)
                saved, changed = self._invalidate_locked(current, RescheduleReason.PATIENT_REQUESTED)

            if changed:
                await self._emit(
                    EventType.INVALIDATED_FOR_RESCHEDULE, saved,
                    reason=RescheduleReason.PATIENT_REQUESTED.value,
                )
            return saved

    # ------------------------------------------------------------------
    # Master-data notices
    # ------------------------------------------------------------------

    async def on_schedule_changed(self, doctor_id: str, date_range: DateRange) -> List[str]:
        """
        Invalidate the doctor's Scheduled appointments in the date range that
        no longer fit the (already updated) schedule.

        Returns:
            Ids of appointments moved to PendingReschedule by this call
        """
        if self.directory.get_doctor(doctor_id) is None:
            raise ValidationError(f"Unknown doctor {doctor_id}")

        # Pad by a day on each side; local dates are filtered below
        scan_start = datetime.combine(date_range.start_date - timedelta(days=1),
                                      datetime.min.time(), tzinfo=timezone.utc)
        scan_end = datetime.combine(date_range.end_date + timedelta(days=2),
                                    datetime.min.time(), tzinfo=timezone.utc)

        affected = []
        for appointment in self.appointments.list_for_doctor(doctor_id, scan_start, scan_end):
            if appointment.status != AppointmentStatus.SCHEDULED:
                continue
            local_day = self.resolver.local_date(doctor_id, appointment.unit_id, appointment.start)
            if not (date_range.start_date <= local_day <= date_range.end_date):
                continue
            if self.resolver.is_within_working_hours(
                doctor_id, appointment.unit_id, appointment.start, appointment.end
            ):
                continue
            affected.append(appointment.id)

        logger.info(
            f"Schedule change for doctor {doctor_id} "
            f"({date_range.start_date} - {date_range.end_date}) affects {len(affected)} appointments"
        )
        return await self._invalidate_many(affected, RescheduleReason.DOCTOR_UNAVAILABLE)

    async def on_unit_closed(self, unit_id: str, closed_range: TimeRange) -> List[str]:
        """Invalidate Scheduled appointments in the unit overlapping the closure."""
        if self.directory.get_unit(unit_id) is None:
            raise ValidationError(f"Unknown unit {unit_id}")

        affected = [
            a.id for a in self.appointments.list_for_unit(unit_id, closed_range.start, closed_range.end)
            if a.status == AppointmentStatus.SCHEDULED
        ]
        logger.info(
            f"Unit {unit_id} closed [{closed_range.start.isoformat()} - "
            f"{closed_range.end.isoformat()}), {len(affected)} appointments affected"
        )
        return await self._invalidate_many(affected, RescheduleReason.UNIT_CLOSED)

    # ------------------------------------------------------------------
    # Queue commit path
    # ------------------------------------------------------------------

    async def commit_rebooking(self, appointment_id: str, unit_id: str,
                               start: datetime, end: datetime) -> Appointment:
        """
        Commit a slot found by the matching loop.

        Same critical section and conflict check as ``modify``; the
        appointment must still be PendingReschedule.
        """
        with self._observed("rebook"):
            async with self._locked(appointment_id, [unit_id]) as current:
                if current.status != AppointmentStatus.PENDING_RESCHEDULE:
                    raise InvalidTransitionError(appointment_id, current.status.value, "rebook")

                now = self.clock()
                _, _, clinic = self._validate_placement(current.doctor_id, unit_id, start, end, now)
                self.checker.ensure_no_conflict(
                    Candidate(
                        doctor_id=current.doctor_id,
                        unit_id=unit_id,
                        patient_id=current.patient_id,
                        start=start,
                        end=end,
                    ),
                    exclude_appointment_id=current.id,
                )
                updated = current.model_copy(update={
                    'start': start,
                    'end': end,
                    'unit_id': unit_id,
                    'clinic_id': clinic.id,
                    'status': AppointmentStatus.SCHEDULED,
                    'version': current.version + 1,
                    'updated_at': now,
                })
                saved = self._commit(updated, current, lambda: self.queue.mark_rebooked(current.id))

            logger.info(
                f"✅ Appointment {saved.id} rebooked to unit {saved.unit_id} "
                f"[{saved.start.isoformat()} - {saved.end.isoformat()})"
            )
            await self._emit(
                EventType.REBOOKED, saved, manual=False,
                previous_start=current.start.isoformat(),
                previous_end=current.end.isoformat(),
                previous_unit_id=current.unit_id,
            )
            return saved

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, appointment_id: str) -> Appointment:
        return self._load(appointment_id)

    def list_in_range(self, start: datetime, end: datetime,
                      doctor_id: Optional[str] = None,
                      unit_id: Optional[str] = None) -> List[Appointment]:
        if start >= end:
            raise ValidationError("start must be before end")
        try:
            return self.appointments.list_in_range(start, end, doctor_id=doctor_id, unit_id=unit_id)
        except StoreError as e:
            raise BusyError("Appointment store unavailable") from e

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _invalidate_locked(self, current: Appointment,
                           reason: RescheduleReason) -> Tuple[Appointment, bool]:
        if current.status == AppointmentStatus.PENDING_RESCHEDULE:
            # Repair a missing entry without emitting a second event
            if self.queue.get(current.id) is None:
                self._queue_write(lambda: self.queue.enqueue(current, reason))
            return current, False
        if current.status != AppointmentStatus.SCHEDULED:
            raise InvalidTransitionError(current.id, current.status.value, "invalidate")

        updated = current.model_copy(update={
            'status': AppointmentStatus.PENDING_RESCHEDULE,
            'version': current.version + 1,
            'updated_at': self.clock(),
        })
        saved = self._commit(updated, current, lambda: self.queue.enqueue(updated, reason))
        logger.info(f"⚠️ Appointment {saved.id} invalidated ({reason.value}), queued for rescheduling")
        return saved, True

    async def _invalidate_many(self, appointment_ids: Iterable[str],
                               reason: RescheduleReason) -> List[str]:
        invalidated = []
        busy = []
        for appointment_id in appointment_ids:
            try:
                await self.invalidate(appointment_id, reason)
                invalidated.append(appointment_id)
            except BusyError as e:
                logger.warning(f"Could not invalidate appointment {appointment_id}: {e}")
                busy.append(appointment_id)
            except InvalidTransitionError as e:
                # Cancelled or completed since the scan
                logger.info(f"Skipping appointment {appointment_id}: {e}")

        if busy:
            raise BusyError(
                f"{len(busy)} appointments could not be invalidated; resend the notice"
            )
        return invalidated

    def _validate_placement(self, doctor_id: str, unit_id: str, start: datetime,
                            end: datetime, now: datetime) -> Tuple[Doctor, Unit, Clinic]:
        if start.tzinfo is None or end.tzinfo is None:
            raise ValidationError("start and end must be timezone-aware")
        if start >= end:
            raise ValidationError("start must be before end")

        doctor = self.directory.get_doctor(doctor_id)
        if doctor is None:
            raise ValidationError(f"Unknown doctor {doctor_id}")
        unit = self.directory.get_unit(unit_id)
        if unit is None:
            raise ValidationError(f"Unknown unit {unit_id}")
        if not unit.is_active:
            raise ValidationError(f"Unit {unit_id} is not active")
        clinic = self.directory.get_clinic(unit.clinic_id)
        if clinic is None:
            raise ValidationError(f"Unknown clinic {unit.clinic_id}")

        min_minutes = clinic.min_duration_minutes or self.settings.min_duration_minutes
        max_minutes = clinic.max_duration_minutes or self.settings.max_duration_minutes
        duration = end - start
        if duration < timedelta(minutes=min_minutes) or duration > timedelta(minutes=max_minutes):
            raise ValidationError(
                f"Duration must be between {min_minutes} and {max_minutes} minutes"
            )

        if start < now:
            raise ValidationError("Cannot book in the past")

        if self.settings.enforce_working_hours and not self.resolver.is_within_working_hours(
            doctor_id, unit_id, start, end
        ):
            raise ValidationError(
                f"Requested time is outside working hours for doctor {doctor_id} in unit {unit_id}"
            )

        return doctor, unit, clinic

    def _check_version(self, current: Appointment, expected_version: int):
        if current.version != expected_version:
            raise StaleVersionError(current.id, expected_version, current.version)

    def _load(self, appointment_id: str) -> Appointment:
        try:
            appointment = self.appointments.get(appointment_id)
        except StoreError as e:
            raise BusyError("Appointment store unavailable") from e
        if appointment is None:
            raise AppointmentNotFoundError(appointment_id)
        return appointment

    def _hold(self, keys):
        return self.locks.hold(keys, timeout=self.settings.lock_timeout_seconds)

    @asynccontextmanager
    async def _locked(self, appointment_id: str, extra_unit_ids: Iterable[str] = ()):
        """
        Hold the locks for the appointment's doctor, unit(s) and patient and
        yield its current state read under those locks.
        """
        extra_unit_ids = list(extra_unit_ids)
        for _ in range(MAX_LOCK_REFRESHES):
            current = self._load(appointment_id)
            keys = resource_keys(
                [current.doctor_id], [current.unit_id, *extra_unit_ids], [current.patient_id]
            )
            async with self._hold(keys):
                fresh = self._load(appointment_id)
                if fresh.unit_id == current.unit_id:
                    yield fresh
                    return
            logger.debug(f"Appointment {appointment_id} moved units while locking, retrying")

        raise BusyError(f"Appointment {appointment_id} is changing too quickly, retry shortly")

    def _commit(self, updated: Appointment, previous: Optional[Appointment],
                queue_step: Optional[Callable[[], object]] = None) -> Appointment:
        """
        Save the appointment, then run the queue step.

        A store failure in the queue step restores ``previous`` so nothing is
        left half-committed; either failure surfaces as BusyError.
        """
        try:
            saved = self.appointments.save(updated)
        except StoreError as e:
            logger.error(f"❌ Failed to save appointment {updated.id}: {e}")
            raise BusyError("Appointment store unavailable") from e

        if queue_step is not None:
            try:
                queue_step()
            except StoreError as e:
                logger.error(f"❌ Queue write failed for appointment {updated.id}, compensating: {e}")
                self._restore(previous)
                raise BusyError("Rescheduling queue unavailable") from e
        return saved

    def _queue_write(self, step: Callable[[], object]):
        try:
            step()
        except StoreError as e:
            raise BusyError("Rescheduling queue unavailable") from e

    def _restore(self, previous: Optional[Appointment]):
        if previous is None:
            return
        try:
            self.appointments.save(previous)
        except StoreError as e:
            logger.critical(
                f"Could not restore appointment {previous.id} to v{previous.version}: {e}",
                exc_info=True,
            )

    async def _emit(self, event_type: EventType, appointment: Appointment, **extra):
        await self.events.publish(build_event(event_type, appointment, self.clock(), **extra))

    @contextmanager
    def _observed(self, operation: str):
        try:
            yield
        except SchedulingError as e:
            observe_rejection(operation, e.code)
            logger.info(f"❌ {operation} rejected ({e.code}): {e.message}")
            raise
        observe_operation(operation, "success")
