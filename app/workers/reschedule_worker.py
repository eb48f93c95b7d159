"""
Rescheduling matching loop.

Polls the rescheduling queue for due entries and tries to rebook each one
into the earliest open slot within the look-ahead window, committing through
BookingService.commit_rebooking so the same locks and conflict checks apply
as for interactive requests.

Failed attempts (no slot, lost race, lock timeout, attempt timeout, store
errors) go back to the queue with backoff; after max_attempts the entry
escalates. Claims abandoned mid-attempt are returned to the queue once they
are older than match_timeout_seconds.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from app.config import SchedulingSettings
from app.exceptions import (
    AppointmentNotFoundError,
    BusyError,
    ConflictError,
    InvalidTransitionError,
    MatchExhaustedError,
    StoreError,
    ValidationError,
)
from app.models.scheduling import (
    Appointment,
    AppointmentStatus,
    QueueEntryState,
    RescheduleQueueEntry,
    RescheduleReason,
)
from app.observability.metrics import observe_queue_attempt
from app.services.appointment_store import AppointmentRepository
from app.services.availability_service import AvailabilityResolver
from app.services.booking_service import BookingService
from app.services.master_data import MasterDataDirectory
from app.services.rescheduling_queue import RescheduleQueue, utc_now

logger = logging.getLogger(__name__)


class RescheduleWorker:
    """
    Single logical matching loop with bounded internal concurrency.

    Each batch takes at most one entry per doctor and per unit so entries
    in the same batch never race each other for the same slot.
    """

    def __init__(
        self,
        booking: BookingService,
        queue: RescheduleQueue,
        resolver: AvailabilityResolver,
        directory: MasterDataDirectory,
        appointments: AppointmentRepository,
        settings: Optional[SchedulingSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.booking = booking
        self.queue = queue
        self.resolver = resolver
        self.directory = directory
        self.appointments = appointments
        self.settings = settings or SchedulingSettings()
        self.clock = clock
        self.running = False

        logger.info(
            f"RescheduleWorker initialized: concurrency={self.settings.worker_concurrency}, "
            f"lookahead={self.settings.lookahead_days}d, max_attempts={self.settings.max_attempts}"
        )

    async def start(self):
        """Start processing loop"""
        self.running = True
        self.queue.recover_stale_claims()
        logger.info("RescheduleWorker started")

        while self.running:
            try:
                processed = await self.run_once()
                if not processed:
                    await asyncio.sleep(self.settings.poll_interval_seconds)
            except Exception as e:
                logger.error(f"Reschedule worker error: {e}", exc_info=True)
                await asyncio.sleep(1)  # Brief pause on error

    async def stop(self):
        """Stop processing loop"""
        self.running = False
        logger.info("RescheduleWorker stopped")

    async def run_once(self) -> int:
        """
        Process one batch of due entries.

        Returns:
            Number of entries attempted
        """
        # Claims older than an attempt can last were abandoned mid-attempt
        self.queue.recover_stale_claims(
            older_than=timedelta(seconds=self.settings.match_timeout_seconds)
        )
        self.queue.report_depth()

        concurrency = max(1, self.settings.worker_concurrency)
        batch = self._pick_batch(self.queue.select_eligible(limit=concurrency * 4), concurrency)
        if not batch:
            return 0

        semaphore = asyncio.Semaphore(concurrency)

        async def _process_with_semaphore(entry):
            async with semaphore:
                return await self.process_entry(entry)

        results = await asyncio.gather(
            *[_process_with_semaphore(entry) for entry in batch],
            return_exceptions=True
        )
        for entry, result in zip(batch, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Unexpected error processing appointment {entry.appointment_id}: {result}",
                    exc_info=result,
                )
        return len(batch)

    async def process_entry(self, entry: RescheduleQueueEntry) -> str:
        """
        Claim one entry and try to rebook it.

        Returns:
            Outcome label: rebooked, retry, escalated, dropped, skipped or error
        """
        claimed = self.queue.claim(entry)
        if claimed is None:
            return "skipped"

        try:
            return await self._attempt(claimed)
        except Exception as e:
            logger.error(
                f"Attempt for appointment {claimed.appointment_id} failed: {e}", exc_info=True
            )
            error = f"Store error: {e}" if isinstance(e, StoreError) else f"Unexpected error: {e}"

        try:
            return await self._record_failure(claimed, error)
        except Exception as e:
            # Left in Matching; run_once recovers it once the claim is stale
            logger.error(
                f"❌ Could not record failed attempt for appointment {claimed.appointment_id}: {e}"
            )
            observe_queue_attempt("error")
            return "error"

    async def _attempt(self, claimed: RescheduleQueueEntry) -> str:
        appointment = self.appointments.get(claimed.appointment_id)
        if appointment is None or appointment.status != AppointmentStatus.PENDING_RESCHEDULE:
            self.queue.remove(claimed.appointment_id)
            logger.info(f"Dropped queue entry for appointment {claimed.appointment_id}: no longer pending")
            observe_queue_attempt("dropped")
            return "dropped"

        try:
            await asyncio.wait_for(
                self._match(claimed, appointment),
                timeout=self.settings.match_timeout_seconds,
            )
            observe_queue_attempt("rebooked")
            return "rebooked"
        except (InvalidTransitionError, AppointmentNotFoundError) as e:
            # Cancelled or moved by staff while we were matching
            self.queue.remove(claimed.appointment_id)
            logger.info(f"Dropped queue entry for appointment {claimed.appointment_id}: {e}")
            observe_queue_attempt("dropped")
            return "dropped"
        except MatchExhaustedError as e:
            error = e.message
        except ConflictError as e:
            error = f"Lost race: {e.message}"
        except BusyError as e:
            error = f"Busy: {e.message}"
        except ValidationError as e:
            error = f"Invalid placement: {e.message}"
        except asyncio.TimeoutError:
            error = f"Matching timed out after {self.settings.match_timeout_seconds}s"

        return await self._record_failure(claimed, error)

    async def _record_failure(self, claimed: RescheduleQueueEntry, error: str) -> str:
        updated = await self.queue.mark_failed(claimed.appointment_id, error)
        if updated is None:
            observe_queue_attempt("dropped")
            return "dropped"
        outcome = "escalated" if updated.state == QueueEntryState.ESCALATION_REQUIRED else "retry"
        observe_queue_attempt(outcome)
        return outcome

    async def _match(self, entry: RescheduleQueueEntry, appointment: Appointment):
        now = self.clock()
        lookahead = self.settings.lookahead_days
        start_date = self.resolver.local_date(appointment.doctor_id, appointment.unit_id, now)

        # A patient-requested change must not land back on the slot it holds
        exclude_id = None if entry.reason == RescheduleReason.PATIENT_REQUESTED else appointment.id

        best = None
        for unit_id in self._candidate_units(entry, appointment):
            slot = self.resolver.find_earliest_slot(
                appointment.doctor_id,
                unit_id,
                appointment.duration,
                start_date=start_date,
                days=lookahead,
                not_before=now,
                patient_id=appointment.patient_id,
                exclude_appointment_id=exclude_id,
            )
            # Strictly earlier only: ties stay with the original unit
            if slot is not None and (best is None or slot.start < best[1].start):
                best = (unit_id, slot)

        if best is None:
            raise MatchExhaustedError(appointment.id, lookahead)

        unit_id, slot = best
        await self.booking.commit_rebooking(appointment.id, unit_id, slot.start, slot.end)

    def _candidate_units(self, entry: RescheduleQueueEntry, appointment: Appointment) -> List[str]:
        units = [appointment.unit_id]
        if entry.reason == RescheduleReason.UNIT_CLOSED and self.settings.allow_unit_substitution:
            for unit in sorted(self.directory.units_for_clinic(appointment.clinic_id), key=lambda u: u.id):
                if unit.is_active and unit.id not in units:
                    units.append(unit.id)
        return units

    @staticmethod
    def _pick_batch(entries: List[RescheduleQueueEntry], size: int) -> List[RescheduleQueueEntry]:
        batch = []
        doctors = set()
        units = set()
        for entry in entries:
            if entry.doctor_id in doctors or entry.unit_id in units:
                continue
            batch.append(entry)
            doctors.add(entry.doctor_id)
            units.add(entry.unit_id)
            if len(batch) >= size:
                break
        return batch
