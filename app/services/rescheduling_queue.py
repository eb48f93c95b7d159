"""
Rescheduling Queue

Durable, ordered backlog of appointments waiting for a new slot.

Entry lifecycle:
    Queued -> Matching -> removed (rebooked)
                       -> Queued (attempt + 1, next retry after backoff)
                       -> EscalationRequired (after max_attempts, terminal)

Selection order: highest reason priority first
(PatientRequested > DoctorUnavailable > UnitClosed), then enqueued_at
ascending. Only entries with next_eligible_at <= now are selectable.
"""

import logging
import math
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from app.config import SchedulingSettings
from app.exceptions import QueueEntryNotFoundError, ValidationError
from app.models.events import EventType, SchedulingEvent
from app.models.scheduling import (
    Appointment,
    QueueEntryState,
    QueuePage,
    RescheduleQueueEntry,
    RescheduleReason,
)
from app.observability.metrics import observe_escalation, observe_queue_depth
from app.services.appointment_store import QueueRepository
from app.services.outbox_service import EventPublisher

logger = logging.getLogger(__name__)

SNOOZE_UNITS = {
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
    "months": timedelta(days=30),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RescheduleQueue:
    """Queue entry lifecycle; appointments themselves change only via BookingService."""

    def __init__(
        self,
        store: QueueRepository,
        events: EventPublisher,
        settings: Optional[SchedulingSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.events = events
        self.settings = settings or SchedulingSettings()
        self.clock = clock
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Enqueue / remove
    # ------------------------------------------------------------------

    def enqueue(self, appointment: Appointment,
                reason: RescheduleReason) -> RescheduleQueueEntry:
        """
        Add an entry for the appointment.

        Idempotent: an existing entry for the same appointment is returned
        unchanged.
        """
        existing = self.store.get_by_appointment(appointment.id)
        if existing is not None:
            logger.debug(f"Appointment {appointment.id} already queued ({existing.reason.value})")
            return existing

        now = self.clock()
        entry = RescheduleQueueEntry(
            id=str(uuid.uuid4()),
            appointment_id=appointment.id,
            doctor_id=appointment.doctor_id,
            unit_id=appointment.unit_id,
            clinic_id=appointment.clinic_id,
            patient_id=appointment.patient_id,
            reason=reason,
            state=QueueEntryState.QUEUED,
            enqueued_at=now,
            attempt_count=0,
            next_eligible_at=now,
            updated_at=now,
        )
        saved = self.store.save(entry)
        logger.info(f"📥 Queued appointment {appointment.id} for rescheduling ({reason.value})")
        return saved

    def get(self, appointment_id: str) -> Optional[RescheduleQueueEntry]:
        return self.store.get_by_appointment(appointment_id)

    def remove(self, appointment_id: str) -> bool:
        """Drop the entry (rebooked, cancelled by staff, or stale)."""
        return self.store.delete(appointment_id)

    def mark_rebooked(self, appointment_id: str) -> bool:
        removed = self.remove(appointment_id)
        if removed:
            logger.info(f"✅ Queue entry for appointment {appointment_id} rebooked and removed")
        return removed

    # ------------------------------------------------------------------
    # Matching loop support
    # ------------------------------------------------------------------

    def select_eligible(self, limit: int = 1) -> List[RescheduleQueueEntry]:
        """Entries due now, in priority then FIFO order."""
        return self.store.select_eligible(self.clock(), limit)

    def claim(self, entry: RescheduleQueueEntry) -> Optional[RescheduleQueueEntry]:
        """
        Move a Queued entry to Matching.

        Returns None when the entry vanished or was claimed elsewhere.
        """
        current = self.store.get_by_appointment(entry.appointment_id)
        if current is None or current.state != QueueEntryState.QUEUED:
            return None
        current.state = QueueEntryState.MATCHING
        current.updated_at = self.clock()
        return self.store.save(current)

    async def mark_failed(self, appointment_id: str, error: str) -> Optional[RescheduleQueueEntry]:
        """
        Record a failed matching attempt.

        Below ``max_attempts`` the entry goes back to Queued with a backoff;
        at ``max_attempts`` it becomes EscalationRequired and an
        EscalationRequired event is published.
        """
        entry = self.store.get_by_appointment(appointment_id)
        if entry is None:
            return None

        now = self.clock()
        entry.attempt_count += 1
        entry.last_error = error
        entry.updated_at = now

        if entry.attempt_count >= self.settings.max_attempts:
            entry.state = QueueEntryState.ESCALATION_REQUIRED
            saved = self.store.save(entry)
            observe_escalation()
            logger.warning(
                f"🚨 Appointment {appointment_id} needs manual rescheduling "
                f"after {entry.attempt_count} attempts: {error}"
            )
            await self.events.publish(SchedulingEvent(
                event_type=EventType.ESCALATION_REQUIRED,
                appointment_id=appointment_id,
                occurred_at=now,
                payload={
                    'appointment_id': appointment_id,
                    'doctor_id': entry.doctor_id,
                    'unit_id': entry.unit_id,
                    'clinic_id': entry.clinic_id,
                    'patient_id': entry.patient_id,
                    'reason': entry.reason.value,
                    'attempt_count': entry.attempt_count,
                    'last_error': error,
                },
            ))
        else:
            entry.state = QueueEntryState.QUEUED
            entry.next_eligible_at = now + self.backoff(entry.attempt_count - 1)
            saved = self.store.save(entry)
            logger.info(
                f"Attempt {entry.attempt_count}/{self.settings.max_attempts} failed for "
                f"appointment {appointment_id}, next try at {entry.next_eligible_at.isoformat()}"
            )

        return saved

    def backoff(self, attempt: int) -> timedelta:
        """min(max, base * 2**attempt), jittered by +/- backoff_jitter."""
        base = self.settings.backoff_base_seconds
        cap = self.settings.backoff_max_seconds
        try:
            delay = min(cap, base * math.pow(2, attempt))
        except OverflowError:
            delay = cap
        jitter = self.settings.backoff_jitter
        if jitter:
            delay *= 1 + self.rng.uniform(-jitter, jitter)
        return timedelta(seconds=max(0.0, delay))

    def recover_stale_claims(self, older_than: Optional[timedelta] = None) -> int:
        """
        Return entries stuck in Matching to Queued.

        Without ``older_than`` every Matching entry is recovered (worker
        start). With it, only claims not touched for that long are.
        """
        recovered = 0
        now = self.clock()
        for entry in self.store.list_entries(state=QueueEntryState.MATCHING):
            if older_than is not None and entry.updated_at > now - older_than:
                continue
            entry.state = QueueEntryState.QUEUED
            entry.updated_at = now
            self.store.save(entry)
            recovered += 1
        if recovered:
            logger.warning(f"Recovered {recovered} stale queue claims")
        return recovered

    def report_depth(self) -> int:
        """Publish the number of Queued entries to the queue-depth gauge."""
        depth = self.store.count(QueueEntryState.QUEUED)
        observe_queue_depth(depth)
        return depth

    # ------------------------------------------------------------------
    # Staff actions
    # ------------------------------------------------------------------

    def snooze(self, appointment_id: str, number: int, time_unit: str) -> RescheduleQueueEntry:
        """Push next_eligible_at forward without counting an attempt."""
        if number <= 0:
            raise ValidationError("Snooze amount must be positive")
        step = SNOOZE_UNITS.get(time_unit)
        if step is None:
            raise ValidationError(f"Unknown snooze unit '{time_unit}'")

        entry = self._require(appointment_id)
        if entry.state == QueueEntryState.MATCHING:
            raise ValidationError(f"Appointment {appointment_id} is being matched right now")

        now = self.clock()
        entry.next_eligible_at = max(now, entry.next_eligible_at) + step * number
        entry.updated_at = now
        saved = self.store.save(entry)
        logger.info(
            f"😴 Snoozed appointment {appointment_id} for {number} {time_unit} "
            f"(until {saved.next_eligible_at.isoformat()})"
        )
        return saved

    def retry_escalated(self, appointment_id: str) -> RescheduleQueueEntry:
        """Put an escalated entry back to Queued with attempts reset."""
        entry = self._require(appointment_id)
        if entry.state != QueueEntryState.ESCALATION_REQUIRED:
            raise ValidationError(
                f"Appointment {appointment_id} is {entry.state.value}, not escalated"
            )
        now = self.clock()
        entry.state = QueueEntryState.QUEUED
        entry.attempt_count = 0
        entry.last_error = None
        entry.next_eligible_at = now
        entry.updated_at = now
        saved = self.store.save(entry)
        logger.info(f"🔁 Escalated appointment {appointment_id} returned to the queue")
        return saved

    def list_entries(
        self,
        state: Optional[QueueEntryState] = None,
        clinic_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> QueuePage:
        """Filtered listing ordered by priority then enqueued_at."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        rows = self.store.list_entries(state=state, clinic_id=clinic_id, doctor_id=doctor_id)
        offset = (page - 1) * limit
        return QueuePage(items=rows[offset:offset + limit], total=len(rows), page=page, limit=limit)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, appointment_id: str) -> RescheduleQueueEntry:
        entry = self.store.get_by_appointment(appointment_id)
        if entry is None:
            raise QueueEntryNotFoundError(appointment_id)
        return entry

