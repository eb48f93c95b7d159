"""
Outbox Service - Write scheduling events to an outbox

Booking and queue operations publish state-change events here. The
OutboxProcessor worker delivers them to the Notification Gateway.
Publishing never raises: a failed write is logged and reported as False so
it can never fail the booking operation that produced the event.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Dict, List, Optional

from app.models.events import DeliveryStatus, OutboxRecord, SchedulingEvent
from app.observability.metrics import observe_event_published

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "scheduling_events"


class EventPublisher:
    """Outbox contract used by the booking service, the queue and the processor."""

    async def publish(self, event: SchedulingEvent) -> bool:
        raise NotImplementedError

    async def fetch_pending(self, limit: int, max_retries: int) -> List[OutboxRecord]:
        raise NotImplementedError

    async def mark_delivered(self, event_id: str, delivered_at: datetime):
        raise NotImplementedError

    async def mark_failed(self, event_id: str, error: str, retry_count: int):
        raise NotImplementedError


class InMemoryOutbox(EventPublisher):
    """
    Outbox kept in process memory, in publish order.

    Delivered events are dropped (their ids are remembered for de-duplication)
    and at most ``max_records`` undelivered events are held; past that the
    oldest is evicted.
    """

    def __init__(self, max_records: int = 10000):
        self.max_records = max_records
        self._records: Dict[str, OutboxRecord] = {}
        self._delivered: "OrderedDict[str, None]" = OrderedDict()

    @property
    def events(self) -> List[SchedulingEvent]:
        return [r.event for r in self._records.values()]

    def records(self) -> List[OutboxRecord]:
        return [r.model_copy() for r in self._records.values()]

    async def publish(self, event: SchedulingEvent) -> bool:
        if event.event_id in self._records or event.event_id in self._delivered:
            return True
        if len(self._records) >= self.max_records:
            oldest = next(iter(self._records))
            dropped = self._records.pop(oldest)
            logger.warning(
                f"⚠️ Outbox full ({self.max_records}), dropped undelivered event "
                f"{dropped.event.event_type.value} {oldest}"
            )
        self._records[event.event_id] = OutboxRecord(event=event)
        observe_event_published(event.event_type.value)
        logger.info(
            f"✅ Event written to outbox: {event.event_type.value} "
            f"(appointment={event.appointment_id}, event_id={event.event_id})"
        )
        return True

    async def fetch_pending(self, limit, max_retries):
        pending = [
            r for r in self._records.values()
            if r.delivery_status in (DeliveryStatus.PENDING, DeliveryStatus.FAILED)
            and r.retry_count < max_retries
        ]
        return [r.model_copy() for r in pending[:limit]]

    async def mark_delivered(self, event_id, delivered_at):
        if self._records.pop(event_id, None) is None:
            return
        self._delivered[event_id] = None
        if len(self._delivered) > self.max_records:
            self._delivered.popitem(last=False)

    async def mark_failed(self, event_id, error, retry_count):
        record = self._records.get(event_id)
        if record is not None:
            record.delivery_status = DeliveryStatus.FAILED
            record.last_error = error
            record.retry_count = retry_count


class SupabaseOutbox(EventPublisher):
    """Outbox backed by the ``scheduling_events`` table."""

    def __init__(self, client):
        self.client = client

    async def publish(self, event: SchedulingEvent) -> bool:
        """
        Write an event to the outbox table for async delivery.

        Returns:
            True if the event was written successfully, False otherwise
        """
        try:
            result = self.client.table(OUTBOX_TABLE).upsert({
                'event_id': event.event_id,
                'event_type': event.event_type.value,
                'appointment_id': event.appointment_id,
                'occurred_at': event.occurred_at.isoformat(),
                'payload': event.payload,
                'delivery_status': DeliveryStatus.PENDING.value,
                'retry_count': 0,
            }, on_conflict='event_id', ignore_duplicates=True).execute()

            if result.data is None:
                logger.error(f"❌ Failed to write event to outbox: no data returned")
                return False

            observe_event_published(event.event_type.value)
            logger.info(
                f"✅ Event written to outbox: {event.event_type.value} "
                f"(appointment={event.appointment_id}, event_id={event.event_id})"
            )
            return True

        except Exception as e:
            logger.error(f"❌ Error writing to outbox: {e}", exc_info=True)
            return False

    async def fetch_pending(self, limit, max_retries):
        result = self.client.table(OUTBOX_TABLE).select('*').in_(
            'delivery_status', [DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value]
        ).lt(
            'retry_count', max_retries
        ).order('occurred_at').limit(limit).execute()

        return [self._to_record(row) for row in (result.data or [])]

    async def mark_delivered(self, event_id, delivered_at):
        self.client.table(OUTBOX_TABLE).update({
            'delivery_status': DeliveryStatus.DELIVERED.value,
            'delivered_at': delivered_at.isoformat(),
            'last_error': None,
        }).eq('event_id', event_id).execute()

    async def mark_failed(self, event_id, error, retry_count):
        self.client.table(OUTBOX_TABLE).update({
            'delivery_status': DeliveryStatus.FAILED.value,
            'last_error': error[:500],  # Truncate long errors
            'retry_count': retry_count,
        }).eq('event_id', event_id).execute()

    @staticmethod
    def _to_record(row: dict) -> OutboxRecord:
        return OutboxRecord(
            event=SchedulingEvent(
                event_id=row['event_id'],
                event_type=row['event_type'],
                appointment_id=row['appointment_id'],
                occurred_at=row['occurred_at'],
                payload=row.get('payload') or {},
            ),
            delivery_status=row.get('delivery_status', DeliveryStatus.PENDING.value),
            retry_count=row.get('retry_count', 0),
            last_error=row.get('last_error'),
            delivered_at=row.get('delivered_at'),
        )


def build_event(event_type, appointment, occurred_at: Optional[datetime] = None,
                **extra) -> SchedulingEvent:
    """Envelope an appointment snapshot as an event payload."""
    payload = {
        'appointment_id': appointment.id,
        'patient_id': appointment.patient_id,
        'doctor_id': appointment.doctor_id,
        'unit_id': appointment.unit_id,
        'clinic_id': appointment.clinic_id,
        'start': appointment.start.isoformat(),
        'end': appointment.end.isoformat(),
        'status': appointment.status.value,
        'version': appointment.version,
    }
    payload.update(extra)
    return SchedulingEvent(
        event_type=event_type,
        appointment_id=appointment.id,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        payload=payload,
    )
