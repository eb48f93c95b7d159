"""
Tests for the rescheduling queue: ordering, backoff, escalation and staff actions
"""

import random
from datetime import timedelta

import pytest

from app.exceptions import QueueEntryNotFoundError, ValidationError
from app.models.events import EventType
from app.models.scheduling import QueueEntryState, RescheduleReason
from app.services.appointment_store import InMemoryQueueRepository
from app.services.outbox_service import InMemoryOutbox
from app.services.rescheduling_queue import RescheduleQueue
from tests.fixtures import SUNDAY, at, fast_settings, make_appointment, make_queue_entry


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def rescheduling_queue(clock, outbox):
    return RescheduleQueue(
        InMemoryQueueRepository(), outbox, fast_settings(), clock=clock, rng=random.Random(7),
    )


def enqueue(queue, appointment_id, reason=RescheduleReason.DOCTOR_UNAVAILABLE, **kwargs):
    return queue.enqueue(make_appointment(id=appointment_id, **kwargs), reason)


class TestOrdering:

    def test_priority_then_fifo(self, rescheduling_queue):
        expected = [
            ('patient-first', RescheduleReason.PATIENT_REQUESTED, 1),
            ('patient-second', RescheduleReason.PATIENT_REQUESTED, 4),
            ('patient-third', RescheduleReason.PATIENT_REQUESTED, 7),
            ('doctor-first', RescheduleReason.DOCTOR_UNAVAILABLE, 0),
            ('doctor-second', RescheduleReason.DOCTOR_UNAVAILABLE, 5),
            ('unit-first', RescheduleReason.UNIT_CLOSED, 2),
            ('unit-second', RescheduleReason.UNIT_CLOSED, 3),
        ]
        shuffled = list(expected)
        random.Random(3).shuffle(shuffled)
        for appointment_id, reason, hour in shuffled:
            rescheduling_queue.store.save(make_queue_entry(
                appointment_id, reason=reason, enqueued_at=at(SUNDAY, hour),
            ))

        selected = rescheduling_queue.select_eligible(limit=10)

        assert [e.appointment_id for e in selected] == [e[0] for e in expected]
        assert rescheduling_queue.list_entries().items == selected

    def test_future_entries_are_not_selected(self, rescheduling_queue, clock):
        enqueue(rescheduling_queue, 'apt-1')
        rescheduling_queue.snooze('apt-1', 1, 'days')

        assert rescheduling_queue.select_eligible(limit=10) == []
        clock.advance(days=1)
        assert len(rescheduling_queue.select_eligible(limit=10)) == 1

    def test_enqueue_is_idempotent(self, rescheduling_queue):
        first = enqueue(rescheduling_queue, 'apt-1', RescheduleReason.UNIT_CLOSED)
        second = enqueue(rescheduling_queue, 'apt-1', RescheduleReason.PATIENT_REQUESTED)

        assert second.id == first.id
        assert second.reason == RescheduleReason.UNIT_CLOSED
        assert rescheduling_queue.list_entries().total == 1

    def test_claim_only_once(self, rescheduling_queue):
        entry = enqueue(rescheduling_queue, 'apt-1')

        claimed = rescheduling_queue.claim(entry)

        assert claimed.state == QueueEntryState.MATCHING
        assert rescheduling_queue.claim(entry) is None
        assert rescheduling_queue.select_eligible(limit=10) == []


class TestBackoff:

    def test_exponential_without_jitter(self, clock, outbox):
        queue = RescheduleQueue(
            InMemoryQueueRepository(), outbox, fast_settings(backoff_jitter=0.0), clock=clock,
        )

        assert queue.backoff(0) == timedelta(seconds=60)
        assert queue.backoff(1) == timedelta(seconds=120)
        assert queue.backoff(3) == timedelta(seconds=480)
        assert queue.backoff(10) == timedelta(seconds=3600)
        assert queue.backoff(5000) == timedelta(seconds=3600)

    def test_jitter_stays_within_twenty_percent(self, rescheduling_queue):
        for _ in range(50):
            delay = rescheduling_queue.backoff(2).total_seconds()
            assert 192 <= delay <= 288

    @pytest.mark.asyncio
    async def test_failed_attempt_requeues_with_backoff(self, rescheduling_queue, clock):
        entry = enqueue(rescheduling_queue, 'apt-1')
        rescheduling_queue.claim(entry)

        updated = await rescheduling_queue.mark_failed('apt-1', 'no slot')

        assert updated.state == QueueEntryState.QUEUED
        assert updated.attempt_count == 1
        assert updated.last_error == 'no slot'
        assert updated.next_eligible_at > clock()

    @pytest.mark.asyncio
    async def test_mark_failed_for_missing_entry(self, rescheduling_queue):
        assert await rescheduling_queue.mark_failed('apt-404', 'gone') is None


class TestEscalation:

    @pytest.mark.asyncio
    async def test_escalates_at_max_attempts(self, clock, outbox):
        queue = RescheduleQueue(
            InMemoryQueueRepository(), outbox, fast_settings(max_attempts=2), clock=clock,
        )
        enqueue(queue, 'apt-1')

        first = await queue.mark_failed('apt-1', 'no slot')
        second = await queue.mark_failed('apt-1', 'still no slot')

        assert first.state == QueueEntryState.QUEUED
        assert second.state == QueueEntryState.ESCALATION_REQUIRED
        assert [e.event_type for e in outbox.events] == [EventType.ESCALATION_REQUIRED]
        assert outbox.events[0].payload['attempt_count'] == 2

        clock.advance(days=30)
        assert queue.select_eligible(limit=10) == []

    @pytest.mark.asyncio
    async def test_retry_escalated_resets_attempts(self, clock, outbox):
        queue = RescheduleQueue(
            InMemoryQueueRepository(), outbox, fast_settings(max_attempts=1), clock=clock,
        )
        enqueue(queue, 'apt-1')
        await queue.mark_failed('apt-1', 'no slot')

        retried = queue.retry_escalated('apt-1')

        assert retried.state == QueueEntryState.QUEUED
        assert retried.attempt_count == 0
        assert retried.last_error is None
        assert [e.appointment_id for e in queue.select_eligible(limit=10)] == ['apt-1']

    def test_retry_requires_escalated_entry(self, rescheduling_queue):
        enqueue(rescheduling_queue, 'apt-1')

        with pytest.raises(ValidationError):
            rescheduling_queue.retry_escalated('apt-1')


class TestSnooze:

    @pytest.mark.parametrize('time_unit,expected', [
        ('days', timedelta(days=2)),
        ('weeks', timedelta(weeks=2)),
        ('months', timedelta(days=60)),
    ])
    def test_snooze_units(self, rescheduling_queue, clock, time_unit, expected):
        enqueue(rescheduling_queue, 'apt-1')

        snoozed = rescheduling_queue.snooze('apt-1', 2, time_unit)

        assert snoozed.next_eligible_at == clock() + expected
        assert snoozed.attempt_count == 0

    def test_snooze_unknown_entry(self, rescheduling_queue):
        with pytest.raises(QueueEntryNotFoundError):
            rescheduling_queue.snooze('apt-404', 1, 'days')

    def test_snooze_rejects_bad_input(self, rescheduling_queue):
        enqueue(rescheduling_queue, 'apt-1')

        with pytest.raises(ValidationError):
            rescheduling_queue.snooze('apt-1', 0, 'days')
        with pytest.raises(ValidationError):
            rescheduling_queue.snooze('apt-1', 1, 'fortnights')

    def test_snooze_while_matching_rejected(self, rescheduling_queue):
        entry = enqueue(rescheduling_queue, 'apt-1')
        rescheduling_queue.claim(entry)

        with pytest.raises(ValidationError):
            rescheduling_queue.snooze('apt-1', 1, 'days')


class TestListingAndRecovery:

    def test_pagination(self, rescheduling_queue, clock):
        for i in range(5):
            enqueue(rescheduling_queue, f'apt-{i}')
            clock.advance(minutes=1)

        page = rescheduling_queue.list_entries(page=3, limit=2)

        assert page.total == 5
        assert [e.appointment_id for e in page.items] == ['apt-4']

    def test_filters(self, rescheduling_queue):
        enqueue(rescheduling_queue, 'apt-1', doctor_id='doctor-1')
        enqueue(rescheduling_queue, 'apt-2', doctor_id='doctor-2')
        rescheduling_queue.claim(rescheduling_queue.get('apt-2'))

        assert rescheduling_queue.list_entries(doctor_id='doctor-2').total == 1
        assert rescheduling_queue.list_entries(state=QueueEntryState.QUEUED).total == 1
        assert rescheduling_queue.list_entries(clinic_id='clinic-999').total == 0

    def test_invalid_page(self, rescheduling_queue):
        with pytest.raises(ValidationError):
            rescheduling_queue.list_entries(page=0)

    def test_recover_stale_claims(self, rescheduling_queue):
        entry = enqueue(rescheduling_queue, 'apt-1')
        rescheduling_queue.claim(entry)

        assert rescheduling_queue.recover_stale_claims() == 1
        assert rescheduling_queue.get('apt-1').state == QueueEntryState.QUEUED
        assert rescheduling_queue.recover_stale_claims() == 0

    def test_recover_only_claims_older_than_cutoff(self, rescheduling_queue, clock):
        rescheduling_queue.claim(enqueue(rescheduling_queue, 'old-claim'))
        clock.advance(seconds=20)
        rescheduling_queue.claim(enqueue(rescheduling_queue, 'fresh-claim'))
        clock.advance(seconds=10)

        assert rescheduling_queue.recover_stale_claims(older_than=timedelta(seconds=30)) == 1
        assert rescheduling_queue.get('old-claim').state == QueueEntryState.QUEUED
        assert rescheduling_queue.get('fresh-claim').state == QueueEntryState.MATCHING

    def test_report_depth_counts_queued_entries(self, rescheduling_queue):
        enqueue(rescheduling_queue, 'apt-1')
        enqueue(rescheduling_queue, 'apt-2')
        rescheduling_queue.claim(enqueue(rescheduling_queue, 'apt-3'))

        assert rescheduling_queue.report_depth() == 2

    def test_remove(self, rescheduling_queue):
        enqueue(rescheduling_queue, 'apt-1')

        assert rescheduling_queue.remove('apt-1') is True
        assert rescheduling_queue.remove('apt-1') is False
