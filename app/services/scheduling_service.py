"""
Scheduling engine wiring.

Builds the resolver, checker, locks, queue, booking service and matching
loop over one pair of repositories and one outbox, selected by the
STORE_BACKEND and LOCK_BACKEND settings.
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app import config
from app.config import SchedulingSettings
from app.services.appointment_store import (
    AppointmentRepository,
    InMemoryAppointmentRepository,
    InMemoryQueueRepository,
    QueueRepository,
)
from app.services.availability_service import AvailabilityResolver
from app.services.booking_service import BookingService
from app.services.conflict_detector import ConflictChecker
from app.services.locks import RedisResourceLockManager, ResourceLockManager
from app.services.master_data import MasterDataDirectory, load_master_data
from app.services.outbox_service import EventPublisher, InMemoryOutbox, SupabaseOutbox
from app.services.rescheduling_queue import RescheduleQueue, utc_now
from app.workers.reschedule_worker import RescheduleWorker

logger = logging.getLogger(__name__)


@dataclass
class SchedulingEngine:
    """Every engine component, sharing one set of stores."""
    settings: SchedulingSettings
    directory: MasterDataDirectory
    appointments: AppointmentRepository
    queue_store: QueueRepository
    events: EventPublisher
    locks: object
    resolver: AvailabilityResolver
    checker: ConflictChecker
    queue: RescheduleQueue
    booking: BookingService
    worker: RescheduleWorker


def assemble_engine(
    directory: MasterDataDirectory,
    appointments: AppointmentRepository,
    queue_store: QueueRepository,
    events: EventPublisher,
    locks=None,
    settings: Optional[SchedulingSettings] = None,
    clock: Callable[[], datetime] = utc_now,
    rng: Optional[random.Random] = None,
) -> SchedulingEngine:
    """Wire components over explicit stores (used by build_engine and tests)."""
    settings = settings or SchedulingSettings()
    locks = locks or ResourceLockManager(timeout_seconds=settings.lock_timeout_seconds)

    resolver = AvailabilityResolver(directory, appointments, settings.slot_granularity_minutes)
    checker = ConflictChecker(appointments)
    queue = RescheduleQueue(queue_store, events, settings, clock=clock, rng=rng)
    booking = BookingService(
        appointments, directory, resolver, checker, locks, queue, events,
        settings=settings, clock=clock,
    )
    worker = RescheduleWorker(booking, queue, resolver, directory, appointments,
                              settings=settings, clock=clock)

    return SchedulingEngine(
        settings=settings,
        directory=directory,
        appointments=appointments,
        queue_store=queue_store,
        events=events,
        locks=locks,
        resolver=resolver,
        checker=checker,
        queue=queue,
        booking=booking,
        worker=worker,
    )


def build_engine(settings: Optional[SchedulingSettings] = None) -> SchedulingEngine:
    """Build the engine from environment configuration."""
    settings = settings or SchedulingSettings.from_env()

    if config.STORE_BACKEND == "supabase":
        from app.database import get_scheduling_client
        from app.services.supabase_store import (
            SupabaseAppointmentRepository,
            SupabaseMasterData,
            SupabaseQueueRepository,
        )

        client = get_scheduling_client()
        directory = SupabaseMasterData(client)
        appointments = SupabaseAppointmentRepository(client)
        queue_store = SupabaseQueueRepository(client)
        events = SupabaseOutbox(client)
    elif config.STORE_BACKEND == "memory":
        if not config.MASTER_DATA_FILE:
            raise ValueError("STORE_BACKEND=memory requires MASTER_DATA_FILE (clinics and doctors JSON)")
        directory = load_master_data(config.MASTER_DATA_FILE)
        appointments = InMemoryAppointmentRepository()
        queue_store = InMemoryQueueRepository()
        events = InMemoryOutbox()
    else:
        raise ValueError(f"Unknown STORE_BACKEND '{config.STORE_BACKEND}'")

    if config.LOCK_BACKEND == "redis":
        locks = RedisResourceLockManager(
            config.get_redis_client(), timeout_seconds=settings.lock_timeout_seconds
        )
    elif config.LOCK_BACKEND == "memory":
        locks = ResourceLockManager(timeout_seconds=settings.lock_timeout_seconds)
    else:
        raise ValueError(f"Unknown LOCK_BACKEND '{config.LOCK_BACKEND}'")

    logger.info(
        f"Scheduling engine built: store={config.STORE_BACKEND}, locks={config.LOCK_BACKEND}"
    )
    return assemble_engine(directory, appointments, queue_store, events, locks, settings)


# Global engine instance
_engine: Optional[SchedulingEngine] = None


def get_engine() -> SchedulingEngine:
    """Get or create the engine singleton."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def set_engine(engine: Optional[SchedulingEngine]):
    """Replace the engine singleton (startup wiring and tests)."""
    global _engine
    _engine = engine
