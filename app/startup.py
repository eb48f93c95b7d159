"""
Application startup and shutdown lifecycle management.

Handles:
- Scheduling engine construction
- Worker initialization (rescheduling matcher, outbox processor)
- Graceful shutdown of all workers
"""
import logging
import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app import config
from app.services.scheduling_service import get_engine

logger = logging.getLogger(__name__)


async def init_workers(app: FastAPI):
    """Initialize background workers."""
    engine = app.state.engine

    # Rescheduling matching loop
    if config.RESCHEDULE_WORKER_ENABLED:
        try:
            reschedule_worker = engine.worker
            app.state.reschedule_task = asyncio.create_task(reschedule_worker.start())
            app.state.reschedule_worker = reschedule_worker
            logger.info("✅ Reschedule worker started")
        except Exception as e:
            logger.error(f"Failed to start reschedule worker: {str(e)}")
    else:
        logger.info("📝 Reschedule worker disabled (RESCHEDULE_WORKER_ENABLED=false)")

    # Outbox processor worker
    try:
        from app.workers.outbox_processor import OutboxProcessor
        outbox_processor = OutboxProcessor(engine.events)
        app.state.outbox_task = asyncio.create_task(outbox_processor.start())
        app.state.outbox_processor = outbox_processor
        logger.info("✅ Outbox processor worker started")
    except Exception as e:
        logger.error(f"Failed to start outbox processor: {str(e)}")


async def stop_workers(app: FastAPI):
    """Stop all background workers gracefully."""
    for name in ('reschedule_worker', 'outbox_processor'):
        try:
            if hasattr(app.state, name):
                await getattr(app.state, name).stop()
                logger.info(f"✅ {name} stopped")
        except Exception as e:
            logger.error(f"Error stopping {name}: {str(e)}")

    for name in ('reschedule_task', 'outbox_task'):
        task = getattr(app.state, name, None)
        if task is None:
            continue
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            task.cancel()
            logger.warning(f"{name} did not stop in time, cancelled")
        except Exception as e:
            logger.error(f"{name} ended with error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle manager."""
    # === STARTUP ===
    logger.info("Starting Scheduling Engine...")

    app.state.engine = get_engine()
    logger.info(
        f"Backends: store={config.STORE_BACKEND}, locks={config.LOCK_BACKEND}, "
        f"worker_concurrency={app.state.engine.settings.worker_concurrency}"
    )

    await init_workers(app)

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down services...")

    await stop_workers(app)

    logger.info("Scheduling Engine shutdown complete")
