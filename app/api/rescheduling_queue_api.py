"""
Rescheduling Queue API

Staff view of appointments waiting for a new slot: filtered listing,
snooze and retry of escalated entries. Cancelling from the queue goes
through POST /api/appointments/{id}/cancel.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..exceptions import SchedulingError
from ..models.scheduling import (
    QueueEntryState,
    QueuePage,
    RescheduleQueueEntry,
    SnoozeRequest,
)
from ..services.scheduling_service import SchedulingEngine, get_engine
from .errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rescheduling-queue", tags=["rescheduling-queue"])


@router.get("", response_model=QueuePage)
async def list_queue(
    state: Optional[QueueEntryState] = None,
    clinic_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: SchedulingEngine = Depends(get_engine)
):
    """
    List queue entries, highest priority first, then oldest first.

    ## Query Parameters
    - **state**: queued | matching | escalation_required
    - **clinic_id** / **doctor_id**: Optional filters
    - **page** / **limit**: Pagination (total count is returned)
    """
    try:
        return engine.queue.list_entries(
            state=state, clinic_id=clinic_id, doctor_id=doctor_id, page=page, limit=limit
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"list_queue error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.post("/{appointment_id}/snooze", response_model=RescheduleQueueEntry)
async def snooze_entry(
    appointment_id: str,
    request: SnoozeRequest,
    engine: SchedulingEngine = Depends(get_engine)
):
    """Defer automatic matching by a number of days, weeks or months."""
    try:
        return engine.queue.snooze(appointment_id, request.number, request.time_unit)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"snooze_entry error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.post("/{appointment_id}/retry", response_model=RescheduleQueueEntry)
async def retry_entry(
    appointment_id: str,
    engine: SchedulingEngine = Depends(get_engine)
):
    """Return an escalated entry to the automatic matching loop."""
    try:
        return engine.queue.retry_escalated(appointment_id)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"retry_entry error: {e}", exc_info=True)
        raise to_http_exception(e)
