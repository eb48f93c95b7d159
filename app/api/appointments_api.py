"""
Appointment Management API

Booking, modification, cancellation and availability endpoints. Every
mutating call goes through BookingService, which holds the per-resource
locks and emits the outbound events.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ..exceptions import SchedulingError, ValidationError
from ..models.scheduling import (
    Appointment,
    AvailabilityResponse,
    BookingRequest,
    ModifyRequest,
    VersionedActionRequest,
)
from ..services.scheduling_service import SchedulingEngine, get_engine
from .errors import to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["appointments"])


# ============================================================================
# Booking Endpoints
# ============================================================================

@router.post("/appointments", response_model=Appointment, status_code=status.HTTP_201_CREATED)
async def book_appointment(
    request: BookingRequest,
    engine: SchedulingEngine = Depends(get_engine)
):
    """
    Book a new appointment.

    ## Errors
    - **409 Conflict**: Doctor, unit or patient already booked (returns resource and conflicting id)
    - **422 Unprocessable Entity**: Invalid interval, unknown ids, outside working hours
    - **503 Service Unavailable**: Locks busy, retry after the Retry-After delay
    """
    try:
        return await engine.booking.book(request)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"book_appointment error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.get("/appointments/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: str,
    engine: SchedulingEngine = Depends(get_engine)
):
    """Get a single appointment by id."""
    try:
        return engine.booking.get(appointment_id)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"get_appointment error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.get("/appointments", response_model=List[Appointment])
async def list_appointments(
    start_date: date,
    end_date: date,
    doctor_id: Optional[str] = None,
    unit_id: Optional[str] = None,
    engine: SchedulingEngine = Depends(get_engine)
):
    """
    List appointments (any status) overlapping [start_date, end_date] in UTC,
    optionally filtered by doctor and/or unit.
    """
    try:
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")
        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc)
        end = datetime.combine(end_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
        return engine.booking.list_in_range(start, end, doctor_id=doctor_id, unit_id=unit_id)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"list_appointments error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.patch("/appointments/{appointment_id}", response_model=Appointment)
async def modify_appointment(
    appointment_id: str,
    request: ModifyRequest,
    engine: SchedulingEngine = Depends(get_engine)
):
    """
    Move an appointment in time and/or to another unit.

    Requires the current version in `expected_version`; a mismatch returns
    409 with `stale_version` and the current version.
    """
    try:
        return await engine.booking.modify(
            appointment_id,
            expected_version=request.expected_version,
            start=request.start,
            end=request.end,
            unit_id=request.unit_id,
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"modify_appointment error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.post("/appointments/{appointment_id}/cancel", response_model=Appointment)
async def cancel_appointment(
    appointment_id: str,
    request: VersionedActionRequest,
    engine: SchedulingEngine = Depends(get_engine)
):
    """Cancel an appointment (also removes it from the rescheduling queue)."""
    try:
        return await engine.booking.cancel(
            appointment_id, expected_version=request.expected_version, reason=request.reason
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"cancel_appointment error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.post("/appointments/{appointment_id}/complete", response_model=Appointment)
async def complete_appointment(
    appointment_id: str,
    request: VersionedActionRequest,
    engine: SchedulingEngine = Depends(get_engine)
):
    try:
        return await engine.booking.complete(appointment_id, expected_version=request.expected_version)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"complete_appointment error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.post("/appointments/{appointment_id}/request-reschedule", response_model=Appointment)
async def request_reschedule(
    appointment_id: str,
    request: VersionedActionRequest,
    engine: SchedulingEngine = Depends(get_engine)
):
    """Patient asked to move the appointment; it is queued with top priority."""
    try:
        return await engine.booking.request_reschedule(
            appointment_id, expected_version=request.expected_version
        )
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"request_reschedule error: {e}", exc_info=True)
        raise to_http_exception(e)


# ============================================================================
# Availability
# ============================================================================

@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    doctor_id: str = Query(..., min_length=1),
    unit_id: str = Query(..., min_length=1),
    date: date = Query(..., description="Calendar date in the clinic timezone"),
    engine: SchedulingEngine = Depends(get_engine)
):
    """Open [start, end) windows for a doctor+unit pair on a date."""
    try:
        windows = engine.resolver.available_windows(doctor_id, unit_id, date)
        return AvailabilityResponse(doctor_id=doctor_id, unit_id=unit_id, date=date, windows=windows)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"get_availability error: {e}", exc_info=True)
        raise to_http_exception(e)
