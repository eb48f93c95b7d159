"""
Master-data Webhook Handlers

Clinic administration sends these after it has updated a doctor's schedule
or closed a unit. The engine invalidates the Scheduled appointments that no
longer fit and queues them for rescheduling. Both notices are idempotent, so
the sender can safely retry on 503.
"""

import hashlib
import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from .. import config
from ..api.errors import to_http_exception
from ..exceptions import SchedulingError, ValidationError
from ..models.scheduling import (
    DateRange,
    InvalidationResponse,
    ScheduleChangedNotice,
    TimeRange,
    UnitClosedNotice,
)
from ..services.scheduling_service import SchedulingEngine, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/master-data", tags=["webhooks"])


def verify_webhook_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify webhook signature for security"""
    expected_signature = hmac.new(
        secret.encode(),
        payload,
        hashlib.sha256
    ).hexdigest()
    return hmac.compare_digest(signature, expected_signature)


async def require_signature(request: Request):
    """Reject unsigned notices when MASTER_DATA_WEBHOOK_SECRET is configured."""
    if not config.MASTER_DATA_WEBHOOK_SECRET:
        return
    body = await request.body()
    signature = request.headers.get("X-Signature", "")
    if not verify_webhook_signature(body, signature, config.MASTER_DATA_WEBHOOK_SECRET):
        logger.warning(f"🔒 Rejected master-data webhook with invalid signature: {request.url.path}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/schedule-changed", response_model=InvalidationResponse,
             dependencies=[Depends(require_signature)])
async def schedule_changed(
    notice: ScheduleChangedNotice,
    engine: SchedulingEngine = Depends(get_engine)
):
    """
    A doctor's schedule changed for the given dates.

    ## Request Body
    - **doctor_id**: Doctor whose schedule changed
    - **start_date** / **end_date**: Affected dates (inclusive)
    """
    logger.info(
        f"Received schedule-changed notice - doctor: {notice.doctor_id}, "
        f"dates: {notice.start_date} to {notice.end_date}"
    )
    try:
        if notice.end_date < notice.start_date:
            raise ValidationError("end_date must not be before start_date")
        invalidated = await engine.booking.on_schedule_changed(
            notice.doctor_id,
            DateRange(start_date=notice.start_date, end_date=notice.end_date),
        )
        return InvalidationResponse(invalidated_appointment_ids=invalidated)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"schedule_changed webhook error: {e}", exc_info=True)
        raise to_http_exception(e)


@router.post("/unit-closed", response_model=InvalidationResponse,
             dependencies=[Depends(require_signature)])
async def unit_closed(
    notice: UnitClosedNotice,
    engine: SchedulingEngine = Depends(get_engine)
):
    """
    A unit is closed for [start, end).

    ## Request Body
    - **unit_id**: Closed unit
    - **start** / **end**: Closure interval (ISO 8601 with offset)
    """
    logger.info(
        f"Received unit-closed notice - unit: {notice.unit_id}, "
        f"{notice.start.isoformat()} to {notice.end.isoformat()}"
    )
    try:
        if notice.start >= notice.end:
            raise ValidationError("start must be before end")
        invalidated = await engine.booking.on_unit_closed(
            notice.unit_id, TimeRange(start=notice.start, end=notice.end)
        )
        return InvalidationResponse(invalidated_appointment_ids=invalidated)
    except SchedulingError as e:
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"unit_closed webhook error: {e}", exc_info=True)
        raise to_http_exception(e)
