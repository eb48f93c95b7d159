"""
Mapping from scheduling exceptions to HTTP errors.
"""

import math

from fastapi import HTTPException, status

from app.exceptions import (
    AppointmentNotFoundError,
    BusyError,
    ConflictError,
    QueueEntryNotFoundError,
    SchedulingError,
    StaleVersionError,
    StoreError,
    ValidationError,
)


def to_http_exception(error: Exception) -> HTTPException:
    """Build the HTTPException for a failed scheduling operation."""
    if isinstance(error, StoreError):
        error = BusyError("Storage temporarily unavailable, retry shortly")

    if isinstance(error, (AppointmentNotFoundError, QueueEntryNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.to_dict())
    if isinstance(error, (ConflictError, StaleVersionError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=error.to_dict())
    if isinstance(error, BusyError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=error.to_dict(),
            headers={"Retry-After": str(max(1, math.ceil(error.retry_after)))},
        )
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=error.to_dict())
    if isinstance(error, SchedulingError):
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.to_dict())
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "internal_error", "message": "Unexpected scheduling failure"},
    )
