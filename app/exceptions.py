"""
Custom exceptions for the scheduling engine.

Every rejection carries a stable ``code`` so the API layer and the
rescheduling worker can branch on it without string matching.
"""
from typing import Optional


class SchedulingError(Exception):
    """Base class for all recoverable scheduling errors."""

    code = "scheduling_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class ValidationError(SchedulingError):
    """Malformed input: bad interval, unknown ids, illegal transition."""

    code = "validation_error"


class AppointmentNotFoundError(ValidationError):
    """Raised when an appointment id is unknown."""

    code = "not_found"

    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"Appointment {appointment_id} not found")


class InvalidTransitionError(ValidationError):
    """Raised when the appointment status does not allow the operation."""

    code = "invalid_transition"

    def __init__(self, appointment_id: str, status: str, operation: str):
        self.appointment_id = appointment_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} appointment {appointment_id} in status {status}"
        )


class ConflictError(SchedulingError):
    """Raised when the candidate overlaps an active appointment."""

    code = "conflict"

    def __init__(self, resource: str, conflicting_appointment_id: str):
        self.resource = resource
        self.conflicting_appointment_id = conflicting_appointment_id
        super().__init__(
            f"{resource} is already booked by appointment {conflicting_appointment_id}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["resource"] = self.resource
        data["conflicting_appointment_id"] = self.conflicting_appointment_id
        return data


class StaleVersionError(SchedulingError):
    """Raised when expected_version does not match the stored version."""

    code = "stale_version"

    def __init__(self, appointment_id: str, expected_version: int, current_version: int):
        self.appointment_id = appointment_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Appointment {appointment_id} is at version {current_version}, "
            f"expected {expected_version}"
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["current_version"] = self.current_version
        return data


class BusyError(SchedulingError):
    """Transient failure (lock timeout or store error). Safe to retry."""

    code = "busy"

    def __init__(self, message: str = "Resources are busy, retry shortly", retry_after: float = 1.0):
        self.retry_after = retry_after
        super().__init__(message)


class MatchExhaustedError(SchedulingError):
    """Raised internally when no slot exists within the look-ahead window."""

    code = "match_exhausted"

    def __init__(self, appointment_id: str, lookahead_days: int):
        self.appointment_id = appointment_id
        self.lookahead_days = lookahead_days
        super().__init__(
            f"No slot found for appointment {appointment_id} within {lookahead_days} days"
        )


class QueueEntryNotFoundError(SchedulingError):
    """Raised when no queue entry exists for the appointment."""

    code = "not_found"

    def __init__(self, appointment_id: str):
        self.appointment_id = appointment_id
        super().__init__(f"No rescheduling queue entry for appointment {appointment_id}")


class StoreError(Exception):
    """Raised by repositories when the persistence layer fails."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)
