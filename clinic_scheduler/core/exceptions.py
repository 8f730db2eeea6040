"""Custom application exceptions."""

from datetime import datetime
from typing import Any
from uuid import UUID


class AppException(Exception):
    """Base application exception."""

    error_kind = "internal_error"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with message, status code and details."""
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Referenced patient, practitioner, treatment or appointment does not exist."""

    error_kind = "not_found"

    def __init__(self, message: str = "Resource not found", field: str | None = None):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404, details={"field": field} if field else None)


class ValidationException(AppException):
    """Malformed input."""

    error_kind = "validation_error"

    def __init__(self, message: str = "Validation error", field: str | None = None):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422, details={"field": field} if field else None)


class InvalidAssignmentException(AppException):
    """Practitioner is not eligible for the requested treatment."""

    error_kind = "invalid_assignment"

    def __init__(
        self,
        message: str = "Practitioner is not eligible for this treatment",
        practitioner_id: UUID | None = None,
        treatment_id: UUID | None = None,
    ):
        """Initialize with 400 status code."""
        super().__init__(
            message,
            status_code=400,
            details={
                "field": "practitioner_id",
                "practitioner_id": str(practitioner_id) if practitioner_id else None,
                "treatment_id": str(treatment_id) if treatment_id else None,
            },
        )


class ConflictException(AppException):
    """Conflict exception."""

    error_kind = "conflict"

    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409, details=details)


class SchedulingConflictException(ConflictException):
    """Requested window overlaps another appointment of the practitioner."""

    error_kind = "scheduling_conflict"

    def __init__(
        self,
        conflicting_id: UUID | None = None,
        conflicting_start: datetime | None = None,
        conflicting_end: datetime | None = None,
        message: str = "Practitioner already has an appointment in that time window",
    ):
        """Initialize with the conflicting appointment window."""
        details: dict[str, Any] = {}
        if conflicting_id is not None:
            details["conflicting_appointment_id"] = str(conflicting_id)
        if conflicting_start is not None:
            details["conflicting_start_time"] = conflicting_start.isoformat()
        if conflicting_end is not None:
            details["conflicting_end_time"] = conflicting_end.isoformat()
        super().__init__(message, details=details)


class InvalidStateException(ConflictException):
    """Operation is not permitted in the appointment's current state."""

    error_kind = "invalid_state"

    def __init__(self, current_state: str, operation: str):
        """Initialize with the state that blocked the operation."""
        super().__init__(
            f"Cannot {operation} an appointment in state {current_state}",
            details={"current_state": current_state, "operation": operation},
        )


class InvalidTransitionException(ConflictException):
    """Requested state change is not allowed by the state machine."""

    error_kind = "invalid_transition"

    def __init__(self, current_state: str, target_state: str):
        """Initialize with the rejected transition."""
        super().__init__(
            f"Cannot change appointment state from {current_state} to {target_state}",
            details={"current_state": current_state, "target_state": target_state},
        )


class ServiceUnavailableException(AppException):
    """A collaborator service could not be reached."""

    error_kind = "service_unavailable"

    def __init__(self, message: str = "Dependent service unavailable", service: str | None = None):
        """Initialize with 503 status code."""
        super().__init__(
            message, status_code=503, details={"service": service} if service else None
        )


class InternalErrorException(AppException):
    """Unexpected store failure surfaced without partial state."""

    error_kind = "internal_error"

    def __init__(self, message: str = "Internal error"):
        """Initialize with 500 status code."""
        super().__init__(message, status_code=500)
