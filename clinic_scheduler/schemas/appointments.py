"""Appointment schemas for request/response validation."""

from datetime import date, datetime
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from clinic_scheduler.core.scheduling import AppointmentState, CanceledBy, ensure_utc

__all__ = [
    "AppointmentCancel",
    "AppointmentCreate",
    "AppointmentFilters",
    "AppointmentListResponse",
    "AppointmentReschedule",
    "AppointmentResponse",
    "AppointmentState",
    "AppointmentStateChange",
    "AppointmentUpdate",
    "AvailabilityResponse",
    "CanceledBy",
    "DailyAgendaResponse",
    "DeliveryStatus",
    "FollowUpSuggestion",
    "NotificationChannel",
    "NotificationLogEntry",
    "PractitionerAppointments",
    "RescheduleResponse",
    "StateChangeResponse",
]


class NotificationChannel(str, Enum):
    """Notification delivery channel."""

    EMAIL = "email"
    SMS = "sms"


class DeliveryStatus(str, Enum):
    """Outcome of a notification attempt."""

    SENT = "sent"
    FAILED = "failed"
    DELIVERED = "delivered"


def _utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


class NotificationLogEntry(BaseModel):
    """A single notification attempt recorded on an appointment."""

    channel: NotificationChannel
    timestamp: datetime
    status: DeliveryStatus


class AppointmentCreate(BaseModel):
    """Schema for booking a new appointment."""

    patient_id: UUID
    practitioner_id: UUID
    treatment_id: UUID
    start_time: datetime
    end_time: datetime
    notes: str | None = Field(None, max_length=2000)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Store every instant in UTC."""
        return ensure_utc(v)


class AppointmentUpdate(BaseModel):
    """Schema for plain field updates on an existing appointment."""

    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = Field(None, max_length=2000)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        """Store every instant in UTC."""
        return _utc(v)


class AppointmentStateChange(BaseModel):
    """Schema for an explicit state transition."""

    state: AppointmentState
    notes: str | None = Field(None, max_length=2000)
    reason: str | None = Field(None, max_length=500)
    canceled_by: CanceledBy | None = None
    # Only used when moving to ``rescheduled``
    new_start_time: datetime | None = None
    new_end_time: datetime | None = None

    @field_validator("new_start_time", "new_end_time")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        """Store every instant in UTC."""
        return _utc(v)


class AppointmentReschedule(BaseModel):
    """Schema for moving an appointment to a new window."""

    start_time: datetime
    end_time: datetime
    reason: str | None = Field(None, max_length=500)

    @field_validator("start_time", "end_time")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Store every instant in UTC."""
        return ensure_utc(v)


class AppointmentCancel(BaseModel):
    """Schema for canceling an appointment."""

    reason: str | None = Field(None, max_length=500)
    canceled_by: CanceledBy | None = None


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: UUID
    practitioner_id: UUID
    treatment_id: UUID
    original_appointment_id: UUID | None = None
    start_time: datetime
    end_time: datetime
    state: AppointmentState
    notes: str | None = None
    canceled_by: CanceledBy = CanceledBy.NOT_APPLICABLE
    cancellation_reason: str | None = None
    notifications: list[NotificationLogEntry] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("start_time", "end_time", "created_at", "updated_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Return every instant in UTC, whatever the store hands back."""
        return ensure_utc(v)

    @field_validator("notifications", mode="before")
    @classmethod
    def default_notifications(cls, v: list | None) -> list:
        """Treat a missing log as empty."""
        return v or []


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    patient_id: UUID | None = None
    practitioner_id: UUID | None = None
    treatment_id: UUID | None = None
    state: AppointmentState | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
    order: Literal["asc", "desc"] = "asc"

    @field_validator("from_date", "to_date")
    @classmethod
    def normalize_timezone(cls, v: datetime | None) -> datetime | None:
        """Compare against stored UTC instants."""
        return _utc(v)


class PractitionerAppointments(BaseModel):
    """A practitioner's appointments within a daily agenda."""

    practitioner_id: UUID
    appointments: list[AppointmentResponse]


class DailyAgendaResponse(BaseModel):
    """Appointments of one calendar day, flat and grouped by practitioner."""

    day: date
    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]
    groups: list[PractitionerAppointments]


class RescheduleResponse(BaseModel):
    """Retired original and its successor."""

    original: AppointmentResponse
    successor: AppointmentResponse


class FollowUpSuggestion(BaseModel):
    """Next step offered to the client after a transition."""

    message: str
    clinical_record_url: str


class StateChangeResponse(BaseModel):
    """Result of an explicit state transition."""

    appointment: AppointmentResponse
    follow_up: FollowUpSuggestion | None = None


class AvailabilityResponse(BaseModel):
    """Existing appointments intersecting a candidate window."""

    practitioner_id: UUID
    start_time: datetime
    end_time: datetime
    available: bool
    conflicts: list[AppointmentResponse]
