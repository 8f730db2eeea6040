"""Schemas for data returned by the patient, practitioner and treatment services."""

from uuid import UUID

from pydantic import BaseModel, Field

from clinic_scheduler.schemas.appointments import NotificationChannel


class NotificationPreferences(BaseModel):
    """How a patient wants to be reached."""

    email: str | None = None
    sms: str | None = None
    channels_enabled: list[NotificationChannel] = Field(default_factory=list)

    def recipients(self) -> dict[NotificationChannel, str]:
        """Enabled channels that have an address."""
        addresses = {
            NotificationChannel.EMAIL: self.email,
            NotificationChannel.SMS: self.sms,
        }
        return {
            channel: address
            for channel in self.channels_enabled
            if (address := addresses.get(channel))
        }


class PractitionerInfo(BaseModel):
    """Practitioner directory entry."""

    id: UUID
    active: bool = True


class TreatmentInfo(BaseModel):
    """Treatment catalog entry."""

    id: UUID
    active: bool = True
    # Empty or null means any practitioner may perform it
    eligible_practitioners: list[UUID] | None = None

    def allows(self, practitioner_id: UUID) -> bool:
        """Check whether ``practitioner_id`` may perform this treatment."""
        if not self.eligible_practitioners:
            return True
        return practitioner_id in self.eligible_practitioners
