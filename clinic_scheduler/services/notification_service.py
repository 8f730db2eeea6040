"""Appointment notifications: patient messages and downstream events."""

import asyncio
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any, Protocol
from uuid import UUID
from zoneinfo import ZoneInfo

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinic_scheduler.models.appointments import appointments
from clinic_scheduler.schemas.appointments import (
    AppointmentResponse,
    AppointmentState,
    DeliveryStatus,
    NotificationChannel,
    NotificationLogEntry,
)
from clinic_scheduler.services.directory import PatientDirectory

logger = structlog.get_logger(__name__)


class NotificationDispatcher(Protocol):
    """Fire-and-forget sink for appointment lifecycle notifications."""

    def notify_booked(self, appointment: AppointmentResponse) -> None: ...

    def notify_updated(self, appointment: AppointmentResponse) -> None: ...

    def notify_rescheduled(
        self,
        original: AppointmentResponse,
        successor: AppointmentResponse,
    ) -> None: ...

    def notify_state_changed(
        self,
        appointment: AppointmentResponse,
        previous_state: AppointmentState,
    ) -> None: ...

    async def drain(self) -> None: ...


class HttpNotificationGateway:
    """Client for the notification service (email/SMS delivery and event bus)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize gateway client."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            response = await client.post(path, json=payload)
            response.raise_for_status()

    async def send_message(
        self,
        channel: NotificationChannel,
        recipient: str,
        template: str,
        data: dict[str, Any],
    ) -> None:
        """Deliver a templated message over ``channel``."""
        await self._post(
            f"/messages/{channel.value}",
            {"recipient": recipient, "template": template, "data": data},
        )

    async def publish_event(self, event: str, data: dict[str, Any]) -> None:
        """Publish a lifecycle event for downstream consumers such as billing."""
        await self._post("/events", {"event": event, "data": data})


def _event_payload(appointment: AppointmentResponse) -> dict[str, Any]:
    return {
        "appointment_id": str(appointment.id),
        "patient_id": str(appointment.patient_id),
        "practitioner_id": str(appointment.practitioner_id),
        "treatment_id": str(appointment.treatment_id),
        "start_time": appointment.start_time.isoformat(),
        "end_time": appointment.end_time.isoformat(),
        "state": appointment.state.value,
    }


class AppointmentNotifier:
    """
    Dispatches notifications as background tasks.

    Every notify_* call returns immediately. Failures inside a task are logged
    with the appointment id (and channel, where one applies) and never reach
    the caller.
    """

    def __init__(
        self,
        patients: PatientDirectory,
        gateway: HttpNotificationGateway,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 10.0,
        clinic_timezone: str = "UTC",
    ):
        """Initialize notifier with its collaborators."""
        self.patients = patients
        self.gateway = gateway
        self.session_factory = session_factory
        self.timeout = timeout
        self.tz = ZoneInfo(clinic_timezone)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of notification tasks still running."""
        return len(self._tasks)

    def notify_booked(self, appointment: AppointmentResponse) -> None:
        """Confirm a new booking to the patient."""
        self._dispatch(
            "appointment_booked",
            appointment.id,
            self._notify_patient(appointment, "appointment_booked"),
        )

    def notify_updated(self, appointment: AppointmentResponse) -> None:
        """Tell the patient the appointment time changed."""
        self._dispatch(
            "appointment_updated",
            appointment.id,
            self._notify_patient(appointment, "appointment_updated"),
        )

    def notify_rescheduled(
        self,
        original: AppointmentResponse,
        successor: AppointmentResponse,
    ) -> None:
        """Confirm the new booking and publish the reschedule."""
        self._dispatch(
            "appointment_rescheduled",
            successor.id,
            self._notify_patient(
                successor,
                "appointment_rescheduled",
                {"original_appointment_id": str(original.id)},
            ),
        )
        self._dispatch(
            "appointment_rescheduled_event",
            original.id,
            self.gateway.publish_event(
                "appointment.rescheduled",
                {"original": _event_payload(original), "successor": _event_payload(successor)},
            ),
        )

    def notify_state_changed(
        self,
        appointment: AppointmentResponse,
        previous_state: AppointmentState,
    ) -> None:
        """Publish a state change; completion makes a clinical record eligible."""
        data = _event_payload(appointment)
        data["previous_state"] = previous_state.value
        if appointment.state == AppointmentState.COMPLETED:
            data["clinical_record_eligible"] = True
        if appointment.state in (AppointmentState.CANCELED, AppointmentState.NO_SHOW):
            data["canceled_by"] = appointment.canceled_by.value
            data["cancellation_reason"] = appointment.cancellation_reason

        self._dispatch(
            "appointment_state_changed",
            appointment.id,
            self.gateway.publish_event(f"appointment.{appointment.state.value}", data),
        )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for outstanding notifications; cancel whatever outlives ``timeout``."""
        if not self._tasks:
            return
        _, still_pending = await asyncio.wait(set(self._tasks), timeout=timeout or self.timeout)
        if still_pending:
            logger.warning("notification_tasks_abandoned", count=len(still_pending))
            for task in still_pending:
                task.cancel()
            await asyncio.gather(*still_pending, return_exceptions=True)

    def _dispatch(
        self,
        action: str,
        appointment_id: UUID,
        coro: Coroutine[Any, Any, None],
    ) -> None:
        task = asyncio.create_task(self._run(action, appointment_id, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(
        self,
        action: str,
        appointment_id: UUID,
        coro: Coroutine[Any, Any, None],
    ) -> None:
        try:
            await asyncio.wait_for(coro, timeout=self.timeout)
        except Exception as e:
            logger.warning(
                "notification_dispatch_failed",
                action=action,
                appointment_id=str(appointment_id),
                error=str(e) or e.__class__.__name__,
            )

    async def _notify_patient(
        self,
        appointment: AppointmentResponse,
        template: str,
        extra: dict[str, Any] | None = None,
    ) -> None:
        preferences = await self.patients.get_notification_preferences(appointment.patient_id)
        recipients = preferences.recipients()
        if not recipients:
            logger.info("notification_skipped_no_channels", appointment_id=str(appointment.id))
            return

        local_start = appointment.start_time.astimezone(self.tz)
        data = _event_payload(appointment)
        data["local_start"] = local_start.strftime("%A, %B %d at %I:%M %p")
        if extra:
            data.update(extra)

        entries: list[NotificationLogEntry] = []
        for channel, recipient in recipients.items():
            try:
                await self.gateway.send_message(channel, recipient, template, data)
                status = DeliveryStatus.SENT
                logger.info(
                    "notification_sent",
                    appointment_id=str(appointment.id),
                    channel=channel.value,
                    template=template,
                )
            except Exception as e:
                status = DeliveryStatus.FAILED
                logger.warning(
                    "notification_channel_failed",
                    appointment_id=str(appointment.id),
                    channel=channel.value,
                    error=str(e) or e.__class__.__name__,
                )
            entries.append(
                NotificationLogEntry(channel=channel, timestamp=datetime.now(UTC), status=status)
            )

        await self._record_deliveries(appointment.id, entries)

    async def _record_deliveries(
        self,
        appointment_id: UUID,
        entries: list[NotificationLogEntry],
    ) -> None:
        """Append delivery attempts to the appointment's notification log."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(appointments.c.notifications)
                .where(appointments.c.id == appointment_id)
                .with_for_update()
            )
            row = result.fetchone()
            if row is None:
                logger.warning(
                    "notification_log_target_missing", appointment_id=str(appointment_id)
                )
                return

            log = list(row.notifications or [])
            log.extend(entry.model_dump(mode="json") for entry in entries)

            await session.execute(
                update(appointments)
                .where(appointments.c.id == appointment_id)
                .values(notifications=log)
            )
            await session.commit()
