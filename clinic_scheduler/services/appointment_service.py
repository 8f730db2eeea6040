"""Appointment service for business logic."""

from collections.abc import Awaitable, Callable
from datetime import date, datetime, time, timedelta
from typing import Any, Literal, TypeVar
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from clinic_scheduler.config import settings
from clinic_scheduler.core.exceptions import (
    InternalErrorException,
    InvalidAssignmentException,
    InvalidStateException,
    NotFoundException,
    SchedulingConflictException,
    ValidationException,
)
from clinic_scheduler.core.scheduling import (
    CANCELLATION_ACTORS,
    NO_SHOW_REASON,
    RESCHEDULE_REASON,
    VOID_STATES,
    canceled_by_for_role,
    ensure_utc,
    is_terminal,
    next_timestamp,
    validate_transition,
    validate_window,
    windows_overlap,
)
from clinic_scheduler.database import EXCLUSION_VIOLATION, is_transient_error, sqlstate
from clinic_scheduler.models.appointments import appointments
from clinic_scheduler.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentState,
    AppointmentStateChange,
    AppointmentUpdate,
    AvailabilityResponse,
    CanceledBy,
    DailyAgendaResponse,
    FollowUpSuggestion,
    PractitionerAppointments,
    RescheduleResponse,
    StateChangeResponse,
)
from clinic_scheduler.services.directory import (
    PatientDirectory,
    PractitionerDirectory,
    TreatmentCatalog,
)
from clinic_scheduler.services.notification_service import NotificationDispatcher

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class AppointmentService:
    """Service for booking appointments and driving their lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        patients: PatientDirectory,
        practitioners: PractitionerDirectory,
        treatments: TreatmentCatalog,
        notifier: NotificationDispatcher,
        max_retries: int | None = None,
        clinic_timezone: str | None = None,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.patients = patients
        self.practitioners = practitioners
        self.treatments = treatments
        self.notifier = notifier
        self.max_retries = max_retries or settings.scheduler_max_retries
        self.tz = ZoneInfo(clinic_timezone or settings.clinic_timezone)
        # Last window checked for overlap, used to explain exclusion violations
        self._checked_window: tuple[UUID, datetime, datetime, UUID | None] | None = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def book(self, data: AppointmentCreate) -> AppointmentResponse:
        """
        Book a new appointment.

        Args:
            data: Booking request

        Returns:
            Created appointment in state ``scheduled``

        Raises:
            ValidationException: If the window is empty or inverted
            NotFoundException: If patient, practitioner or treatment is unknown or inactive
            InvalidAssignmentException: If the practitioner may not perform the treatment
            SchedulingConflictException: If the practitioner is already booked
        """
        validate_window(data.start_time, data.end_time)
        await self._check_references(data.patient_id, data.practitioner_id, data.treatment_id)

        async def work() -> AppointmentResponse:
            await self._ensure_available(data.practitioner_id, data.start_time, data.end_time)
            return await self._insert(
                patient_id=data.patient_id,
                practitioner_id=data.practitioner_id,
                treatment_id=data.treatment_id,
                start_time=data.start_time,
                end_time=data.end_time,
                notes=data.notes,
            )

        appointment = await self._run_in_transaction("book", work)

        logger.info(
            "appointment_booked",
            appointment_id=str(appointment.id),
            practitioner_id=str(appointment.practitioner_id),
            start_time=appointment.start_time.isoformat(),
        )
        self._notify("booked", appointment.id, self.notifier.notify_booked, appointment)
        return appointment

    async def update_appointment(
        self,
        appointment_id: UUID,
        data: AppointmentUpdate,
    ) -> AppointmentResponse:
        """
        Update the time window or notes of a live appointment.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the appointment is in a terminal state
            ValidationException: If the new window is empty or inverted
            SchedulingConflictException: If the new window overlaps another booking
        """
        changes = data.model_dump(exclude_unset=True)

        async def work() -> tuple[AppointmentResponse, bool]:
            current = self._to_response(await self._fetch(appointment_id, for_update=True))
            if is_terminal(current.state):
                raise InvalidStateException(current.state.value, "update")

            new_start = changes.get("start_time") or current.start_time
            new_end = changes.get("end_time") or current.end_time
            window_changed = new_start != current.start_time or new_end != current.end_time

            values: dict[str, Any] = {}
            if window_changed:
                validate_window(new_start, new_end)
                await self._ensure_available(
                    current.practitioner_id, new_start, new_end, exclude_id=current.id
                )
                values["start_time"] = new_start
                values["end_time"] = new_end

            if "notes" in changes:
                values["notes"] = changes["notes"]

            if not values:
                # No changes, return current state
                return current, False

            values["updated_at"] = next_timestamp(current.updated_at)
            return await self._write(appointment_id, values), window_changed

        appointment, window_changed = await self._run_in_transaction("update", work)

        if window_changed:
            logger.info(
                "appointment_window_changed",
                appointment_id=str(appointment.id),
                start_time=appointment.start_time.isoformat(),
                end_time=appointment.end_time.isoformat(),
            )
            self._notify("updated", appointment.id, self.notifier.notify_updated, appointment)
        return appointment

    async def change_state(
        self,
        appointment_id: UUID,
        data: AppointmentStateChange,
        caller_role: str | None = None,
    ) -> StateChangeResponse:
        """
        Move an appointment through the state machine.

        Moving to ``rescheduled`` requires ``new_start_time``/``new_end_time``
        and is carried out as a reschedule, so a successor always exists.

        Raises:
            NotFoundException: If appointment not found
            InvalidTransitionException: If the state machine forbids the change
            ValidationException: If cancellation data or reschedule window is missing
        """
        if data.state == AppointmentState.RESCHEDULED:
            current = self._to_response(await self._fetch(appointment_id))
            validate_transition(current.state, AppointmentState.RESCHEDULED)
            if data.new_start_time is None or data.new_end_time is None:
                raise ValidationException(
                    "new_start_time and new_end_time are required to reschedule",
                    field="new_start_time",
                )
            result = await self.reschedule(
                appointment_id,
                AppointmentReschedule(
                    start_time=data.new_start_time,
                    end_time=data.new_end_time,
                    reason=data.reason or data.notes,
                ),
                caller_role=caller_role,
            )
            return StateChangeResponse(appointment=result.original)

        appointment = await self._transition(appointment_id, data, caller_role)

        follow_up = None
        if appointment.state == AppointmentState.COMPLETED:
            follow_up = FollowUpSuggestion(
                message="A clinical record can now be created for this completed appointment",
                clinical_record_url=f"/clinical-records?appointment_id={appointment.id}",
            )
        return StateChangeResponse(appointment=appointment, follow_up=follow_up)

    async def cancel(
        self,
        appointment_id: UUID,
        data: AppointmentCancel,
        caller_role: str | None = None,
    ) -> AppointmentResponse:
        """
        Cancel a live appointment.

        Patients can only cancel on their own behalf; other callers may name
        who canceled, defaulting to their own side.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the appointment is already terminal
            ValidationException: If the reason is blank or canceled_by is invalid
        """
        if caller_role == "patient":
            canceled_by = CanceledBy.PATIENT
        else:
            canceled_by = data.canceled_by or canceled_by_for_role(caller_role)

        change = AppointmentStateChange(
            state=AppointmentState.CANCELED,
            reason=data.reason,
            canceled_by=canceled_by,
        )
        return await self._transition(appointment_id, change, caller_role, operation="cancel")

    async def reschedule(
        self,
        appointment_id: UUID,
        data: AppointmentReschedule,
        caller_role: str | None = None,
    ) -> RescheduleResponse:
        """
        Retire an appointment and book its successor in one transaction.

        Returns:
            The original (now ``rescheduled``) and the new ``scheduled`` appointment

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the appointment is already terminal
            ValidationException: If the new window is empty or inverted
            SchedulingConflictException: If the new window overlaps another booking
        """

        async def work() -> tuple[AppointmentResponse, AppointmentResponse]:
            current = self._to_response(await self._fetch(appointment_id, for_update=True))
            if is_terminal(current.state):
                raise InvalidStateException(current.state.value, "reschedule")
            validate_transition(current.state, AppointmentState.RESCHEDULED)
            validate_window(data.start_time, data.end_time)

            # The original is about to be retired, so it does not block the new window
            await self._ensure_available(
                current.practitioner_id, data.start_time, data.end_time, exclude_id=current.id
            )

            reason = (data.reason or "").strip() or RESCHEDULE_REASON
            original = await self._write(
                current.id,
                {
                    "state": AppointmentState.RESCHEDULED.value,
                    "canceled_by": canceled_by_for_role(caller_role).value,
                    "cancellation_reason": reason,
                    "updated_at": next_timestamp(current.updated_at),
                },
            )
            successor = await self._insert(
                patient_id=current.patient_id,
                practitioner_id=current.practitioner_id,
                treatment_id=current.treatment_id,
                start_time=data.start_time,
                end_time=data.end_time,
                notes=current.notes,
                original_appointment_id=current.id,
            )
            return original, successor

        original, successor = await self._run_in_transaction("reschedule", work)

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(original.id),
            successor_id=str(successor.id),
            start_time=successor.start_time.isoformat(),
        )
        self._notify(
            "rescheduled", successor.id, self.notifier.notify_rescheduled, original, successor
        )
        return RescheduleResponse(original=original, successor=successor)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        return self._to_response(await self._fetch(appointment_id))

    async def list_appointments(self, filters: AppointmentFilters) -> AppointmentListResponse:
        """
        List appointments with filtering and pagination.

        Args:
            filters: Filter and pagination parameters

        Returns:
            Paginated list of appointments ordered by start time
        """
        conditions = []

        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)

        if filters.practitioner_id:
            conditions.append(appointments.c.practitioner_id == filters.practitioner_id)

        if filters.treatment_id:
            conditions.append(appointments.c.treatment_id == filters.treatment_id)

        if filters.state:
            conditions.append(appointments.c.state == filters.state.value)

        if filters.from_date:
            conditions.append(appointments.c.start_time >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.start_time <= filters.to_date)

        if filters.order == "desc":
            ordering = (appointments.c.start_time.desc(), appointments.c.id.desc())
        else:
            ordering = (appointments.c.start_time.asc(), appointments.c.id.asc())

        total, items = await self._page(conditions, ordering, filters.page, filters.page_size)
        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=items,
        )

    async def list_by_practitioner(
        self,
        practitioner_id: UUID,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
        state: AppointmentState | None = None,
        page: int = 1,
        page_size: int = 20,
        order: Literal["asc", "desc"] = "asc",
    ) -> AppointmentListResponse:
        """
        List a practitioner's appointments in start order.

        Raises:
            NotFoundException: If the practitioner is unknown
        """
        if not await self.practitioners.exists(practitioner_id):
            raise NotFoundException("Practitioner not found", field="practitioner_id")

        filters = AppointmentFilters(
            practitioner_id=practitioner_id,
            from_date=from_date,
            to_date=to_date,
            state=state,
            page=page,
            page_size=page_size,
            order=order,
        )
        return await self.list_appointments(filters)

    async def list_by_date(
        self,
        day: date,
        practitioner_id: UUID | None = None,
        page: int = 1,
        page_size: int = 100,
    ) -> DailyAgendaResponse:
        """
        List one clinic calendar day, grouped by practitioner.

        Args:
            day: Calendar day in the clinic timezone
            practitioner_id: Restrict to one practitioner
            page: Page number
            page_size: Items per page

        Returns:
            Flat page of appointments plus per-practitioner groups
        """
        day_start = datetime.combine(day, time.min, tzinfo=self.tz)
        day_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self.tz)

        conditions = [
            appointments.c.start_time >= ensure_utc(day_start),
            appointments.c.start_time < ensure_utc(day_end),
        ]
        if practitioner_id:
            conditions.append(appointments.c.practitioner_id == practitioner_id)

        total, items = await self._page(
            conditions,
            (appointments.c.start_time.asc(), appointments.c.id.asc()),
            page,
            page_size,
        )

        groups: dict[UUID, list[AppointmentResponse]] = {}
        for item in items:
            groups.setdefault(item.practitioner_id, []).append(item)

        return DailyAgendaResponse(
            day=day,
            total=total,
            page=page,
            page_size=page_size,
            items=items,
            groups=[
                PractitionerAppointments(practitioner_id=pid, appointments=group)
                for pid, group in groups.items()
            ],
        )

    async def check_availability(
        self,
        practitioner_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_id: UUID | None = None,
    ) -> AvailabilityResponse:
        """
        Report the practitioner's live appointments that intersect a window.

        Raises:
            ValidationException: If the window is empty or inverted
            NotFoundException: If the practitioner is unknown
        """
        validate_window(start_time, end_time)
        if not await self.practitioners.exists(practitioner_id):
            raise NotFoundException("Practitioner not found", field="practitioner_id")

        conflicts = await self._find_conflicts(practitioner_id, start_time, end_time, exclude_id)
        return AvailabilityResponse(
            practitioner_id=practitioner_id,
            start_time=ensure_utc(start_time),
            end_time=ensure_utc(end_time),
            available=not conflicts,
            conflicts=conflicts,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _check_references(
        self,
        patient_id: UUID,
        practitioner_id: UUID,
        treatment_id: UUID,
    ) -> None:
        if not await self.patients.exists(patient_id):
            raise NotFoundException("Patient not found", field="patient_id")

        if not await self.practitioners.exists(practitioner_id):
            raise NotFoundException("Practitioner not found", field="practitioner_id")

        if not await self.practitioners.is_active(practitioner_id):
            raise NotFoundException("Practitioner is not active", field="practitioner_id")

        treatment = await self.treatments.get(treatment_id)
        if treatment is None:
            raise NotFoundException("Treatment not found", field="treatment_id")

        if not treatment.active:
            raise NotFoundException("Treatment is not active", field="treatment_id")

        if not treatment.allows(practitioner_id):
            raise InvalidAssignmentException(
                practitioner_id=practitioner_id,
                treatment_id=treatment_id,
            )

    async def _transition(
        self,
        appointment_id: UUID,
        data: AppointmentStateChange,
        caller_role: str | None,
        operation: str | None = None,
    ) -> AppointmentResponse:
        """Apply a non-reschedule state change; ``operation`` rejects terminal states first."""
        target = data.state

        async def work() -> tuple[AppointmentState, AppointmentResponse]:
            current = self._to_response(await self._fetch(appointment_id, for_update=True))
            if operation and is_terminal(current.state):
                raise InvalidStateException(current.state.value, operation)
            validate_transition(current.state, target)

            values: dict[str, Any] = {"state": target.value}
            if data.notes is not None:
                values["notes"] = data.notes

            if target == AppointmentState.CANCELED:
                reason = (data.reason or data.notes or "").strip()
                if not reason:
                    raise ValidationException("A cancellation reason is required", field="reason")
                canceled_by = data.canceled_by or canceled_by_for_role(caller_role)
                if canceled_by not in CANCELLATION_ACTORS:
                    raise ValidationException(
                        "canceled_by must be one of patient, practitioner, system",
                        field="canceled_by",
                    )
                values["canceled_by"] = canceled_by.value
                values["cancellation_reason"] = reason
            elif target == AppointmentState.NO_SHOW:
                values["canceled_by"] = CanceledBy.NOT_APPLICABLE.value
                values["cancellation_reason"] = (data.reason or "").strip() or NO_SHOW_REASON

            values["updated_at"] = next_timestamp(current.updated_at)
            return current.state, await self._write(appointment_id, values)

        previous, appointment = await self._run_in_transaction(operation or "change_state", work)

        logger.info(
            "appointment_state_changed",
            appointment_id=str(appointment.id),
            from_state=previous.value,
            to_state=appointment.state.value,
        )
        self._notify(
            "state_changed",
            appointment.id,
            self.notifier.notify_state_changed,
            appointment,
            previous,
        )
        return appointment

    async def _fetch(self, appointment_id: UUID, for_update: bool = False) -> Row:
        stmt = select(appointments).where(appointments.c.id == appointment_id)
        if for_update:
            stmt = stmt.with_for_update()

        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            raise NotFoundException("Appointment not found", field="appointment_id")
        return row

    async def _find_conflicts(
        self,
        practitioner_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_id: UUID | None = None,
    ) -> list[AppointmentResponse]:
        """Live appointments of the practitioner intersecting [start_time, end_time)."""
        conditions = [
            appointments.c.practitioner_id == practitioner_id,
            appointments.c.state.notin_([state.value for state in VOID_STATES]),
            # Narrow with the (practitioner_id, start_time) index
            appointments.c.start_time < ensure_utc(end_time),
            appointments.c.end_time > ensure_utc(start_time),
        ]
        if exclude_id is not None:
            conditions.append(appointments.c.id != exclude_id)

        stmt = select(appointments).where(*conditions).order_by(appointments.c.start_time.asc())
        result = await self.db.execute(stmt)

        candidates = [self._to_response(row) for row in result.fetchall()]
        return [
            candidate
            for candidate in candidates
            if windows_overlap(candidate.start_time, candidate.end_time, start_time, end_time)
        ]

    async def _ensure_available(
        self,
        practitioner_id: UUID,
        start_time: datetime,
        end_time: datetime,
        exclude_id: UUID | None = None,
    ) -> None:
        self._checked_window = (practitioner_id, start_time, end_time, exclude_id)
        conflicts = await self._find_conflicts(practitioner_id, start_time, end_time, exclude_id)
        if conflicts:
            conflict = conflicts[0]
            logger.info(
                "scheduling_conflict",
                practitioner_id=str(practitioner_id),
                conflicting_appointment_id=str(conflict.id),
            )
            raise SchedulingConflictException(conflict.id, conflict.start_time, conflict.end_time)

    async def _conflict_after_race(self) -> SchedulingConflictException:
        """Conflict for an exclusion violation, naming the winner when it is visible."""
        if self._checked_window is not None:
            conflicts = await self._find_conflicts(*self._checked_window)
            if conflicts:
                conflict = conflicts[0]
                logger.info(
                    "scheduling_conflict",
                    practitioner_id=str(self._checked_window[0]),
                    conflicting_appointment_id=str(conflict.id),
                )
                return SchedulingConflictException(
                    conflict.id, conflict.start_time, conflict.end_time
                )
        return SchedulingConflictException()

    async def _insert(
        self,
        *,
        patient_id: UUID,
        practitioner_id: UUID,
        treatment_id: UUID,
        start_time: datetime,
        end_time: datetime,
        notes: str | None = None,
        original_appointment_id: UUID | None = None,
    ) -> AppointmentResponse:
        now = next_timestamp()
        values = {
            "id": uuid4(),
            "patient_id": patient_id,
            "practitioner_id": practitioner_id,
            "treatment_id": treatment_id,
            "original_appointment_id": original_appointment_id,
            "start_time": ensure_utc(start_time),
            "end_time": ensure_utc(end_time),
            "state": AppointmentState.SCHEDULED.value,
            "notes": notes,
            "canceled_by": CanceledBy.NOT_APPLICABLE.value,
            "cancellation_reason": None,
            "notifications": [],
            "created_at": now,
            "updated_at": now,
        }

        stmt = insert(appointments).values(**values).returning(appointments)
        result = await self.db.execute(stmt)
        return self._to_response(result.fetchone())

    async def _write(self, appointment_id: UUID, values: dict[str, Any]) -> AppointmentResponse:
        for key in ("start_time", "end_time"):
            if key in values:
                values[key] = ensure_utc(values[key])

        stmt = (
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(**values)
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        return self._to_response(result.fetchone())

    async def _page(
        self,
        conditions: list[Any],
        ordering: tuple[Any, ...],
        page: int,
        page_size: int,
    ) -> tuple[int, list[AppointmentResponse]]:
        # Count total
        count_stmt = select(func.count()).select_from(appointments).where(*conditions)
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        # Get paginated results
        offset = (page - 1) * page_size

        stmt = (
            select(appointments)
            .where(*conditions)
            .order_by(*ordering)
            .limit(page_size)
            .offset(offset)
        )

        result = await self.db.execute(stmt)
        return total, [self._to_response(row) for row in result.fetchall()]

    async def _run_in_transaction(self, operation: str, work: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``work`` and commit, as a single unit.

        Any failure rolls the whole unit back. Transient store errors are
        retried; other store errors surface as an internal error.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=0.05, max=1),
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._log_retry(operation),
            reraise=True,
        )

        self._checked_window = None
        try:
            async for attempt in retrying:
                with attempt:
                    try:
                        result = await work()
                        await self.db.commit()
                    except Exception:
                        await self.db.rollback()
                        raise
        except DBAPIError as e:
            if sqlstate(e) == EXCLUSION_VIOLATION:
                # Lost the slot to a concurrent booking on every attempt
                raise await self._conflict_after_race() from e
            logger.error("store_operation_failed", operation=operation, error=str(e))
            raise InternalErrorException("The appointment store failed to apply the change") from e

        return result

    @staticmethod
    def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
        def log(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "transient_store_error_retry",
                operation=operation,
                attempt=retry_state.attempt_number,
                error=str(error),
            )

        return log

    def _notify(
        self,
        event: str,
        appointment_id: UUID,
        dispatch: Callable[..., None],
        *args: Any,
    ) -> None:
        """Hand off to the dispatcher; a failing dispatcher never fails the operation."""
        try:
            dispatch(*args)
        except Exception as e:
            logger.warning(
                "notification_dispatch_failed",
                action=event,
                appointment_id=str(appointment_id),
                error=str(e),
            )

    @staticmethod
    def _to_response(row: Row) -> AppointmentResponse:
        return AppointmentResponse.model_validate(dict(row._mapping))
