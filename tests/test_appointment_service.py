"""Tests for the appointment service."""

import random
from datetime import UTC, date, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import DBAPIError, OperationalError

from clinic_scheduler.core.exceptions import (
    InternalErrorException,
    InvalidAssignmentException,
    InvalidStateException,
    InvalidTransitionException,
    NotFoundException,
    SchedulingConflictException,
    ValidationException,
)
from clinic_scheduler.core.scheduling import NO_SHOW_REASON, windows_overlap
from clinic_scheduler.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentReschedule,
    AppointmentState,
    AppointmentStateChange,
    AppointmentUpdate,
    CanceledBy,
)
from clinic_scheduler.services.appointment_service import AppointmentService

S = AppointmentState


def window(day_start: datetime, start: str, end: str) -> tuple[datetime, datetime]:
    """Build a window on the day of ``day_start`` from HH:MM strings."""

    def parse(value: str) -> datetime:
        hours, minutes = (int(part) for part in value.split(":"))
        return day_start.replace(hour=hours, minute=minutes)

    return parse(start), parse(end)


# ----------------------------------------------------------------------
# Booking
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_booking_scenarios(service, make_booking, base_time, notifier):
    """Overlapping windows conflict, touching windows do not."""
    start, end = window(base_time, "10:00", "10:30")
    first = await service.book(make_booking(start_time=start, end_time=end))
    assert first.state == S.SCHEDULED
    assert first.canceled_by == CanceledBy.NOT_APPLICABLE
    assert first.start_time == start
    assert first.end_time == end
    assert first.original_appointment_id is None
    assert first.notifications == []

    start, end = window(base_time, "10:15", "10:45")
    with pytest.raises(SchedulingConflictException) as exc_info:
        await service.book(make_booking(start_time=start, end_time=end))
    assert exc_info.value.details["conflicting_appointment_id"] == str(first.id)
    assert exc_info.value.details["conflicting_start_time"] == first.start_time.isoformat()
    assert exc_info.value.details["conflicting_end_time"] == first.end_time.isoformat()

    start, end = window(base_time, "10:30", "11:00")
    touching = await service.book(make_booking(start_time=start, end_time=end))
    assert touching.state == S.SCHEDULED

    assert notifier.names() == ["booked", "booked"]


@pytest.mark.asyncio
async def test_booking_other_practitioner_same_window(
    service, make_booking, other_practitioner_id
):
    """Windows only conflict per practitioner."""
    await service.book(make_booking())
    other = await service.book(make_booking(practitioner=other_practitioner_id))
    assert other.practitioner_id == other_practitioner_id


@pytest.mark.asyncio
@pytest.mark.parametrize("minutes", [0, -30])
async def test_booking_rejects_empty_or_inverted_window(service, make_booking, minutes):
    """End must be after start."""
    data = make_booking()
    data.end_time = data.start_time + timedelta(minutes=minutes)
    with pytest.raises(ValidationException) as exc_info:
        await service.book(data)
    assert exc_info.value.details == {"field": "end_time"}


@pytest.mark.asyncio
async def test_booking_unknown_references(service, make_booking):
    """Unknown patient, practitioner or treatment is NotFound with the field."""
    for field in ("patient_id", "practitioner_id", "treatment_id"):
        with pytest.raises(NotFoundException) as exc_info:
            await service.book(make_booking(**{field: uuid4()}))
        assert exc_info.value.details == {"field": field}


@pytest.mark.asyncio
async def test_booking_inactive_practitioner(service, make_booking, practitioners):
    """Inactive practitioners cannot be booked."""
    inactive = practitioners.add(active=False)
    with pytest.raises(NotFoundException) as exc_info:
        await service.book(make_booking(practitioner=inactive))
    assert exc_info.value.details == {"field": "practitioner_id"}


@pytest.mark.asyncio
async def test_booking_inactive_treatment(service, make_booking, treatments):
    """Inactive treatments cannot be booked."""
    retired = treatments.add(active=False)
    with pytest.raises(NotFoundException) as exc_info:
        await service.book(make_booking(treatment_id=retired))
    assert exc_info.value.details == {"field": "treatment_id"}


@pytest.mark.asyncio
async def test_booking_ineligible_practitioner(
    service, make_booking, treatments, practitioner_id, other_practitioner_id
):
    """Restricted treatments only accept their eligible practitioners."""
    restricted = treatments.add(eligible=[other_practitioner_id])

    with pytest.raises(InvalidAssignmentException) as exc_info:
        await service.book(make_booking(treatment_id=restricted))
    assert exc_info.value.status_code == 400
    assert exc_info.value.details["practitioner_id"] == str(practitioner_id)
    assert exc_info.value.details["treatment_id"] == str(restricted)

    booked = await service.book(
        make_booking(treatment_id=restricted, practitioner=other_practitioner_id)
    )
    assert booked.treatment_id == restricted


@pytest.mark.asyncio
async def test_failing_notifier_does_not_fail_booking(service, make_booking, notifier):
    """Notification dispatch errors never reach the caller."""
    notifier.fail = True
    appointment = await service.book(make_booking())
    stored = await service.get_appointment(appointment.id)
    assert stored.state == S.SCHEDULED


@pytest.mark.asyncio
async def test_failing_notifier_does_not_fail_lifecycle(service, make_booking, notifier, caplog):
    """Committed state changes and reschedules stand even when dispatch raises."""
    first = await service.book(make_booking(start_hours=1))
    second = await service.book(make_booking(start_hours=3))
    notifier.fail = True

    confirmed = await service.change_state(first.id, AppointmentStateChange(state=S.CONFIRMED))
    assert confirmed.appointment.state == S.CONFIRMED

    result = await service.reschedule(
        second.id,
        AppointmentReschedule(
            start_time=second.start_time + timedelta(days=1),
            end_time=second.end_time + timedelta(days=1),
        ),
    )
    assert (await service.get_appointment(second.id)).state == S.RESCHEDULED
    assert (await service.get_appointment(result.successor.id)).state == S.SCHEDULED

    canceled = await service.cancel(first.id, AppointmentCancel(reason="Feeling better"))
    assert canceled.state == S.CANCELED
    assert "notification_dispatch_failed" in caplog.text


@pytest.mark.asyncio
async def test_no_overlap_property(service, patients, practitioners, treatment_id, base_time):
    """Randomly generated bookings never leave two live windows overlapping."""
    rng = random.Random(20240601)
    practitioner = practitioners.add()
    patient = patients.add()
    accepted: list[tuple[object, datetime, datetime]] = []

    for _ in range(60):
        start = base_time + timedelta(minutes=15 * rng.randrange(0, 40))
        end = start + timedelta(minutes=rng.choice([15, 30, 45, 60, 90]))
        expect_conflict = any(windows_overlap(s, e, start, end) for _, s, e in accepted)

        request = AppointmentCreate(
            patient_id=patient,
            practitioner_id=practitioner,
            treatment_id=treatment_id,
            start_time=start,
            end_time=end,
        )
        if expect_conflict:
            with pytest.raises(SchedulingConflictException):
                await service.book(request)
        else:
            booked = await service.book(request)
            accepted.append((booked.id, start, end))

        # Free a slot now and then
        if accepted and rng.random() < 0.15:
            victim = accepted.pop(rng.randrange(len(accepted)))
            await service.cancel(victim[0], AppointmentCancel(reason="Clinic closed"), "staff")

    listing = await service.list_by_practitioner(practitioner, page_size=100)
    live = [a for a in listing.items if a.state not in (S.CANCELED, S.RESCHEDULED)]
    assert len(live) == len(accepted)
    for i, a in enumerate(live):
        for b in live[i + 1 :]:
            assert not windows_overlap(a.start_time, a.end_time, b.start_time, b.end_time)


# ----------------------------------------------------------------------
# Update
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_notes_only(service, make_booking, notifier):
    """Changing notes does not notify the patient."""
    appointment = await service.book(make_booking())
    updated = await service.update_appointment(
        appointment.id, AppointmentUpdate(notes="Bring x-rays")
    )
    assert updated.notes == "Bring x-rays"
    assert updated.start_time == appointment.start_time
    assert updated.updated_at > appointment.updated_at
    assert notifier.names() == ["booked"]


@pytest.mark.asyncio
async def test_update_window(service, make_booking, base_time, notifier):
    """Moving the window rechecks overlap excluding the appointment itself."""
    appointment = await service.book(make_booking())
    updated = await service.update_appointment(
        appointment.id,
        AppointmentUpdate(
            start_time=appointment.start_time + timedelta(minutes=30),
            end_time=appointment.end_time + timedelta(minutes=30),
        ),
    )
    assert updated.start_time == base_time + timedelta(minutes=30)
    assert notifier.names() == ["booked", "updated"]


@pytest.mark.asyncio
async def test_update_window_conflict(service, make_booking):
    """Moving onto another booking fails and leaves the appointment untouched."""
    first = await service.book(make_booking(start_hours=0))
    second = await service.book(make_booking(start_hours=2))

    with pytest.raises(SchedulingConflictException) as exc_info:
        await service.update_appointment(
            second.id,
            AppointmentUpdate(start_time=first.start_time, end_time=first.end_time),
        )
    assert exc_info.value.details["conflicting_appointment_id"] == str(first.id)

    stored = await service.get_appointment(second.id)
    assert stored.start_time == second.start_time


@pytest.mark.asyncio
async def test_update_inverted_window(service, make_booking):
    """A partial update that inverts the window is rejected."""
    appointment = await service.book(make_booking())
    with pytest.raises(ValidationException):
        await service.update_appointment(
            appointment.id,
            AppointmentUpdate(end_time=appointment.start_time - timedelta(minutes=5)),
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", [S.COMPLETED, S.CANCELED, S.NO_SHOW])
async def test_update_terminal_appointment(service, make_booking, terminal):
    """Terminal appointments cannot be edited."""
    appointment = await service.book(make_booking())
    await service.change_state(
        appointment.id, AppointmentStateChange(state=terminal, reason="Closing")
    )

    with pytest.raises(InvalidStateException) as exc_info:
        await service.update_appointment(appointment.id, AppointmentUpdate(notes="late edit"))
    assert exc_info.value.details == {"current_state": terminal.value, "operation": "update"}


@pytest.mark.asyncio
async def test_update_missing_appointment(service):
    with pytest.raises(NotFoundException):
        await service.update_appointment(uuid4(), AppointmentUpdate(notes="x"))


# ----------------------------------------------------------------------
# State changes
# ----------------------------------------------------------------------

ALLOWED = {
    S.SCHEDULED: {S.CONFIRMED, S.IN_PROGRESS, S.COMPLETED, S.CANCELED, S.RESCHEDULED, S.NO_SHOW},
    S.CONFIRMED: {S.IN_PROGRESS, S.COMPLETED, S.CANCELED, S.RESCHEDULED, S.NO_SHOW},
    S.IN_PROGRESS: {S.COMPLETED, S.CANCELED, S.RESCHEDULED, S.NO_SHOW},
}


async def drive_to(service: AppointmentService, appointment, state: AppointmentState):
    """Move a fresh appointment into ``state`` through legal transitions."""
    if state == S.SCHEDULED:
        return appointment
    if state == S.RESCHEDULED:
        result = await service.reschedule(
            appointment.id,
            AppointmentReschedule(
                start_time=appointment.start_time + timedelta(hours=5),
                end_time=appointment.end_time + timedelta(hours=5),
            ),
        )
        return result.original
    change = AppointmentStateChange(state=state, reason="Patient request")
    return (await service.change_state(appointment.id, change)).appointment


@pytest.mark.asyncio
@pytest.mark.parametrize("current", list(S))
@pytest.mark.parametrize("target", list(S))
async def test_change_state_matrix(service, make_booking, current, target):
    """Allowed transitions persist; every other pair is InvalidTransition."""
    appointment = await drive_to(service, await service.book(make_booking()), current)
    assert appointment.state == current

    change = AppointmentStateChange(
        state=target,
        reason="Requested by clinic",
        new_start_time=appointment.start_time + timedelta(hours=8),
        new_end_time=appointment.end_time + timedelta(hours=8),
    )

    if target in ALLOWED.get(current, set()):
        result = await service.change_state(appointment.id, change)
        assert result.appointment.state == target
        stored = await service.get_appointment(appointment.id)
        assert stored.state == target
    else:
        with pytest.raises(InvalidTransitionException):
            await service.change_state(appointment.id, change)
        stored = await service.get_appointment(appointment.id)
        assert stored.state == current


@pytest.mark.asyncio
async def test_complete_then_cancel(service, make_booking, notifier):
    """Completion offers a follow-up; completed appointments cannot be canceled."""
    appointment = await service.book(make_booking())
    result = await service.change_state(appointment.id, AppointmentStateChange(state=S.COMPLETED))

    assert result.appointment.state == S.COMPLETED
    assert result.follow_up is not None
    assert str(appointment.id) in result.follow_up.clinical_record_url

    name, args = notifier.calls[-1]
    assert name == "state_changed"
    assert args[0].state == S.COMPLETED
    assert args[1] == S.SCHEDULED

    with pytest.raises(InvalidStateException):
        await service.cancel(appointment.id, AppointmentCancel(reason="Too late"), "staff")


@pytest.mark.asyncio
async def test_non_completion_has_no_follow_up(service, make_booking):
    appointment = await service.book(make_booking())
    result = await service.change_state(appointment.id, AppointmentStateChange(state=S.CONFIRMED))
    assert result.follow_up is None


@pytest.mark.asyncio
async def test_cancel_requires_reason(service, make_booking):
    """Cancellation without a reason is a validation error."""
    appointment = await service.book(make_booking())

    with pytest.raises(ValidationException) as exc_info:
        await service.cancel(appointment.id, AppointmentCancel(), "staff")
    assert exc_info.value.details == {"field": "reason"}

    with pytest.raises(ValidationException):
        await service.cancel(appointment.id, AppointmentCancel(reason="   "), "staff")

    stored = await service.get_appointment(appointment.id)
    assert stored.state == S.SCHEDULED


@pytest.mark.asyncio
async def test_cancel_records_actor_and_frees_slot(service, make_booking):
    """A canceled appointment keeps its metadata and no longer blocks the window."""
    appointment = await service.book(make_booking())

    canceled = await service.cancel(
        appointment.id, AppointmentCancel(reason="Feeling better"), "practitioner"
    )
    assert canceled.state == S.CANCELED
    assert canceled.canceled_by == CanceledBy.PRACTITIONER
    assert canceled.cancellation_reason == "Feeling better"

    rebooked = await service.book(make_booking())
    assert rebooked.id != appointment.id


@pytest.mark.asyncio
async def test_patient_cancels_on_own_behalf(service, make_booking):
    """Patients cannot attribute their cancellation to someone else."""
    appointment = await service.book(make_booking())
    canceled = await service.cancel(
        appointment.id,
        AppointmentCancel(reason="Travel", canceled_by=CanceledBy.PRACTITIONER),
        "patient",
    )
    assert canceled.canceled_by == CanceledBy.PATIENT


@pytest.mark.asyncio
async def test_cancel_rejects_not_applicable_actor(service, make_booking):
    appointment = await service.book(make_booking())
    with pytest.raises(ValidationException) as exc_info:
        await service.cancel(
            appointment.id,
            AppointmentCancel(reason="Travel", canceled_by=CanceledBy.NOT_APPLICABLE),
            "staff",
        )
    assert exc_info.value.details == {"field": "canceled_by"}


@pytest.mark.asyncio
async def test_cancel_via_change_state_uses_notes_as_reason(service, make_booking):
    appointment = await service.book(make_booking())
    result = await service.change_state(
        appointment.id,
        AppointmentStateChange(state=S.CANCELED, notes="Called to cancel"),
        caller_role="system",
    )
    assert result.appointment.cancellation_reason == "Called to cancel"
    assert result.appointment.canceled_by == CanceledBy.SYSTEM


@pytest.mark.asyncio
async def test_no_show_keeps_blocking_slot(service, make_booking):
    """No-shows are recorded with a default reason and still hold the window."""
    appointment = await service.book(make_booking())
    result = await service.change_state(appointment.id, AppointmentStateChange(state=S.NO_SHOW))

    assert result.appointment.state == S.NO_SHOW
    assert result.appointment.canceled_by == CanceledBy.NOT_APPLICABLE
    assert result.appointment.cancellation_reason == NO_SHOW_REASON

    with pytest.raises(SchedulingConflictException):
        await service.book(make_booking())


@pytest.mark.asyncio
async def test_change_state_to_rescheduled_requires_window(service, make_booking):
    appointment = await service.book(make_booking())
    with pytest.raises(ValidationException):
        await service.change_state(appointment.id, AppointmentStateChange(state=S.RESCHEDULED))

    stored = await service.get_appointment(appointment.id)
    assert stored.state == S.SCHEDULED


@pytest.mark.asyncio
async def test_change_state_to_rescheduled_creates_successor(service, make_booking):
    appointment = await service.book(make_booking())
    result = await service.change_state(
        appointment.id,
        AppointmentStateChange(
            state=S.RESCHEDULED,
            reason="Practitioner unavailable",
            new_start_time=appointment.start_time + timedelta(days=1),
            new_end_time=appointment.end_time + timedelta(days=1),
        ),
    )
    assert result.appointment.state == S.RESCHEDULED
    assert result.appointment.cancellation_reason == "Practitioner unavailable"

    listing = await service.list_appointments(AppointmentFilters(state=S.SCHEDULED))
    assert listing.total == 1
    assert listing.items[0].original_appointment_id == appointment.id


@pytest.mark.asyncio
async def test_change_state_missing_appointment(service):
    with pytest.raises(NotFoundException):
        await service.change_state(uuid4(), AppointmentStateChange(state=S.CONFIRMED))


# ----------------------------------------------------------------------
# Reschedule
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reschedule_links_successor(service, make_booking, base_time, notifier):
    """Original is retired and a scheduled successor references it."""
    start, end = window(base_time, "10:00", "10:30")
    appointment = await service.book(make_booking(start_time=start, end_time=end))

    new_start, new_end = window(base_time, "14:00", "14:30")
    result = await service.reschedule(
        appointment.id,
        AppointmentReschedule(start_time=new_start, end_time=new_end, reason="Patient asked"),
        caller_role="patient",
    )

    assert result.original.id == appointment.id
    assert result.original.state == S.RESCHEDULED
    assert result.original.cancellation_reason == "Patient asked"
    assert result.original.canceled_by == CanceledBy.PATIENT

    assert result.successor.state == S.SCHEDULED
    assert result.successor.original_appointment_id == appointment.id
    assert result.successor.start_time == new_start
    assert result.successor.end_time == new_end
    assert result.successor.patient_id == appointment.patient_id
    assert result.successor.treatment_id == appointment.treatment_id
    assert result.successor.notes == appointment.notes

    name, args = notifier.calls[-1]
    assert name == "rescheduled"
    assert args[0].id == appointment.id
    assert args[1].id == result.successor.id

    # The old window is free again
    await service.book(make_booking(start_time=start, end_time=end))


@pytest.mark.asyncio
async def test_reschedule_default_reason(service, make_booking):
    appointment = await service.book(make_booking())
    result = await service.reschedule(
        appointment.id,
        AppointmentReschedule(
            start_time=appointment.start_time + timedelta(hours=3),
            end_time=appointment.end_time + timedelta(hours=3),
        ),
    )
    assert result.original.cancellation_reason


@pytest.mark.asyncio
async def test_reschedule_overlapping_own_window(service, make_booking):
    """Sliding an appointment by a few minutes does not conflict with itself."""
    appointment = await service.book(make_booking())
    result = await service.reschedule(
        appointment.id,
        AppointmentReschedule(
            start_time=appointment.start_time + timedelta(minutes=15),
            end_time=appointment.end_time + timedelta(minutes=15),
        ),
    )
    assert result.successor.start_time == appointment.start_time + timedelta(minutes=15)


@pytest.mark.asyncio
async def test_reschedule_conflict_leaves_original(service, make_booking):
    first = await service.book(make_booking(start_hours=0))
    second = await service.book(make_booking(start_hours=2))

    with pytest.raises(SchedulingConflictException):
        await service.reschedule(
            second.id,
            AppointmentReschedule(start_time=first.start_time, end_time=first.end_time),
        )

    stored = await service.get_appointment(second.id)
    assert stored.state == S.SCHEDULED


@pytest.mark.asyncio
async def test_reschedule_terminal_appointment(service, make_booking):
    appointment = await service.book(make_booking())
    await service.change_state(appointment.id, AppointmentStateChange(state=S.COMPLETED))

    with pytest.raises(InvalidStateException) as exc_info:
        await service.reschedule(
            appointment.id,
            AppointmentReschedule(
                start_time=appointment.start_time + timedelta(days=1),
                end_time=appointment.end_time + timedelta(days=1),
            ),
        )
    assert exc_info.value.details["operation"] == "reschedule"


@pytest.mark.asyncio
async def test_reschedule_is_atomic(service, make_booking, monkeypatch):
    """A failure between retiring the original and booking the successor undoes both."""
    appointment = await service.book(make_booking())

    async def crash(**kwargs):
        raise RuntimeError("store crashed mid-reschedule")

    monkeypatch.setattr(service, "_insert", crash)

    with pytest.raises(RuntimeError):
        await service.reschedule(
            appointment.id,
            AppointmentReschedule(
                start_time=appointment.start_time + timedelta(hours=4),
                end_time=appointment.end_time + timedelta(hours=4),
            ),
        )

    stored = await service.get_appointment(appointment.id)
    assert stored.state == S.SCHEDULED
    assert stored.cancellation_reason is None

    listing = await service.list_appointments(AppointmentFilters())
    assert listing.total == 1


# ----------------------------------------------------------------------
# Store failures
# ----------------------------------------------------------------------


class FakeDriverError(Exception):
    def __init__(self, message: str, sqlstate: str | None = None):
        super().__init__(message)
        self.sqlstate = sqlstate


@pytest.mark.asyncio
async def test_transient_error_is_retried(service, make_booking, monkeypatch):
    """A locked database on the first attempt does not fail the booking."""
    real_insert = service._insert
    attempts = []

    async def flaky(**kwargs):
        attempts.append(1)
        if len(attempts) == 1:
            raise OperationalError("INSERT", {}, FakeDriverError("database is locked"))
        return await real_insert(**kwargs)

    monkeypatch.setattr(service, "_insert", flaky)

    appointment = await service.book(make_booking())
    assert appointment.state == S.SCHEDULED
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_exclusion_violation_surfaces_as_conflict(service, make_booking, monkeypatch):
    """Losing the slot to a concurrent writer on every attempt is a scheduling conflict."""

    async def raced(**kwargs):
        raise DBAPIError("INSERT", {}, FakeDriverError("conflicting key value", "23P01"))

    monkeypatch.setattr(service, "_insert", raced)

    with pytest.raises(SchedulingConflictException):
        await service.book(make_booking())


@pytest.mark.asyncio
async def test_exclusion_violation_names_conflicting_appointment(
    service, make_booking, monkeypatch
):
    """Once retries are spent, the conflict carries the window that won the race."""
    holder = await service.book(make_booking())
    real_find = service._find_conflicts
    inserts = []

    async def stale_find(*args, **kwargs):
        # The competing booking is invisible until every attempt has failed
        if len(inserts) < service.max_retries:
            return []
        return await real_find(*args, **kwargs)

    async def raced(**kwargs):
        inserts.append(1)
        raise DBAPIError("INSERT", {}, FakeDriverError("conflicting key value", "23P01"))

    monkeypatch.setattr(service, "_find_conflicts", stale_find)
    monkeypatch.setattr(service, "_insert", raced)

    with pytest.raises(SchedulingConflictException) as exc_info:
        await service.book(make_booking())

    assert len(inserts) == service.max_retries
    assert exc_info.value.details == {
        "conflicting_appointment_id": str(holder.id),
        "conflicting_start_time": holder.start_time.isoformat(),
        "conflicting_end_time": holder.end_time.isoformat(),
    }


@pytest.mark.asyncio
async def test_permanent_store_error_is_internal(service, make_booking, monkeypatch):
    async def broken(**kwargs):
        raise DBAPIError("INSERT", {}, FakeDriverError("disk I/O error"))

    monkeypatch.setattr(service, "_insert", broken)

    with pytest.raises(InternalErrorException):
        await service.book(make_booking())

    listing = await service.list_appointments(AppointmentFilters())
    assert listing.total == 0


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_missing_appointment(service):
    with pytest.raises(NotFoundException) as exc_info:
        await service.get_appointment(uuid4())
    assert exc_info.value.details == {"field": "appointment_id"}


@pytest.mark.asyncio
async def test_list_by_practitioner(service, make_booking, practitioner_id, other_practitioner_id):
    """Only the practitioner's appointments, in start order, with filters."""
    late = await service.book(make_booking(start_hours=3))
    early = await service.book(make_booking(start_hours=1))
    await service.book(make_booking(start_hours=1, practitioner=other_practitioner_id))
    await service.change_state(late.id, AppointmentStateChange(state=S.CONFIRMED))

    listing = await service.list_by_practitioner(practitioner_id)
    assert listing.total == 2
    assert [a.id for a in listing.items] == [early.id, late.id]

    confirmed = await service.list_by_practitioner(practitioner_id, state=S.CONFIRMED)
    assert [a.id for a in confirmed.items] == [late.id]

    ranged = await service.list_by_practitioner(
        practitioner_id, from_date=early.start_time, to_date=early.start_time
    )
    assert [a.id for a in ranged.items] == [early.id]

    newest_first = await service.list_by_practitioner(practitioner_id, order="desc")
    assert [a.id for a in newest_first.items] == [late.id, early.id]


@pytest.mark.asyncio
async def test_list_by_practitioner_is_idempotent(service, make_booking, practitioner_id):
    for hour in range(4):
        await service.book(make_booking(start_hours=hour))

    first = await service.list_by_practitioner(practitioner_id, page=1, page_size=3)
    second = await service.list_by_practitioner(practitioner_id, page=1, page_size=3)
    assert first.model_dump() == second.model_dump()
    assert first.total == 4
    assert len(first.items) == 3


@pytest.mark.asyncio
async def test_list_by_unknown_practitioner(service):
    with pytest.raises(NotFoundException):
        await service.list_by_practitioner(uuid4())


@pytest.mark.asyncio
async def test_list_by_date_groups_by_practitioner(
    service, make_booking, base_time, practitioner_id, other_practitioner_id
):
    first = await service.book(make_booking(start_hours=0))
    middle = await service.book(make_booking(start_hours=1, practitioner=other_practitioner_id))
    last = await service.book(make_booking(start_hours=2))
    await service.book(make_booking(start_hours=24))

    agenda = await service.list_by_date(base_time.date())

    assert agenda.day == base_time.date()
    assert agenda.total == 3
    assert [a.id for a in agenda.items] == [first.id, middle.id, last.id]
    assert [g.practitioner_id for g in agenda.groups] == [practitioner_id, other_practitioner_id]
    assert [a.id for a in agenda.groups[0].appointments] == [first.id, last.id]

    filtered = await service.list_by_date(base_time.date(), practitioner_id=other_practitioner_id)
    assert [a.id for a in filtered.items] == [middle.id]


@pytest.mark.asyncio
async def test_list_by_date_uses_clinic_timezone(
    db_session, patients, practitioners, treatments, notifier, make_booking
):
    """Calendar days are cut in the clinic's timezone."""
    service = AppointmentService(
        db_session,
        patients,
        practitioners,
        treatments,
        notifier,
        clinic_timezone="America/New_York",
    )
    # 21:00 in New York on March 4th is 02:00 UTC on March 5th
    late_evening = datetime(2030, 3, 5, 2, 0, tzinfo=UTC)
    appointment = await service.book(
        make_booking(start_time=late_evening, end_time=late_evening + timedelta(minutes=30))
    )

    agenda = await service.list_by_date(date(2030, 3, 4))
    assert [a.id for a in agenda.items] == [appointment.id]

    next_day = await service.list_by_date(date(2030, 3, 5))
    assert next_day.total == 0


@pytest.mark.asyncio
async def test_list_appointments_filters(service, make_booking, patients, patient_id):
    other_patient = patients.add()
    mine = await service.book(make_booking(start_hours=0))
    await service.book(make_booking(start_hours=1, patient_id=other_patient))

    listing = await service.list_appointments(AppointmentFilters(patient_id=patient_id))
    assert [a.id for a in listing.items] == [mine.id]
    assert listing.page == 1
    assert listing.page_size == 20


@pytest.mark.asyncio
async def test_check_availability(service, make_booking, practitioner_id):
    appointment = await service.book(make_booking())

    busy = await service.check_availability(
        practitioner_id,
        appointment.start_time + timedelta(minutes=30),
        appointment.end_time + timedelta(minutes=30),
    )
    assert busy.available is False
    assert [a.id for a in busy.conflicts] == [appointment.id]

    excluded = await service.check_availability(
        practitioner_id,
        appointment.start_time,
        appointment.end_time,
        exclude_id=appointment.id,
    )
    assert excluded.available is True

    after = await service.check_availability(
        practitioner_id,
        appointment.end_time,
        appointment.end_time + timedelta(minutes=30),
    )
    assert after.available is True
    assert after.conflicts == []


@pytest.mark.asyncio
async def test_check_availability_unknown_practitioner(service, base_time):
    with pytest.raises(NotFoundException):
        await service.check_availability(uuid4(), base_time, base_time + timedelta(hours=1))
