"""Scheduling rules: appointment states, transitions and window overlap."""

from datetime import UTC, datetime, timedelta
from enum import Enum

from clinic_scheduler.core.exceptions import InvalidTransitionException, ValidationException


class AppointmentState(str, Enum):
    """Appointment lifecycle state."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELED = "canceled"
    RESCHEDULED = "rescheduled"
    NO_SHOW = "no_show"


class CanceledBy(str, Enum):
    """Who ended an appointment early."""

    PATIENT = "patient"
    PRACTITIONER = "practitioner"
    SYSTEM = "system"
    NOT_APPLICABLE = "not_applicable"


# Permitted transitions, from -> {to}. States with no entry are terminal.
ALLOWED_TRANSITIONS: dict[AppointmentState, frozenset[AppointmentState]] = {
    AppointmentState.SCHEDULED: frozenset(
        {
            AppointmentState.CONFIRMED,
            AppointmentState.IN_PROGRESS,
            AppointmentState.COMPLETED,
            AppointmentState.CANCELED,
            AppointmentState.RESCHEDULED,
            AppointmentState.NO_SHOW,
        }
    ),
    AppointmentState.CONFIRMED: frozenset(
        {
            AppointmentState.IN_PROGRESS,
            AppointmentState.COMPLETED,
            AppointmentState.CANCELED,
            AppointmentState.RESCHEDULED,
            AppointmentState.NO_SHOW,
        }
    ),
    AppointmentState.IN_PROGRESS: frozenset(
        {
            AppointmentState.COMPLETED,
            AppointmentState.CANCELED,
            AppointmentState.RESCHEDULED,
            AppointmentState.NO_SHOW,
        }
    ),
}

TERMINAL_STATES = frozenset(
    {
        AppointmentState.COMPLETED,
        AppointmentState.CANCELED,
        AppointmentState.RESCHEDULED,
        AppointmentState.NO_SHOW,
    }
)

# Appointments in these states no longer hold their slot.
# no_show keeps blocking the slot until explicitly canceled.
VOID_STATES = frozenset({AppointmentState.CANCELED, AppointmentState.RESCHEDULED})

# Roles a cancellation may be attributed to
CANCELLATION_ACTORS = frozenset(
    {CanceledBy.PATIENT, CanceledBy.PRACTITIONER, CanceledBy.SYSTEM}
)

NO_SHOW_REASON = "Patient did not attend"
RESCHEDULE_REASON = "Appointment rescheduled"


def is_terminal(state: AppointmentState | str) -> bool:
    """Return True if no transition leaves ``state``."""
    return AppointmentState(state) in TERMINAL_STATES


def allowed_targets(state: AppointmentState | str) -> frozenset[AppointmentState]:
    """Return the states reachable from ``state`` in one step."""
    return ALLOWED_TRANSITIONS.get(AppointmentState(state), frozenset())


def validate_transition(
    current: AppointmentState | str,
    target: AppointmentState | str,
) -> None:
    """
    Check a state change against the transition table.

    Same-state requests are rejected too, terminal ones included.

    Raises:
        InvalidTransitionException: If the table does not permit the change
    """
    current = AppointmentState(current)
    target = AppointmentState(target)
    if target not in allowed_targets(current):
        raise InvalidTransitionException(current.value, target.value)


def canceled_by_for_role(role: str | None) -> CanceledBy:
    """Attribute a cancellation or reschedule to the caller's side."""
    if role == "patient":
        return CanceledBy.PATIENT
    if role == "system":
        return CanceledBy.SYSTEM
    return CanceledBy.PRACTITIONER


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_window(start: datetime, end: datetime) -> None:
    """
    Require a non-empty window.

    Raises:
        ValidationException: If ``end`` is not after ``start``
    """
    if ensure_utc(end) <= ensure_utc(start):
        raise ValidationException("End time must be after start time", field="end_time")


def windows_overlap(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime,
) -> bool:
    """Half-open intersection test: touching endpoints do not overlap."""
    start_a, end_a = ensure_utc(start_a), ensure_utc(end_a)
    start_b, end_b = ensure_utc(start_b), ensure_utc(end_b)
    return start_a < end_b and start_b < end_a


def next_timestamp(previous: datetime | None = None) -> datetime:
    """Current UTC time, strictly after ``previous`` when one is given."""
    now = datetime.now(UTC)
    if previous is not None:
        floor = ensure_utc(previous) + timedelta(microseconds=1)
        if now < floor:
            return floor
    return now
