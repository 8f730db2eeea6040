"""Appointment endpoints."""

from datetime import date, datetime
from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Query, status

from clinic_scheduler.dependencies import AppointmentServiceDep, CurrentCaller
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
    DailyAgendaResponse,
    RescheduleResponse,
    StateChangeResponse,
)

router = APIRouter()


@router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book appointment",
)
async def book_appointment(
    data: AppointmentCreate,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Book a new appointment.

    Args:
        data: Booking request
        caller: Authenticated caller
        service: Appointment service

    Returns:
        Created appointment
    """
    return await service.book(data)


@router.get(
    "",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List appointments",
)
async def list_appointments(
    caller: CurrentCaller,
    service: AppointmentServiceDep,
    patient_id: UUID | None = Query(None),
    practitioner_id: UUID | None = Query(None),
    treatment_id: UUID | None = Query(None),
    state: AppointmentState | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    order: Literal["asc", "desc"] = Query("asc"),
) -> AppointmentListResponse:
    """
    List appointments with filtering.

    A ``practitioner_id`` filter alone lists that practitioner's agenda and
    rejects unknown practitioners.

    Returns:
        Paginated list of appointments
    """
    if practitioner_id and not (patient_id or treatment_id):
        return await service.list_by_practitioner(
            practitioner_id,
            from_date=from_date,
            to_date=to_date,
            state=state,
            page=page,
            page_size=page_size,
            order=order,
        )

    filters = AppointmentFilters(
        patient_id=patient_id,
        practitioner_id=practitioner_id,
        treatment_id=treatment_id,
        state=state,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
        order=order,
    )
    return await service.list_appointments(filters)


@router.get(
    "/availability",
    response_model=AvailabilityResponse,
    status_code=status.HTTP_200_OK,
    summary="Check practitioner availability",
)
async def check_availability(
    caller: CurrentCaller,
    service: AppointmentServiceDep,
    practitioner_id: UUID = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    exclude_appointment_id: UUID | None = Query(None),
) -> AvailabilityResponse:
    """
    Report whether a practitioner is free over a window.

    Returns:
        Availability flag and the live appointments in the way
    """
    return await service.check_availability(
        practitioner_id,
        start_time,
        end_time,
        exclude_id=exclude_appointment_id,
    )


@router.get(
    "/by-date/{day}",
    response_model=DailyAgendaResponse,
    status_code=status.HTTP_200_OK,
    summary="List appointments on a day",
)
async def list_appointments_by_date(
    day: date,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
    practitioner_id: UUID | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(100, ge=1, le=500),
) -> DailyAgendaResponse:
    """
    List one calendar day of the clinic, grouped by practitioner.

    Returns:
        Daily agenda
    """
    return await service.list_by_date(
        day,
        practitioner_id=practitioner_id,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/practitioners/{practitioner_id}",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List a practitioner's appointments",
)
async def list_practitioner_appointments(
    practitioner_id: UUID,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
    state: AppointmentState | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List a practitioner's appointments in start order.

    Returns:
        Paginated list of appointments
    """
    return await service.list_by_practitioner(
        practitioner_id,
        from_date=from_date,
        to_date=to_date,
        state=state,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Args:
        appointment_id: Appointment ID
        caller: Authenticated caller
        service: Appointment service

    Returns:
        Appointment details
    """
    return await service.get_appointment(appointment_id)


@router.put(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Update appointment",
)
async def update_appointment(
    appointment_id: UUID,
    data: AppointmentUpdate,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Update an appointment's window or notes.

    Args:
        appointment_id: Appointment ID
        data: Fields to update
        caller: Authenticated caller
        service: Appointment service

    Returns:
        Updated appointment
    """
    return await service.update_appointment(appointment_id, data)


@router.put(
    "/{appointment_id}/state",
    response_model=StateChangeResponse,
    status_code=status.HTTP_200_OK,
    summary="Change appointment state",
)
async def change_appointment_state(
    appointment_id: UUID,
    data: AppointmentStateChange,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
) -> StateChangeResponse:
    """
    Move an appointment through its lifecycle.

    Returns:
        Updated appointment, with a follow-up hint after completion
    """
    return await service.change_state(appointment_id, data, caller_role=caller.role)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=RescheduleResponse,
    status_code=status.HTTP_200_OK,
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentReschedule,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
) -> RescheduleResponse:
    """
    Retire an appointment and book its replacement.

    Returns:
        The retired original and its successor
    """
    return await service.reschedule(appointment_id, data, caller_role=caller.role)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    data: AppointmentCancel,
    caller: CurrentCaller,
    service: AppointmentServiceDep,
) -> AppointmentResponse:
    """
    Cancel a live appointment.

    Returns:
        Canceled appointment
    """
    return await service.cancel(appointment_id, data, caller_role=caller.role)
