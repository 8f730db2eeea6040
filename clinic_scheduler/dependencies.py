"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from clinic_scheduler.config import settings
from clinic_scheduler.core.redis_client import CacheManager
from clinic_scheduler.core.security import CALLER_ROLES, decode_access_token
from clinic_scheduler.database import get_db
from clinic_scheduler.services.appointment_service import AppointmentService
from clinic_scheduler.services.directory import (
    HttpPatientDirectory,
    HttpPractitionerDirectory,
    HttpTreatmentCatalog,
    PatientDirectory,
    PractitionerDirectory,
    TreatmentCatalog,
)
from clinic_scheduler.services.notification_service import NotificationDispatcher

# Security
security = HTTPBearer(auto_error=False)


class Caller(BaseModel):
    """Authenticated caller taken from the bearer token."""

    id: str
    role: str


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_caller(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Caller:
    """
    Extract and validate the caller from the JWT token.

    Args:
        credentials: Bearer token credentials

    Returns:
        Caller identity and role

    Raises:
        HTTPException: If the token is missing, invalid, expired or has no known role
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized()

    caller_id = payload.get("sub")
    if caller_id is None or not isinstance(caller_id, str):
        raise _unauthorized()

    role = payload.get("role")
    if role not in CALLER_ROLES:
        raise _unauthorized("Token carries no recognised role")

    return Caller(id=caller_id, role=role)


def get_cache_manager(request: Request) -> CacheManager | None:
    """Directory lookup cache created at startup; None when Redis was unreachable."""
    return getattr(request.app.state, "cache_manager", None)


CacheManagerDep = Annotated[CacheManager | None, Depends(get_cache_manager)]


def get_patient_directory() -> PatientDirectory:
    """Patient directory client."""
    return HttpPatientDirectory(
        settings.patient_directory_url,
        timeout=settings.directory_timeout_seconds,
    )


def get_practitioner_directory(cache: CacheManagerDep) -> PractitionerDirectory:
    """Practitioner directory client with cached lookups."""
    return HttpPractitionerDirectory(
        settings.practitioner_directory_url,
        timeout=settings.directory_timeout_seconds,
        cache_manager=cache,
        cache_ttl=settings.directory_cache_ttl,
    )


def get_treatment_catalog(cache: CacheManagerDep) -> TreatmentCatalog:
    """Treatment catalog client with cached lookups."""
    return HttpTreatmentCatalog(
        settings.treatment_catalog_url,
        timeout=settings.directory_timeout_seconds,
        cache_manager=cache,
        cache_ttl=settings.directory_cache_ttl,
    )


def get_notifier(request: Request) -> NotificationDispatcher:
    """Notifier created at application startup."""
    return request.app.state.notifier


async def get_appointment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    patients: Annotated[PatientDirectory, Depends(get_patient_directory)],
    practitioners: Annotated[PractitionerDirectory, Depends(get_practitioner_directory)],
    treatments: Annotated[TreatmentCatalog, Depends(get_treatment_catalog)],
    notifier: Annotated[NotificationDispatcher, Depends(get_notifier)],
) -> AppointmentService:
    """Appointment service bound to the request's session."""
    return AppointmentService(db, patients, practitioners, treatments, notifier)


# Type aliases for dependency injection
CurrentCaller = Annotated[Caller, Depends(get_current_caller)]
AppointmentServiceDep = Annotated[AppointmentService, Depends(get_appointment_service)]
