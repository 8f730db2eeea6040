"""Health check endpoints."""

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from clinic_scheduler.config import settings
from clinic_scheduler.core.redis_client import check_redis_connection
from clinic_scheduler.database import check_database_connection

router = APIRouter()


class HealthResponse(BaseModel):
    """Liveness response."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Readiness response with collaborator status."""

    database: str
    cache: str
    pending_notifications: int


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness check",
)
async def health_check() -> HealthResponse:
    """
    Report that the process is up.

    Returns:
        Basic health status
    """
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Readiness check",
    responses={503: {"model": DetailedHealthResponse}},
)
async def detailed_health_check(request: Request) -> JSONResponse:
    """
    Check the appointment store and the directory cache.

    The store is required; a missing cache only degrades lookups.

    Returns:
        503 when the store is unreachable, 200 otherwise
    """
    db_healthy = await check_database_connection()
    cache_healthy = await check_redis_connection()
    notifier = getattr(request.app.state, "notifier", None)

    if not db_healthy:
        overall = "unhealthy"
    elif not cache_healthy:
        overall = "degraded"
    else:
        overall = "healthy"

    body = DetailedHealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        cache="healthy" if cache_healthy else "unavailable",
        pending_notifications=notifier.pending if notifier is not None else 0,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK if db_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body.model_dump(),
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """Pong."""
    return {"message": "pong"}
