"""Lookups against the patient, practitioner and treatment services."""

from typing import Any, Protocol
from uuid import UUID

import httpx
import structlog

from clinic_scheduler.core.exceptions import ServiceUnavailableException
from clinic_scheduler.core.redis_client import CacheManager
from clinic_scheduler.schemas.directory import (
    NotificationPreferences,
    PractitionerInfo,
    TreatmentInfo,
)

logger = structlog.get_logger(__name__)


class PatientDirectory(Protocol):
    """Patient existence and contact preferences."""

    async def exists(self, patient_id: UUID) -> bool: ...

    async def get_notification_preferences(self, patient_id: UUID) -> NotificationPreferences: ...


class PractitionerDirectory(Protocol):
    """Practitioner existence and activity."""

    async def exists(self, practitioner_id: UUID) -> bool: ...

    async def is_active(self, practitioner_id: UUID) -> bool: ...


class TreatmentCatalog(Protocol):
    """Treatment definitions."""

    async def get(self, treatment_id: UUID) -> TreatmentInfo | None: ...


class HttpDirectoryClient:
    """Read-only JSON client for a collaborator service, with optional caching."""

    def __init__(
        self,
        base_url: str,
        service: str,
        timeout: float = 5.0,
        cache_manager: CacheManager | None = None,
        cache_ttl: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize client for ``service`` rooted at ``base_url``."""
        self.base_url = base_url.rstrip("/")
        self.service = service
        self.timeout = timeout
        self.cache = cache_manager
        self.cache_ttl = cache_ttl
        self.transport = transport

    def _cache_key(self, path: str) -> str:
        return f"directory:{self.service}:{path}"

    async def get_json(self, path: str, use_cache: bool = False) -> dict[str, Any] | None:
        """
        GET ``path`` and decode the body.

        Args:
            path: Path relative to the base URL
            use_cache: Serve from and store into the cache

        Returns:
            Decoded body, or None if the resource does not exist

        Raises:
            ServiceUnavailableException: On timeouts, transport errors or 5xx
        """
        if use_cache and self.cache:
            cached = self.cache.get_json(self._cache_key(path))
            if cached:
                return cached

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = await client.get(path)
        except httpx.HTTPError as e:
            logger.error("directory_request_failed", service=self.service, path=path, error=str(e))
            raise ServiceUnavailableException(
                f"{self.service} service is unavailable", service=self.service
            ) from e

        if response.status_code == 404:
            return None

        if response.status_code != 200:
            logger.error(
                "directory_unexpected_status",
                service=self.service,
                path=path,
                status_code=response.status_code,
            )
            raise ServiceUnavailableException(
                f"{self.service} service returned {response.status_code}", service=self.service
            )

        data = response.json()
        if use_cache and self.cache:
            self.cache.set_json(self._cache_key(path), data, ttl=self.cache_ttl)
        return data


class HttpPatientDirectory(HttpDirectoryClient):
    """Patient directory over HTTP."""

    def __init__(self, base_url: str, **kwargs: Any):
        """Initialize patient directory client."""
        super().__init__(base_url, service="patients", **kwargs)

    async def exists(self, patient_id: UUID) -> bool:
        """Check whether the patient exists."""
        return await self.get_json(f"/patients/{patient_id}") is not None

    async def get_notification_preferences(self, patient_id: UUID) -> NotificationPreferences:
        """Fetch the patient's notification preferences; none if the patient is unknown."""
        data = await self.get_json(f"/patients/{patient_id}/notification-preferences")
        if data is None:
            return NotificationPreferences()
        return NotificationPreferences.model_validate(data)


class HttpPractitionerDirectory(HttpDirectoryClient):
    """Practitioner directory over HTTP."""

    def __init__(self, base_url: str, **kwargs: Any):
        """Initialize practitioner directory client."""
        super().__init__(base_url, service="practitioners", **kwargs)

    async def _get(self, practitioner_id: UUID) -> PractitionerInfo | None:
        data = await self.get_json(f"/practitioners/{practitioner_id}", use_cache=True)
        return PractitionerInfo.model_validate(data) if data is not None else None

    async def exists(self, practitioner_id: UUID) -> bool:
        """Check whether the practitioner exists."""
        return await self._get(practitioner_id) is not None

    async def is_active(self, practitioner_id: UUID) -> bool:
        """Check whether the practitioner exists and is active."""
        practitioner = await self._get(practitioner_id)
        return practitioner is not None and practitioner.active


class HttpTreatmentCatalog(HttpDirectoryClient):
    """Treatment catalog over HTTP."""

    def __init__(self, base_url: str, **kwargs: Any):
        """Initialize treatment catalog client."""
        super().__init__(base_url, service="treatments", **kwargs)

    async def get(self, treatment_id: UUID) -> TreatmentInfo | None:
        """Fetch a treatment definition."""
        data = await self.get_json(f"/treatments/{treatment_id}", use_cache=True)
        return TreatmentInfo.model_validate(data) if data is not None else None
