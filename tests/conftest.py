import os
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Load environment variables from .env file
load_dotenv()

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from clinic_scheduler.core.security import create_access_token  # noqa: E402
from clinic_scheduler.database import get_db  # noqa: E402
from clinic_scheduler.dependencies import (  # noqa: E402
    get_notifier,
    get_patient_directory,
    get_practitioner_directory,
    get_treatment_catalog,
)
from clinic_scheduler.main import app  # noqa: E402
from clinic_scheduler.models import metadata  # noqa: E402
from clinic_scheduler.schemas.appointments import (  # noqa: E402
    AppointmentCreate,
    AppointmentResponse,
    AppointmentState,
)
from clinic_scheduler.schemas.directory import (  # noqa: E402
    NotificationPreferences,
    TreatmentInfo,
)
from clinic_scheduler.services.appointment_service import AppointmentService  # noqa: E402

# In-memory SQLite shared across sessions through a single connection
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakePatientDirectory:
    """Patient directory backed by a dict."""

    def __init__(self) -> None:
        self.preferences: dict[UUID, NotificationPreferences] = {}

    def add(self, preferences: NotificationPreferences | None = None) -> UUID:
        patient_id = uuid4()
        self.preferences[patient_id] = preferences or NotificationPreferences()
        return patient_id

    async def exists(self, patient_id: UUID) -> bool:
        return patient_id in self.preferences

    async def get_notification_preferences(self, patient_id: UUID) -> NotificationPreferences:
        return self.preferences.get(patient_id, NotificationPreferences())


class FakePractitionerDirectory:
    """Practitioner directory backed by a dict of id -> active."""

    def __init__(self) -> None:
        self.practitioners: dict[UUID, bool] = {}

    def add(self, active: bool = True) -> UUID:
        practitioner_id = uuid4()
        self.practitioners[practitioner_id] = active
        return practitioner_id

    async def exists(self, practitioner_id: UUID) -> bool:
        return practitioner_id in self.practitioners

    async def is_active(self, practitioner_id: UUID) -> bool:
        return self.practitioners.get(practitioner_id, False)


class FakeTreatmentCatalog:
    """Treatment catalog backed by a dict."""

    def __init__(self) -> None:
        self.treatments: dict[UUID, TreatmentInfo] = {}

    def add(self, eligible: list[UUID] | None = None, active: bool = True) -> UUID:
        treatment_id = uuid4()
        self.treatments[treatment_id] = TreatmentInfo(
            id=treatment_id, active=active, eligible_practitioners=eligible
        )
        return treatment_id

    async def get(self, treatment_id: UUID) -> TreatmentInfo | None:
        return self.treatments.get(treatment_id)


class RecordingNotifier:
    """Notifier that records calls, or raises when ``fail`` is set."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple]] = []
        self.fail = False

    def _record(self, name: str, *args) -> None:
        if self.fail:
            raise RuntimeError("notification backend exploded")
        self.calls.append((name, args))

    def notify_booked(self, appointment: AppointmentResponse) -> None:
        self._record("booked", appointment)

    def notify_updated(self, appointment: AppointmentResponse) -> None:
        self._record("updated", appointment)

    def notify_rescheduled(
        self, original: AppointmentResponse, successor: AppointmentResponse
    ) -> None:
        self._record("rescheduled", original, successor)

    def notify_state_changed(
        self, appointment: AppointmentResponse, previous_state: AppointmentState
    ) -> None:
        self._record("state_changed", appointment, previous_state)

    async def drain(self) -> None:
        return None

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest_asyncio.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh in-memory database with the appointments table."""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    await test_engine.dispose()


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def patients() -> FakePatientDirectory:
    return FakePatientDirectory()


@pytest.fixture
def practitioners() -> FakePractitionerDirectory:
    return FakePractitionerDirectory()


@pytest.fixture
def treatments() -> FakeTreatmentCatalog:
    return FakeTreatmentCatalog()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def patient_id(patients: FakePatientDirectory) -> UUID:
    return patients.add()


@pytest.fixture
def practitioner_id(practitioners: FakePractitionerDirectory) -> UUID:
    return practitioners.add()


@pytest.fixture
def other_practitioner_id(practitioners: FakePractitionerDirectory) -> UUID:
    return practitioners.add()


@pytest.fixture
def treatment_id(treatments: FakeTreatmentCatalog) -> UUID:
    """Treatment any practitioner may perform."""
    return treatments.add()


@pytest.fixture
def service(
    db_session: AsyncSession,
    patients: FakePatientDirectory,
    practitioners: FakePractitionerDirectory,
    treatments: FakeTreatmentCatalog,
    notifier: RecordingNotifier,
) -> AppointmentService:
    return AppointmentService(
        db_session,
        patients,
        practitioners,
        treatments,
        notifier,
        max_retries=2,
        clinic_timezone="UTC",
    )


@pytest.fixture
def base_time() -> datetime:
    """A Monday morning well in the future."""
    return datetime(2030, 3, 4, 9, 0, tzinfo=UTC)


@pytest.fixture
def make_booking(patient_id: UUID, practitioner_id: UUID, treatment_id: UUID, base_time: datetime):
    """Build a booking request at an hour offset from ``base_time``."""

    def _make(
        start_hours: float = 0,
        duration_minutes: int = 60,
        practitioner: UUID | None = None,
        **overrides,
    ) -> AppointmentCreate:
        start = base_time + timedelta(hours=start_hours)
        data = {
            "patient_id": patient_id,
            "practitioner_id": practitioner or practitioner_id,
            "treatment_id": treatment_id,
            "start_time": start,
            "end_time": start + timedelta(minutes=duration_minutes),
            "notes": "Routine check",
        }
        data.update(overrides)
        return AppointmentCreate(**data)

    return _make


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    patients: FakePatientDirectory,
    practitioners: FakePractitionerDirectory,
    treatments: FakeTreatmentCatalog,
    notifier: RecordingNotifier,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_patient_directory] = lambda: patients
    app.dependency_overrides[get_practitioner_directory] = lambda: practitioners
    app.dependency_overrides[get_treatment_catalog] = lambda: treatments
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def _bearer(role: str) -> dict:
    token = create_access_token(
        data={"sub": str(uuid4()), "role": role},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers() -> dict:
    """Clinic staff caller."""
    return _bearer("staff")


@pytest.fixture
def patient_headers() -> dict:
    """Patient caller."""
    return _bearer("patient")
