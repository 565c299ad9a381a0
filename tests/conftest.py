import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

# Load environment variables from .env file
load_dotenv()

# Settings are read at import time, so these must be in place first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.setdefault("LOG_FORMAT", "console")

from app.config import Settings, settings  # noqa: E402
from app.core.clock import FrozenClock  # noqa: E402
from app.core.security import APPOINTMENTS_MANAGE, create_access_token  # noqa: E402
from app.database import async_database_url, get_db  # noqa: E402
from app.dependencies import get_clock  # noqa: E402
from app.main import app  # noqa: E402
from app.models.appointments import metadata  # noqa: E402
from app.schemas.appointments import Appointment  # noqa: E402
from app.services.appointment_service import AppointmentService  # noqa: E402
from app.services.appointment_store import AppointmentStore  # noqa: E402

# In-memory SQLite unless a real database is provided.
# Point TEST_DATABASE_URL at a disposable PostgreSQL database to run against Postgres.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

if TEST_DATABASE_URL == settings.database_url and not TEST_DATABASE_URL.startswith("sqlite"):
    raise RuntimeError("TEST_DATABASE_URL must not point at the application database")

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


def _create_test_engine() -> AsyncEngine:
    if TEST_DATABASE_URL.startswith("sqlite"):
        # One shared connection so every session sees the same in-memory database
        return create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    return create_async_engine(async_database_url(TEST_DATABASE_URL), poolclass=NullPool)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh schema per test."""
    test_engine = _create_test_engine()
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def test_settings() -> Settings:
    """Settings with the scheduler knobs pinned for deterministic tests."""
    return settings.model_copy(
        update={
            "booking_conflict_mode": "slot",
            "booking_slot_minutes": 30,
            "booking_max_horizon_days": 365,
            "notification_max_attempts": 3,
            "notification_backoff_base_seconds": 60,
            "notification_backoff_max_seconds": 3600,
            "notification_timeout_seconds": 5.0,
            "notification_lease_grace_seconds": 30,
            "scheduler_batch_size": 50,
            "scheduler_sweep_batch_size": 200,
        }
    )


@pytest.fixture
def service(db_session: AsyncSession, clock: FrozenClock, test_settings: Settings) -> AppointmentService:
    return AppointmentService(db_session, clock=clock, app_settings=test_settings)


@pytest.fixture
def book(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
    test_settings: Settings,
) -> Callable[..., Awaitable[Appointment]]:
    """Book an appointment in its own session, as a request handler would."""

    async def _book(
        subject_id: UUID | None = None,
        owner_id: UUID | None = None,
        scheduled_in: timedelta = timedelta(hours=1),
        contact_email: str = "owner@example.com",
    ) -> Appointment:
        async with session_factory() as db:
            service = AppointmentService(db, clock=clock, app_settings=test_settings)
            return await service.create_appointment(
                subject_id=subject_id or uuid4(),
                owner_id=owner_id or uuid4(),
                scheduled_at=clock.now() + scheduled_in,
                contact_email=contact_email,
            )

    return _book


@pytest.fixture
def fetch(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[UUID], Awaitable[Appointment]]:
    """Read the stored state of an appointment in a fresh session."""

    async def _fetch(appointment_id: UUID) -> Appointment:
        async with session_factory() as db:
            return await AppointmentStore(db).get(appointment_id)

    return _fetch


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def owner_id() -> UUID:
    return uuid4()


@pytest.fixture
def auth_headers(owner_id: UUID) -> dict:
    """Bearer token for a plain pet owner."""
    token = create_access_token(data={"sub": str(owner_id)}, expires_delta=timedelta(minutes=30))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def sample_appointment_data() -> dict:
    """Sample booking request one hour after the frozen start time."""
    return {
        "subject_id": str(uuid4()),
        "scheduled_at": (START + timedelta(hours=1)).isoformat(),
        "contact_email": "owner@example.com",
    }


@pytest.fixture
def manager_headers() -> dict:
    """Bearer token for clinic staff allowed to manage any appointment."""
    token = create_access_token(
        data={"sub": str(uuid4()), "permissions": [APPOINTMENTS_MANAGE]},
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}
