from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from clinic_scheduling.models import metadata
from clinic_scheduling.scheduling.conflict_resolver import ConflictResolver
from clinic_scheduling.scheduling.locks import KeyLockManager
from clinic_scheduling.schemas.appointments import TimeInterval
from clinic_scheduling.schemas.entities import Doctor, Patient, Room, Service, Specialty
from clinic_scheduling.services.appointment_repository import InMemoryAppointmentRepository
from clinic_scheduling.services.entity_store import InMemoryEntityStore
from clinic_scheduling.services.scheduling_service import SchedulingService

# Day all scenario slots are booked on
CLINIC_DAY = datetime(2030, 1, 15, tzinfo=UTC)

ACTIVE_DOCTOR_ID = 1
OTHER_DOCTOR_ID = 2
INACTIVE_DOCTOR_ID = 3
ROOM_ID = 1
CLOSED_ROOM_ID = 2
PATIENT_ID = 1
OTHER_PATIENT_ID = 2


class FrozenClock:
    """Clock returning a settable instant."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture
def slot() -> Callable[[str, str], TimeInterval]:
    """Factory building an interval on the clinic day from 'HH:MM' strings."""

    def make(start: str, end: str) -> TimeInterval:
        def at(value: str) -> datetime:
            hour, minute = (int(part) for part in value.split(":"))
            return CLINIC_DAY.replace(hour=hour, minute=minute)

        return TimeInterval(start=at(start), end=at(end))

    return make


@pytest.fixture
def clock() -> FrozenClock:
    """Clock set to the morning before the clinic day."""
    return FrozenClock(CLINIC_DAY - timedelta(days=1))


async def seed_reference_data(store) -> None:
    """Load the doctors, rooms, patients and services every scenario uses."""
    await store.add_specialty(Specialty(id=1, name="General Practice"))
    await store.add_specialty(Specialty(id=2, name="Dentistry"))
    await store.add_doctor(
        Doctor(
            id=ACTIVE_DOCTOR_ID,
            first_name="Ama",
            last_name="Mensah",
            email="ama.mensah@clinic.test",
            license_number="GP-001",
            specialty_ids={1},
        )
    )
    await store.add_doctor(
        Doctor(
            id=OTHER_DOCTOR_ID,
            first_name="Kofi",
            last_name="Owusu",
            email="kofi.owusu@clinic.test",
            license_number="DN-002",
            specialty_ids={1, 2},
        )
    )
    await store.add_doctor(
        Doctor(
            id=INACTIVE_DOCTOR_ID,
            first_name="Efua",
            last_name="Boateng",
            email="efua.boateng@clinic.test",
            license_number="GP-003",
            is_active=False,
        )
    )
    await store.add_room(Room(id=ROOM_ID, name="Consult 1", location="Ground floor"))
    await store.add_room(Room(id=CLOSED_ROOM_ID, name="Consult 2", is_available=False))
    await store.add_patient(Patient(id=PATIENT_ID, first_name="Yaw", last_name="Asante"))
    await store.add_patient(Patient(id=OTHER_PATIENT_ID, first_name="Akua", last_name="Darko"))
    await store.add_service(Service(id=1, code="CONS", name="Consultation"))
    await store.add_service(
        Service(id=2, code="XRAY", name="X-Ray", duration_minutes=15, price="45.00")
    )


@pytest_asyncio.fixture
async def entity_store() -> InMemoryEntityStore:
    """In-memory entity store with reference data."""
    store = InMemoryEntityStore()
    await seed_reference_data(store)
    return store


@pytest.fixture
def repository() -> InMemoryAppointmentRepository:
    """Empty in-memory appointment repository."""
    return InMemoryAppointmentRepository()


@pytest.fixture
def lock_manager() -> KeyLockManager:
    """In-process lock manager."""
    return KeyLockManager()


@pytest.fixture
def service(
    entity_store: InMemoryEntityStore,
    repository: InMemoryAppointmentRepository,
    lock_manager: KeyLockManager,
    clock: FrozenClock,
) -> SchedulingService:
    """Scheduling service over in-memory stores with short lock waits."""
    resolver = ConflictResolver(
        lock_manager,
        lock_timeout=0.05,
        max_attempts=2,
        backoff_seconds=0.01,
    )
    return SchedulingService(entity_store, repository, resolver=resolver, clock=clock)


@pytest_asyncio.fixture
async def sql_engine() -> AsyncGenerator[AsyncEngine, None]:
    """SQLite engine with every clinic booking table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await engine.dispose()
