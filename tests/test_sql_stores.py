"""Tests for the SQLAlchemy-backed entity store and appointment repository."""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from clinic_scheduling.core.exceptions import (
    InactiveDoctorException,
    NotFoundException,
    SlotConflictException,
)
from clinic_scheduling.models import appointment_services
from clinic_scheduling.scheduling.conflict_resolver import ConflictResolver
from clinic_scheduling.scheduling.interval_index import doctor_key
from clinic_scheduling.scheduling.locks import KeyLockManager
from clinic_scheduling.schemas.appointments import Appointment, AppointmentStatus
from clinic_scheduling.schemas.entities import Doctor
from clinic_scheduling.services.appointment_repository import SqlAppointmentRepository
from clinic_scheduling.services.entity_store import SqlEntityStore
from clinic_scheduling.services.scheduling_service import SchedulingService

from conftest import (
    ACTIVE_DOCTOR_ID,
    CLINIC_DAY,
    CLOSED_ROOM_ID,
    OTHER_DOCTOR_ID,
    OTHER_PATIENT_ID,
    PATIENT_ID,
    ROOM_ID,
    seed_reference_data,
)


@pytest_asyncio.fixture
async def sql_store(sql_engine) -> SqlEntityStore:
    """Seeded SQL entity store without a cache."""
    store = SqlEntityStore(sql_engine)
    await seed_reference_data(store)
    return store


@pytest.fixture
def sql_repository(sql_engine) -> SqlAppointmentRepository:
    """SQL appointment repository on the seeded engine."""
    return SqlAppointmentRepository(sql_engine)


def make_appointment(slot, start="09:00", end="09:30", **overrides) -> Appointment:
    interval = slot(start, end)
    values = {
        "patient_id": PATIENT_ID,
        "doctor_id": ACTIVE_DOCTOR_ID,
        "scheduled_start": interval.start,
        "scheduled_end": interval.end,
        "created_at": CLINIC_DAY - timedelta(days=1),
    }
    values.update(overrides)
    return Appointment(**values)


# ----------------------------------------------------------------------
# SqlEntityStore
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sql_store_reads_reference_records(sql_store):
    """Seeded records come back with their junction data."""
    doctor = await sql_store.get_doctor(OTHER_DOCTOR_ID)
    assert doctor.full_name == "Dr. Kofi Owusu"
    assert doctor.specialty_ids == {1, 2}
    assert doctor.is_active is True

    room = await sql_store.get_room(CLOSED_ROOM_ID)
    assert room.is_available is False

    patient = await sql_store.get_patient(PATIENT_ID)
    assert patient.last_name == "Asante"

    xray = await sql_store.get_service(2)
    assert xray.code == "XRAY"
    assert xray.price == Decimal("45.00")

    assert await sql_store.doctor_specialties(ACTIVE_DOCTOR_ID) == {1}


@pytest.mark.asyncio
@pytest.mark.parametrize("getter", ["get_doctor", "get_room", "get_patient", "get_service"])
async def test_sql_store_missing_records(sql_store, getter):
    """Unknown ids raise NotFoundException."""
    with pytest.raises(NotFoundException):
        await getattr(sql_store, getter)(404)


@pytest.mark.asyncio
async def test_sql_store_flags(sql_store):
    """Flag updates are persisted and unknown ids are rejected."""
    doctor = await sql_store.set_doctor_active(ACTIVE_DOCTOR_ID, False)
    assert doctor.is_active is False
    assert await sql_store.is_doctor_active(ACTIVE_DOCTOR_ID) is False

    room = await sql_store.set_room_available(CLOSED_ROOM_ID, True)
    assert room.is_available is True

    with pytest.raises(NotFoundException):
        await sql_store.set_doctor_active(404, True)
    with pytest.raises(NotFoundException):
        await sql_store.set_room_available(404, True)


@pytest.mark.asyncio
async def test_sql_store_populates_cache_on_miss(sql_engine):
    """A cache miss reads the database and writes the record back."""
    cache = MagicMock()
    cache.get_json.return_value = None
    store = SqlEntityStore(sql_engine, cache_manager=cache)
    await seed_reference_data(store)

    doctor = await store.get_doctor(ACTIVE_DOCTOR_ID)

    cache.get_json.assert_called_once_with("entity:doctor:1")
    key, payload = cache.set_json.call_args.args
    assert key == "entity:doctor:1"
    assert Doctor.model_validate(payload) == doctor


@pytest.mark.asyncio
async def test_sql_store_serves_cache_hit(sql_engine):
    """A cache hit skips the database."""
    cache = MagicMock()
    cache.get_json.return_value = {
        "id": 99,
        "first_name": "Cached",
        "last_name": "Doctor",
        "is_active": True,
        "specialty_ids": [1],
    }
    store = SqlEntityStore(sql_engine, cache_manager=cache)

    doctor = await store.get_doctor(99)

    assert doctor.first_name == "Cached"
    assert doctor.specialty_ids == {1}
    cache.set_json.assert_not_called()


@pytest.mark.asyncio
async def test_sql_store_invalidates_cache_on_flag_change(sql_engine):
    """Changing a flag drops the cached record."""
    cache = MagicMock()
    cache.get_json.return_value = None
    cache.delete.return_value = True
    store = SqlEntityStore(sql_engine, cache_manager=cache)
    await seed_reference_data(store)

    await store.set_room_available(ROOM_ID, False)

    cache.delete.assert_called_once_with("entity:room:1")


# ----------------------------------------------------------------------
# SqlAppointmentRepository
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sql_repository_insert_and_load(sql_store, sql_repository, slot):
    """Inserts assign an id and round-trip services and timestamps."""
    saved = await sql_repository.save(
        make_appointment(slot, room_id=ROOM_ID, reason="Toothache", service_ids=[1, 2])
    )

    assert saved.id is not None
    loaded = await sql_repository.load(saved.id)
    assert loaded.interval == slot("09:00", "09:30")
    assert loaded.status == AppointmentStatus.SCHEDULED
    assert loaded.room_id == ROOM_ID
    assert loaded.reason == "Toothache"
    assert loaded.service_ids == [1, 2]
    assert loaded.created_at == CLINIC_DAY - timedelta(days=1)


@pytest.mark.asyncio
async def test_sql_repository_prices_services(sql_engine, sql_store, sql_repository, slot):
    """appointment_services rows carry the service price at booking time."""
    saved = await sql_repository.save(make_appointment(slot, service_ids=[2]))

    async with sql_engine.connect() as conn:
        row = (
            await conn.execute(
                select(appointment_services).where(
                    appointment_services.c.appointment_id == saved.id
                )
            )
        ).mappings().one()

    assert row["quantity"] == 1
    assert Decimal(row["unit_price"]) == Decimal("45.00")


@pytest.mark.asyncio
async def test_sql_repository_rejects_unknown_service(sql_store, sql_repository, slot):
    """A missing service aborts the whole insert."""
    with pytest.raises(NotFoundException):
        await sql_repository.save(make_appointment(slot, service_ids=[1, 404]))

    assert await sql_repository.list_by_doctor(ACTIVE_DOCTOR_ID) == []


@pytest.mark.asyncio
async def test_sql_repository_update(sql_store, sql_repository, slot):
    """Saving an existing appointment updates it in place."""
    saved = await sql_repository.save(make_appointment(slot, service_ids=[1]))
    cancelled_at = CLINIC_DAY - timedelta(hours=2)

    await sql_repository.save(
        saved.model_copy(
            update={
                "status": AppointmentStatus.CANCELLED,
                "cancelled_at": cancelled_at,
                "service_ids": [2],
            }
        )
    )

    loaded = await sql_repository.load(saved.id)
    assert loaded.status == AppointmentStatus.CANCELLED
    assert loaded.cancelled_at == cancelled_at
    assert loaded.service_ids == [2]

    with pytest.raises(NotFoundException):
        await sql_repository.save(saved.model_copy(update={"id": 999}))


@pytest.mark.asyncio
async def test_sql_repository_listing(sql_store, sql_repository, slot):
    """Listings filter by resource, range and status."""
    late = await sql_repository.save(make_appointment(slot, "14:00", "14:30", room_id=ROOM_ID))
    early = await sql_repository.save(make_appointment(slot, "09:00", "09:30"))
    cancelled = await sql_repository.save(
        make_appointment(slot, "10:00", "10:30", status=AppointmentStatus.CANCELLED)
    )
    other = await sql_repository.save(
        make_appointment(
            slot, "09:00", "09:30", doctor_id=OTHER_DOCTOR_ID, patient_id=OTHER_PATIENT_ID
        )
    )

    by_doctor = await sql_repository.list_by_doctor(ACTIVE_DOCTOR_ID)
    assert [a.id for a in by_doctor] == [early.id, cancelled.id, late.id]

    # Half-open: a range ending at 10:00 excludes the 10:00 appointment
    morning = await sql_repository.list_by_doctor(ACTIVE_DOCTOR_ID, slot("09:15", "10:00"))
    assert [a.id for a in morning] == [early.id]

    by_room = await sql_repository.list_by_room(ROOM_ID)
    assert [a.id for a in by_room] == [late.id]

    active = await sql_repository.list_active()
    assert {a.id for a in active} == {early.id, late.id, other.id}

    with pytest.raises(NotFoundException):
        await sql_repository.load(999)


# ----------------------------------------------------------------------
# SchedulingService over SQL
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scheduling_service_over_sql(sql_store, sql_repository, clock, slot):
    """Booking, cancelling and restarting against the database."""
    service = SchedulingService(
        sql_store,
        sql_repository,
        resolver=ConflictResolver(KeyLockManager(), lock_timeout=0.5),
        clock=clock,
    )

    first = await service.book(
        PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:00", "09:30"), room_id=ROOM_ID, service_ids=[1]
    )
    second = await service.book(OTHER_PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:30", "10:00"))

    with pytest.raises(SlotConflictException):
        await service.book(OTHER_PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:15", "09:45"))

    await service.cancel(second.id)
    assert (await service.get_appointment(second.id)).cancelled_at == clock.now

    restarted = SchedulingService(sql_store, sql_repository, clock=clock)
    assert await restarted.rebuild_index() == 1
    assert restarted.index.get(doctor_key(ACTIVE_DOCTOR_ID), first.id) == slot("09:00", "09:30")

    rebooked = await restarted.book(OTHER_PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:30", "10:00"))
    assert rebooked.status == AppointmentStatus.SCHEDULED

    await sql_store.set_doctor_active(ACTIVE_DOCTOR_ID, False)
    with pytest.raises(InactiveDoctorException):
        await restarted.book(PATIENT_ID, ACTIVE_DOCTOR_ID, slot("11:00", "11:30"))


@pytest.mark.asyncio
async def test_two_service_instances_share_one_database(sql_store, sql_repository, clock, slot):
    """Instances that never exchanged index state still refuse each other's slots."""
    lock_manager = KeyLockManager()
    first, second = (
        SchedulingService(
            sql_store,
            sql_repository,
            resolver=ConflictResolver(lock_manager, lock_timeout=0.5),
            clock=clock,
        )
        for _ in range(2)
    )
    assert await first.rebuild_index() == 0
    assert await second.rebuild_index() == 0

    booked = await first.book(
        PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:00", "09:30"), room_id=ROOM_ID
    )

    with pytest.raises(SlotConflictException) as exc_info:
        await second.book(OTHER_PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:00", "09:30"))
    assert exc_info.value.conflicting_ids == [booked.id]

    with pytest.raises(SlotConflictException):
        await second.book(
            OTHER_PATIENT_ID, OTHER_DOCTOR_ID, slot("09:15", "09:45"), room_id=ROOM_ID
        )

    await first.cancel(booked.id)
    rebooked = await second.book(OTHER_PATIENT_ID, ACTIVE_DOCTOR_ID, slot("09:00", "09:30"))
    assert [a.id for a in await sql_repository.list_active()] == [rebooked.id]
