"""Entity store: reference records the scheduling core reads."""

from typing import Protocol

import structlog
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from clinic_scheduling.core.exceptions import NotFoundException
from clinic_scheduling.core.redis_client import CacheManager
from clinic_scheduling.models import (
    doctor_specialties,
    doctors,
    patients,
    rooms,
    services,
    specialties,
)
from clinic_scheduling.schemas.entities import Doctor, Patient, Room, Service, Specialty

logger = structlog.get_logger(__name__)


class EntityStore(Protocol):
    """Read side of the reference data used when booking."""

    async def get_doctor(self, doctor_id: int) -> Doctor: ...

    async def get_room(self, room_id: int) -> Room: ...

    async def get_patient(self, patient_id: int) -> Patient: ...

    async def get_service(self, service_id: int) -> Service: ...

    async def is_doctor_active(self, doctor_id: int) -> bool: ...

    async def doctor_specialties(self, doctor_id: int) -> set[int]: ...


class InMemoryEntityStore:
    """Dict-backed entity store."""

    def __init__(self) -> None:
        """Initialize empty collections."""
        self.doctors: dict[int, Doctor] = {}
        self.rooms: dict[int, Room] = {}
        self.patients: dict[int, Patient] = {}
        self.services: dict[int, Service] = {}
        self.specialties: dict[int, Specialty] = {}

    async def get_doctor(self, doctor_id: int) -> Doctor:
        try:
            return self.doctors[doctor_id]
        except KeyError:
            raise NotFoundException("Doctor", doctor_id) from None

    async def get_room(self, room_id: int) -> Room:
        try:
            return self.rooms[room_id]
        except KeyError:
            raise NotFoundException("Room", room_id) from None

    async def get_patient(self, patient_id: int) -> Patient:
        try:
            return self.patients[patient_id]
        except KeyError:
            raise NotFoundException("Patient", patient_id) from None

    async def get_service(self, service_id: int) -> Service:
        try:
            return self.services[service_id]
        except KeyError:
            raise NotFoundException("Service", service_id) from None

    async def is_doctor_active(self, doctor_id: int) -> bool:
        return (await self.get_doctor(doctor_id)).is_active

    async def doctor_specialties(self, doctor_id: int) -> set[int]:
        return set((await self.get_doctor(doctor_id)).specialty_ids)

    async def add_specialty(self, specialty: Specialty) -> Specialty:
        self.specialties[specialty.id] = specialty
        return specialty

    async def add_doctor(self, doctor: Doctor) -> Doctor:
        for specialty_id in doctor.specialty_ids:
            if specialty_id not in self.specialties:
                raise NotFoundException("Specialty", specialty_id)
        self.doctors[doctor.id] = doctor
        return doctor

    async def add_room(self, room: Room) -> Room:
        self.rooms[room.id] = room
        return room

    async def add_patient(self, patient: Patient) -> Patient:
        self.patients[patient.id] = patient
        return patient

    async def add_service(self, service: Service) -> Service:
        self.services[service.id] = service
        return service

    async def set_doctor_active(self, doctor_id: int, is_active: bool) -> Doctor:
        doctor = (await self.get_doctor(doctor_id)).model_copy(update={"is_active": is_active})
        self.doctors[doctor_id] = doctor
        return doctor

    async def set_room_available(self, room_id: int, is_available: bool) -> Room:
        room = (await self.get_room(room_id)).model_copy(update={"is_available": is_available})
        self.rooms[room_id] = room
        return room


class SqlEntityStore:
    """Entity store over the clinic booking tables, with optional Redis caching."""

    def __init__(self, engine: AsyncEngine, cache_manager: CacheManager | None = None):
        """Initialize store with an async engine and optional cache manager."""
        self.engine = engine
        self.cache = cache_manager

    @staticmethod
    def _cache_key(entity: str, entity_id: int) -> str:
        """Generate cache key for an entity record."""
        return f"entity:{entity}:{entity_id}"

    async def get_doctor(self, doctor_id: int) -> Doctor:
        """Get doctor by ID with its specialty ids, cached when a cache is configured."""
        cache_key = self._cache_key("doctor", doctor_id)
        if self.cache:
            cached = self.cache.get_json(cache_key)
            if cached:
                return Doctor.model_validate(cached)

        async with self.engine.connect() as conn:
            row = (
                await conn.execute(select(doctors).where(doctors.c.doctor_id == doctor_id))
            ).mappings().first()
            if row is None:
                raise NotFoundException("Doctor", doctor_id)
            specialty_rows = await conn.execute(
                select(doctor_specialties.c.specialty_id).where(
                    doctor_specialties.c.doctor_id == doctor_id
                )
            )
            specialty_ids = {r.specialty_id for r in specialty_rows}

        doctor = Doctor(
            id=row["doctor_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone"],
            license_number=row["license_number"],
            is_active=row["is_active"],
            specialty_ids=specialty_ids,
        )

        if self.cache:
            self.cache.set_json(cache_key, doctor.model_dump(mode="json"))

        return doctor

    async def get_room(self, room_id: int) -> Room:
        """Get room by ID, cached when a cache is configured."""
        cache_key = self._cache_key("room", room_id)
        if self.cache:
            cached = self.cache.get_json(cache_key)
            if cached:
                return Room.model_validate(cached)

        async with self.engine.connect() as conn:
            row = (
                await conn.execute(select(rooms).where(rooms.c.room_id == room_id))
            ).mappings().first()
        if row is None:
            raise NotFoundException("Room", room_id)

        room = Room(
            id=row["room_id"],
            name=row["name"],
            location=row["location"],
            capacity=row["capacity"] or 1,
            is_available=row["is_available"],
        )

        if self.cache:
            self.cache.set_json(cache_key, room.model_dump(mode="json"))

        return room

    async def get_patient(self, patient_id: int) -> Patient:
        """Get patient by ID."""
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(select(patients).where(patients.c.patient_id == patient_id))
            ).mappings().first()
        if row is None:
            raise NotFoundException("Patient", patient_id)
        return Patient(
            id=row["patient_id"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone"],
            nhis_number=row["nhis_number"],
        )

    async def get_service(self, service_id: int) -> Service:
        """Get service by ID."""
        async with self.engine.connect() as conn:
            row = (
                await conn.execute(select(services).where(services.c.service_id == service_id))
            ).mappings().first()
        if row is None:
            raise NotFoundException("Service", service_id)
        return Service(
            id=row["service_id"],
            code=row["code"],
            name=row["name"],
            duration_minutes=row["duration_minutes"],
            price=row["price"],
        )

    async def is_doctor_active(self, doctor_id: int) -> bool:
        """Check the doctor's active flag."""
        return (await self.get_doctor(doctor_id)).is_active

    async def doctor_specialties(self, doctor_id: int) -> set[int]:
        """Specialty ids of the doctor."""
        return set((await self.get_doctor(doctor_id)).specialty_ids)

    async def add_specialty(self, specialty: Specialty) -> Specialty:
        """Insert a specialty."""
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(specialties).values(
                    specialty_id=specialty.id,
                    name=specialty.name,
                    description=specialty.description,
                )
            )
        return specialty

    async def add_doctor(self, doctor: Doctor) -> Doctor:
        """Insert a doctor and its doctor_specialties rows."""
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(doctors).values(
                    doctor_id=doctor.id,
                    first_name=doctor.first_name,
                    last_name=doctor.last_name,
                    email=doctor.email,
                    phone=doctor.phone,
                    license_number=doctor.license_number,
                    is_active=doctor.is_active,
                )
            )
            if doctor.specialty_ids:
                await conn.execute(
                    insert(doctor_specialties),
                    [
                        {"doctor_id": doctor.id, "specialty_id": specialty_id}
                        for specialty_id in sorted(doctor.specialty_ids)
                    ],
                )
        return doctor

    async def add_room(self, room: Room) -> Room:
        """Insert a room."""
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(rooms).values(
                    room_id=room.id,
                    name=room.name,
                    location=room.location,
                    capacity=room.capacity,
                    is_available=room.is_available,
                )
            )
        return room

    async def add_patient(self, patient: Patient) -> Patient:
        """Insert a patient."""
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(patients).values(
                    patient_id=patient.id,
                    first_name=patient.first_name,
                    last_name=patient.last_name,
                    email=patient.email,
                    phone=patient.phone,
                    nhis_number=patient.nhis_number,
                )
            )
        return patient

    async def add_service(self, service: Service) -> Service:
        """Insert a service."""
        async with self.engine.begin() as conn:
            await conn.execute(
                insert(services).values(
                    service_id=service.id,
                    code=service.code,
                    name=service.name,
                    duration_minutes=service.duration_minutes,
                    price=service.price,
                )
            )
        return service

    async def set_doctor_active(self, doctor_id: int, is_active: bool) -> Doctor:
        """Flip the doctor's active flag and drop the cached record."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(doctors).where(doctors.c.doctor_id == doctor_id).values(is_active=is_active)
            )
        if result.rowcount == 0:
            raise NotFoundException("Doctor", doctor_id)

        self._invalidate("doctor", doctor_id)
        logger.info("doctor_active_flag_changed", doctor_id=doctor_id, is_active=is_active)
        return await self.get_doctor(doctor_id)

    async def set_room_available(self, room_id: int, is_available: bool) -> Room:
        """Flip the room's availability flag and drop the cached record."""
        async with self.engine.begin() as conn:
            result = await conn.execute(
                update(rooms).where(rooms.c.room_id == room_id).values(is_available=is_available)
            )
        if result.rowcount == 0:
            raise NotFoundException("Room", room_id)

        self._invalidate("room", room_id)
        logger.info("room_availability_changed", room_id=room_id, is_available=is_available)
        return await self.get_room(room_id)

    def _invalidate(self, entity: str, entity_id: int) -> None:
        if self.cache and not self.cache.delete(self._cache_key(entity, entity_id)):
            logger.warning("entity_cache_invalidation_failed", entity=entity, entity_id=entity_id)
