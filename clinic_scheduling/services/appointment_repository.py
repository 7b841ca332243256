"""Appointment persistence."""

from collections.abc import Mapping
from typing import Any, Protocol

from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from clinic_scheduling.core.exceptions import NotFoundException
from clinic_scheduling.models import appointment_services, appointments, services
from clinic_scheduling.schemas.appointments import Appointment, AppointmentStatus, TimeInterval


class AppointmentRepository(Protocol):
    """Storage the scheduling core writes appointments to and rebuilds its index from."""

    async def save(self, appointment: Appointment) -> Appointment: ...

    async def load(self, appointment_id: int) -> Appointment: ...

    async def list_by_doctor(
        self, doctor_id: int, time_range: TimeInterval | None = None
    ) -> list[Appointment]: ...

    async def list_by_room(
        self, room_id: int, time_range: TimeInterval | None = None
    ) -> list[Appointment]: ...

    async def list_active(self) -> list[Appointment]: ...


def _in_range(appointment: Appointment, time_range: TimeInterval | None) -> bool:
    return time_range is None or appointment.interval.overlaps(time_range)


class InMemoryAppointmentRepository:
    """Dict-backed repository assigning sequential ids."""

    def __init__(self) -> None:
        """Initialize empty storage."""
        self._rows: dict[int, Appointment] = {}
        self._next_id = 1

    async def save(self, appointment: Appointment) -> Appointment:
        if appointment.id is None:
            appointment = appointment.model_copy(update={"id": self._next_id})
            self._next_id += 1
        elif appointment.id not in self._rows:
            raise NotFoundException("Appointment", appointment.id)
        self._rows[appointment.id] = appointment
        return appointment

    async def load(self, appointment_id: int) -> Appointment:
        try:
            return self._rows[appointment_id]
        except KeyError:
            raise NotFoundException("Appointment", appointment_id) from None

    async def list_by_doctor(
        self, doctor_id: int, time_range: TimeInterval | None = None
    ) -> list[Appointment]:
        rows = [
            a for a in self._rows.values() if a.doctor_id == doctor_id and _in_range(a, time_range)
        ]
        return sorted(rows, key=lambda a: a.scheduled_start)

    async def list_by_room(
        self, room_id: int, time_range: TimeInterval | None = None
    ) -> list[Appointment]:
        rows = [a for a in self._rows.values() if a.room_id == room_id and _in_range(a, time_range)]
        return sorted(rows, key=lambda a: a.scheduled_start)

    async def list_active(self) -> list[Appointment]:
        rows = [a for a in self._rows.values() if a.blocks_slot]
        return sorted(rows, key=lambda a: a.scheduled_start)


class SqlAppointmentRepository:
    """Repository over the appointments and appointment_services tables."""

    def __init__(self, engine: AsyncEngine):
        """Initialize repository with an async engine."""
        self.engine = engine

    async def save(self, appointment: Appointment) -> Appointment:
        """
        Insert a new appointment or update an existing one.

        Args:
            appointment: Appointment to persist; id None means insert

        Returns:
            The persisted appointment, with its id assigned

        Raises:
            NotFoundException: If an update targets a missing appointment
        """
        values = {
            "patient_id": appointment.patient_id,
            "doctor_id": appointment.doctor_id,
            "room_id": appointment.room_id,
            "scheduled_start": appointment.scheduled_start,
            "scheduled_end": appointment.scheduled_end,
            "status": appointment.status.value,
            "reason": appointment.reason,
            "created_by_user": appointment.created_by_user,
            "created_at": appointment.created_at,
            "updated_at": appointment.updated_at,
            "cancelled_at": appointment.cancelled_at,
        }

        async with self.engine.begin() as conn:
            if appointment.id is None:
                result = await conn.execute(
                    insert(appointments).values(**values).returning(appointments.c.appointment_id)
                )
                appointment = appointment.model_copy(update={"id": result.scalar_one()})
                await self._write_services(conn, appointment.id, appointment.service_ids)
            else:
                result = await conn.execute(
                    update(appointments)
                    .where(appointments.c.appointment_id == appointment.id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    raise NotFoundException("Appointment", appointment.id)
                await conn.execute(
                    delete(appointment_services).where(
                        appointment_services.c.appointment_id == appointment.id
                    )
                )
                await self._write_services(conn, appointment.id, appointment.service_ids)

        return appointment

    @staticmethod
    async def _write_services(
        conn: AsyncConnection, appointment_id: int, service_ids: list[int]
    ) -> None:
        """Write appointment_services rows, pricing each at the service's current price."""
        if not service_ids:
            return
        prices = {
            row.service_id: row.price
            for row in await conn.execute(
                select(services.c.service_id, services.c.price).where(
                    services.c.service_id.in_(service_ids)
                )
            )
        }
        missing = [sid for sid in service_ids if sid not in prices]
        if missing:
            raise NotFoundException("Service", missing[0])
        await conn.execute(
            insert(appointment_services),
            [
                {
                    "appointment_id": appointment_id,
                    "service_id": service_id,
                    "quantity": 1,
                    "unit_price": prices[service_id],
                }
                for service_id in service_ids
            ],
        )

    async def load(self, appointment_id: int) -> Appointment:
        """
        Load appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        rows = await self._select(appointments.c.appointment_id == appointment_id)
        if not rows:
            raise NotFoundException("Appointment", appointment_id)
        return rows[0]

    async def list_by_doctor(
        self, doctor_id: int, time_range: TimeInterval | None = None
    ) -> list[Appointment]:
        """Appointments of a doctor, any status, overlapping the optional range."""
        return await self._select(appointments.c.doctor_id == doctor_id, time_range)

    async def list_by_room(
        self, room_id: int, time_range: TimeInterval | None = None
    ) -> list[Appointment]:
        """Appointments in a room, any status, overlapping the optional range."""
        return await self._select(appointments.c.room_id == room_id, time_range)

    async def list_active(self) -> list[Appointment]:
        """Every appointment that still occupies its slot."""
        return await self._select(appointments.c.status != AppointmentStatus.CANCELLED.value)

    async def _select(
        self, condition: Any, time_range: TimeInterval | None = None
    ) -> list[Appointment]:
        conditions = [condition]
        if time_range is not None:
            conditions.append(appointments.c.scheduled_start < time_range.end)
            conditions.append(appointments.c.scheduled_end > time_range.start)

        stmt = (
            select(appointments)
            .where(and_(*conditions))
            .order_by(appointments.c.scheduled_start, appointments.c.appointment_id)
        )

        async with self.engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
            ids = [row["appointment_id"] for row in rows]
            service_map: dict[int, list[int]] = {appointment_id: [] for appointment_id in ids}
            if ids:
                service_rows = await conn.execute(
                    select(appointment_services.c.appointment_id, appointment_services.c.service_id)
                    .where(appointment_services.c.appointment_id.in_(ids))
                    .order_by(appointment_services.c.service_id)
                )
                for service_row in service_rows:
                    service_map[service_row.appointment_id].append(service_row.service_id)

        return [self._to_appointment(row, service_map[row["appointment_id"]]) for row in rows]

    @staticmethod
    def _to_appointment(row: Mapping[str, Any], service_ids: list[int]) -> Appointment:
        return Appointment(
            id=row["appointment_id"],
            patient_id=row["patient_id"],
            doctor_id=row["doctor_id"],
            room_id=row["room_id"],
            scheduled_start=row["scheduled_start"],
            scheduled_end=row["scheduled_end"],
            status=AppointmentStatus(row["status"]),
            reason=row["reason"],
            created_by_user=row["created_by_user"],
            service_ids=service_ids,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            cancelled_at=row["cancelled_at"],
        )
