"""Scheduling service: conflict-free booking of doctors and rooms."""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

import structlog

from clinic_scheduling.core.exceptions import (
    InactiveDoctorException,
    InvalidIntervalException,
    InvalidTransitionException,
    RoomUnavailableException,
    SlotConflictException,
)
from clinic_scheduling.scheduling.conflict_resolver import ConflictResolver
from clinic_scheduling.scheduling.interval_index import IntervalIndex, doctor_key, room_key
from clinic_scheduling.scheduling.locks import KeyLockManager
from clinic_scheduling.scheduling.state_machine import RESCHEDULABLE, ensure_transition
from clinic_scheduling.schemas.appointments import Appointment, AppointmentStatus, TimeInterval
from clinic_scheduling.services.appointment_repository import AppointmentRepository
from clinic_scheduling.services.entity_store import EntityStore

logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    """Current time in UTC."""
    return datetime.now(UTC)


def resource_keys(doctor_id: int, room_id: int | None) -> list[str]:
    """Lock and index keys an appointment occupies, doctor first."""
    keys = [doctor_key(doctor_id)]
    if room_id is not None:
        keys.append(room_key(room_id))
    return keys


class SchedulingService:
    """
    Owns appointment booking and the appointment state machine.

    Reference checks against the entity store run without locks. Everything
    that reads or changes the interval index runs through the conflict
    resolver while the doctor key (and room key, when a room is assigned) is
    held, so the overlap check and the index update form one atomic step per
    resource. Under the locks the held keys are first resynced from the
    repository, so appointments committed by other processes sharing the
    database count as conflicts.
    """

    def __init__(
        self,
        entity_store: EntityStore,
        repository: AppointmentRepository,
        index: IntervalIndex | None = None,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize service with its collaborators."""
        self.entity_store = entity_store
        self.repository = repository
        self.index = index or IntervalIndex()
        self.resolver = resolver or ConflictResolver(KeyLockManager())
        self._clock = clock

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(
        self,
        patient_id: int,
        doctor_id: int,
        interval: TimeInterval,
        room_id: int | None = None,
        reason: str | None = None,
        service_ids: Iterable[int] = (),
        created_by_user: str | None = None,
    ) -> Appointment:
        """
        Book a new appointment in Scheduled status.

        Args:
            patient_id: Patient the appointment is for
            doctor_id: Doctor to book
            interval: Half-open interval to occupy
            room_id: Optional room to occupy as well
            reason: Free-text reason for the visit
            service_ids: Services performed during the appointment
            created_by_user: Staff username making the booking

        Returns:
            The persisted appointment

        Raises:
            InvalidIntervalException: If interval end is not after its start
            NotFoundException: If the patient, doctor, room or a service is missing
            InactiveDoctorException: If the doctor is not active
            RoomUnavailableException: If the room is flagged unavailable
            SlotConflictException: If the doctor or room is taken, or stays contended
        """
        self._ensure_valid_interval(interval)
        service_ids = list(dict.fromkeys(service_ids))

        await self.entity_store.get_patient(patient_id)
        await self._ensure_bookable(doctor_id, room_id)
        for service_id in service_ids:
            await self.entity_store.get_service(service_id)

        keys = resource_keys(doctor_id, room_id)

        async def commit() -> Appointment:
            await self._sync_index(doctor_id, room_id, interval)
            self._ensure_free(keys, interval)
            now = self._clock()
            appointment = await self.repository.save(
                Appointment(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    room_id=room_id,
                    scheduled_start=interval.start,
                    scheduled_end=interval.end,
                    status=AppointmentStatus.SCHEDULED,
                    reason=reason,
                    created_by_user=created_by_user,
                    service_ids=service_ids,
                    created_at=now,
                    updated_at=now,
                )
            )
            for key in keys:
                self.index.insert(key, appointment.id, interval)
            return appointment

        appointment = await self.resolver.run(keys, commit)

        logger.info(
            "appointment_booked",
            appointment_id=appointment.id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            room_id=room_id,
            start=interval.start.isoformat(),
            end=interval.end.isoformat(),
        )
        return appointment

    async def reschedule(self, appointment_id: int, new_interval: TimeInterval) -> Appointment:
        """
        Move a Scheduled or Confirmed appointment to a new interval.

        The appointment's own current slot never conflicts with the new one.
        On any failure the stored appointment and its index entries are unchanged.

        Raises:
            InvalidIntervalException: If the new interval is empty or inverted
            NotFoundException: If the appointment does not exist
            InvalidTransitionException: If the appointment is in a terminal status
            SlotConflictException: If another appointment holds the new slot
        """
        self._ensure_valid_interval(new_interval)

        current = await self.repository.load(appointment_id)
        self._ensure_reschedulable(current)
        await self._ensure_bookable(current.doctor_id, current.room_id)
        keys = resource_keys(current.doctor_id, current.room_id)

        async def commit() -> tuple[Appointment, Appointment]:
            appointment = await self.repository.load(appointment_id)
            self._ensure_reschedulable(appointment)
            await self._sync_index(appointment.doctor_id, appointment.room_id, new_interval)
            self._ensure_free(keys, new_interval, exclude=appointment_id)
            saved = await self.repository.save(
                appointment.model_copy(
                    update={
                        "scheduled_start": new_interval.start,
                        "scheduled_end": new_interval.end,
                        "updated_at": self._clock(),
                    }
                )
            )
            for key in keys:
                self.index.insert(key, appointment_id, new_interval)
            return appointment, saved

        previous, appointment = await self.resolver.run(keys, commit)

        logger.info(
            "appointment_rescheduled",
            appointment_id=appointment_id,
            doctor_id=appointment.doctor_id,
            room_id=appointment.room_id,
            old_start=previous.scheduled_start.isoformat(),
            new_start=new_interval.start.isoformat(),
            new_end=new_interval.end.isoformat(),
        )
        return appointment

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def cancel(self, appointment_id: int) -> Appointment:
        """
        Cancel a Scheduled or Confirmed appointment and free its slot.

        The record is kept with status Cancelled.
        """
        return await self._transition(appointment_id, AppointmentStatus.CANCELLED)

    async def confirm(self, appointment_id: int) -> Appointment:
        """Confirm a Scheduled appointment."""
        return await self._transition(appointment_id, AppointmentStatus.CONFIRMED)

    async def complete(self, appointment_id: int) -> Appointment:
        """Mark a Confirmed appointment as Completed."""
        return await self._transition(appointment_id, AppointmentStatus.COMPLETED)

    async def mark_no_show(self, appointment_id: int) -> Appointment:
        """Mark a Scheduled or Confirmed appointment as No-Show once it has started."""
        return await self._transition(appointment_id, AppointmentStatus.NO_SHOW)

    async def _transition(self, appointment_id: int, target: AppointmentStatus) -> Appointment:
        current = await self.repository.load(appointment_id)
        keys = resource_keys(current.doctor_id, current.room_id)

        async def commit() -> tuple[AppointmentStatus, Appointment]:
            appointment = await self.repository.load(appointment_id)
            ensure_transition(appointment_id, appointment.status, target)

            now = self._clock()
            if target == AppointmentStatus.NO_SHOW and now < appointment.scheduled_start:
                raise InvalidTransitionException(
                    appointment_id,
                    appointment.status.value,
                    target.value,
                    f"appointment starts at {appointment.scheduled_start.isoformat()}",
                )

            changes: dict = {"status": target, "updated_at": now}
            if target == AppointmentStatus.CANCELLED:
                changes["cancelled_at"] = now

            saved = await self.repository.save(appointment.model_copy(update=changes))
            if target == AppointmentStatus.CANCELLED:
                for key in keys:
                    self.index.remove(key, appointment_id)
            return appointment.status, saved

        old_status, appointment = await self.resolver.run(keys, commit)

        logger.info(
            "appointment_status_changed",
            appointment_id=appointment_id,
            doctor_id=appointment.doctor_id,
            old_status=old_status.value,
            new_status=target.value,
        )
        return appointment

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: int) -> Appointment:
        """Get appointment by ID."""
        return await self.repository.load(appointment_id)

    async def list_doctor_appointments(
        self,
        doctor_id: int,
        time_range: TimeInterval | None = None,
    ) -> list[Appointment]:
        """All appointments of a doctor, any status, overlapping the optional range."""
        await self.entity_store.get_doctor(doctor_id)
        return await self.repository.list_by_doctor(doctor_id, time_range)

    async def find_free_slots(
        self,
        doctor_id: int,
        window: TimeInterval,
        duration: timedelta,
        room_id: int | None = None,
        step: timedelta | None = None,
    ) -> list[TimeInterval]:
        """
        Bookable slots of a fixed duration inside a window.

        Candidates start at window.start and advance by step (default: the
        duration). A candidate is free when neither the doctor nor, if given,
        the room has an overlapping appointment. The result is a snapshot; a
        later book() may still lose the slot to a concurrent caller.

        Args:
            doctor_id: Doctor whose calendar is searched
            window: Half-open range the slots must fit in
            duration: Length of each slot
            room_id: Optional room that must be free as well
            step: Distance between candidate starts

        Returns:
            Free slots ordered by start
        """
        self._ensure_valid_interval(window)
        step = step or duration
        if duration <= timedelta(0) or step <= timedelta(0):
            raise ValueError("duration and step must be positive")

        await self._ensure_bookable(doctor_id, room_id)
        await self._sync_index(doctor_id, room_id, window)
        keys = resource_keys(doctor_id, room_id)

        slots: list[TimeInterval] = []
        start = window.start
        while start + duration <= window.end:
            candidate = TimeInterval(start=start, end=start + duration)
            if not any(self.index.overlaps(key, candidate) for key in keys):
                slots.append(candidate)
            start += step
        return slots

    # ------------------------------------------------------------------
    # Index maintenance
    # ------------------------------------------------------------------

    async def rebuild_index(self) -> int:
        """
        Rebuild the interval index from every persisted non-cancelled appointment.

        Run at startup, before the service accepts bookings.

        Returns:
            Number of appointments indexed
        """
        self.index.clear()
        appointments = await self.repository.list_active()

        for appointment in appointments:
            for key in resource_keys(appointment.doctor_id, appointment.room_id):
                clashes = self.index.conflicts(key, appointment.interval, exclude=appointment.id)
                if clashes:
                    logger.warning(
                        "interval_index_overlap_on_rebuild",
                        resource_key=key,
                        appointment_id=appointment.id,
                        conflicting_ids=clashes,
                    )
                self.index.insert(key, appointment.id, appointment.interval)

        logger.info(
            "interval_index_rebuilt",
            appointments=len(appointments),
            entries=len(self.index),
        )
        return len(appointments)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_valid_interval(interval: TimeInterval) -> None:
        if not interval.is_valid:
            raise InvalidIntervalException(interval.start, interval.end)

    async def _ensure_bookable(self, doctor_id: int, room_id: int | None) -> None:
        doctor = await self.entity_store.get_doctor(doctor_id)
        if not doctor.is_active:
            raise InactiveDoctorException(doctor_id)
        if room_id is not None:
            room = await self.entity_store.get_room(room_id)
            if not room.is_available:
                raise RoomUnavailableException(room_id)

    def _ensure_free(
        self,
        keys: list[str],
        interval: TimeInterval,
        exclude: int | None = None,
    ) -> None:
        """Raise SlotConflictException naming the first resource already taken."""
        for key in keys:
            conflicting = self.index.conflicts(key, interval, exclude=exclude)
            if conflicting:
                logger.info(
                    "slot_conflict_detected",
                    resource_key=key,
                    conflicting_ids=conflicting,
                    reason=SlotConflictException.OVERLAP,
                )
                raise SlotConflictException(key, conflicting)

    @staticmethod
    def _ensure_reschedulable(appointment: Appointment) -> None:
        if appointment.status not in RESCHEDULABLE:
            raise InvalidTransitionException(
                appointment.id,
                appointment.status.value,
                appointment.status.value,
                "only Scheduled or Confirmed appointments can be rescheduled",
            )

    async def _sync_index(
        self,
        doctor_id: int,
        room_id: int | None,
        window: TimeInterval,
    ) -> None:
        """
        Reload the resources' index entries inside window from the repository.

        Other processes sharing the database commit appointments this process
        never indexed, and cancel or move ones it did. Run while the keys are
        held so the following overlap check sees every committed row.
        """
        listings = [
            (doctor_key(doctor_id), await self.repository.list_by_doctor(doctor_id, window))
        ]
        if room_id is not None:
            listings.append(
                (room_key(room_id), await self.repository.list_by_room(room_id, window))
            )

        for key, appointments in listings:
            stored = {a.id: a.interval for a in appointments if a.blocks_slot}
            stale = [
                entry.appointment_id
                for entry in self.index.entries(key, window)
                if entry.appointment_id not in stored
            ]
            added = [
                appointment_id
                for appointment_id, interval in stored.items()
                if self.index.get(key, appointment_id) != interval
            ]
            for appointment_id in stale:
                self.index.remove(key, appointment_id)
            for appointment_id in added:
                self.index.insert(key, appointment_id, stored[appointment_id])
            if stale or added:
                logger.info(
                    "interval_index_synced",
                    resource_key=key,
                    added_ids=added,
                    removed_ids=stale,
                )
