"""Scheduling exceptions."""

from datetime import datetime
from typing import Any


class SchedulingException(Exception):
    """Base scheduling exception."""

    def __init__(self, message: str):
        """Initialize exception with message."""
        self.message = message
        super().__init__(self.message)


class NotFoundException(SchedulingException):
    """Referenced entity or appointment does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        """Initialize with the missing entity kind and id."""
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InactiveDoctorException(SchedulingException):
    """Doctor exists but is not accepting appointments."""

    def __init__(self, doctor_id: int):
        """Initialize with the inactive doctor id."""
        self.doctor_id = doctor_id
        super().__init__(f"Doctor {doctor_id} is not active")


class RoomUnavailableException(SchedulingException):
    """Room exists but is flagged unavailable."""

    def __init__(self, room_id: int):
        """Initialize with the unavailable room id."""
        self.room_id = room_id
        super().__init__(f"Room {room_id} is not available")


class InvalidIntervalException(SchedulingException):
    """Interval end is not strictly after its start."""

    def __init__(self, start: datetime, end: datetime):
        """Initialize with the rejected bounds."""
        self.start = start
        self.end = end
        super().__init__(
            f"Invalid interval [{start.isoformat()}, {end.isoformat()}): end must be after start"
        )


class SlotConflictException(SchedulingException):
    """Slot is taken, or its lock could not be acquired in time."""

    OVERLAP = "overlap"
    LOCK_TIMEOUT = "lock_timeout"

    def __init__(
        self,
        resource_key: str,
        conflicting_ids: list[int] | None = None,
        reason: str = OVERLAP,
    ):
        """Initialize with the contended resource and colliding appointments."""
        self.resource_key = resource_key
        self.conflicting_ids = list(conflicting_ids or [])
        self.reason = reason
        if reason == self.LOCK_TIMEOUT:
            message = f"Timed out waiting for {resource_key}; slot is being booked concurrently"
        else:
            ids = ", ".join(str(i) for i in self.conflicting_ids)
            message = f"Slot conflict on {resource_key} with appointment(s) {ids}"
        super().__init__(message)


class InvalidTransitionException(SchedulingException):
    """Requested status change is not allowed from the current status."""

    def __init__(self, appointment_id: int | None, current: str, target: str, detail: str = ""):
        """Initialize with the appointment and both statuses."""
        self.appointment_id = appointment_id
        self.current = current
        self.target = target
        message = f"Appointment {appointment_id} cannot move from {current} to {target}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
