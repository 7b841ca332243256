"""Appointment status transitions."""

from clinic_scheduling.core.exceptions import InvalidTransitionException
from clinic_scheduling.schemas.appointments import AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
            AppointmentStatus.NO_SHOW,
        }
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

# Statuses from which the booked interval may still be moved
RESCHEDULABLE = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


def is_terminal(status: AppointmentStatus) -> bool:
    """Terminal statuses allow no further transition."""
    return not ALLOWED_TRANSITIONS[status]


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check whether current -> target is in the transition table."""
    return target in ALLOWED_TRANSITIONS[current]


def ensure_transition(
    appointment_id: int | None,
    current: AppointmentStatus,
    target: AppointmentStatus,
) -> None:
    """
    Raise unless current -> target is allowed.

    Raises:
        InvalidTransitionException: If the table forbids the transition
    """
    if not can_transition(current, target):
        detail = f"{current.value} is terminal" if is_terminal(current) else ""
        raise InvalidTransitionException(appointment_id, current.value, target.value, detail)
