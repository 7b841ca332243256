"""Appointment and interval schemas."""

from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AppointmentStatus(str, Enum):
    """Appointment status enumeration, values as stored in the appointments table."""

    SCHEDULED = "Scheduled"
    CONFIRMED = "Confirmed"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    NO_SHOW = "No-Show"


class TimeInterval(BaseModel):
    """
    Half-open time range [start, end).

    Construction does not reject end <= start; the scheduling core does, so the
    caller gets an InvalidIntervalException naming the bounds.
    """

    start: datetime
    end: datetime

    model_config = {"frozen": True}

    @field_validator("start", "end")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Store all bounds as timezone-aware datetimes."""
        return ensure_aware(v)

    @property
    def is_valid(self) -> bool:
        """True when end is strictly after start."""
        return self.end > self.start

    @property
    def duration(self) -> timedelta:
        """Length of the interval."""
        return self.end - self.start

    def overlaps(self, other: "TimeInterval") -> bool:
        """Half-open overlap: back-to-back intervals do not overlap."""
        return self.start < other.end and other.start < self.end

    def contains(self, other: "TimeInterval") -> bool:
        """True when other lies entirely inside this interval."""
        return self.start <= other.start and other.end <= self.end


class Appointment(BaseModel):
    """Appointment record owned by the scheduling core."""

    id: int | None = None
    patient_id: int
    doctor_id: int
    room_id: int | None = None
    scheduled_start: datetime
    scheduled_end: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    reason: str | None = Field(None, max_length=255)
    created_by_user: str | None = Field(None, max_length=100)
    service_ids: list[int] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}

    @field_validator("scheduled_start", "scheduled_end", "created_at")
    @classmethod
    def normalize_timezone(cls, v: datetime) -> datetime:
        """Store all timestamps as timezone-aware datetimes."""
        return ensure_aware(v)

    @field_validator("updated_at", "cancelled_at")
    @classmethod
    def normalize_optional_timezone(cls, v: datetime | None) -> datetime | None:
        """Store optional timestamps as timezone-aware datetimes."""
        return ensure_aware(v) if v is not None else None

    @property
    def interval(self) -> TimeInterval:
        """The booked half-open interval."""
        return TimeInterval(start=self.scheduled_start, end=self.scheduled_end)

    @property
    def blocks_slot(self) -> bool:
        """Whether the appointment still occupies its doctor and room."""
        return self.status != AppointmentStatus.CANCELLED
