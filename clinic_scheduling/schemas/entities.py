"""Reference entity schemas read by the scheduling core."""

from decimal import Decimal

from pydantic import BaseModel, Field


class Specialty(BaseModel):
    """Doctor specialty, e.g. General Practice or Dentistry."""

    id: int
    name: str = Field(..., min_length=1, max_length=100)
    description: str | None = None

    model_config = {"from_attributes": True}


class Doctor(BaseModel):
    """Doctor record with the specialty ids of the doctor_specialties junction."""

    id: int
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field(..., min_length=1, max_length=80)
    email: str | None = Field(None, max_length=150)
    phone: str | None = Field(None, max_length=30)
    license_number: str | None = Field(None, max_length=50)
    is_active: bool = True
    specialty_ids: set[int] = Field(default_factory=set)

    model_config = {"from_attributes": True}

    @property
    def full_name(self) -> str:
        """Doctor display name."""
        return f"Dr. {self.first_name} {self.last_name}"


class Patient(BaseModel):
    """Patient record; referenced by appointments, never mutated by scheduling."""

    id: int
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field(..., min_length=1, max_length=80)
    email: str | None = Field(None, max_length=150)
    phone: str | None = Field(None, max_length=30)
    nhis_number: str | None = Field(None, max_length=100)

    model_config = {"from_attributes": True}


class Room(BaseModel):
    """Room where appointments take place."""

    id: int
    name: str = Field(..., min_length=1, max_length=50)
    location: str | None = Field(None, max_length=100)
    capacity: int = Field(default=1, ge=1)
    is_available: bool = True

    model_config = {"from_attributes": True}


class Service(BaseModel):
    """Treatment or service type offered by the clinic."""

    id: int
    code: str = Field(..., min_length=1, max_length=30)
    name: str = Field(..., min_length=1, max_length=120)
    duration_minutes: int = Field(default=30, gt=0)
    price: Decimal = Decimal("0.00")

    model_config = {"from_attributes": True}
