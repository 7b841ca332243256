"""Doctor, specialty and doctor_specialties tables using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    func,
    true,
)

from clinic_scheduling.models.metadata import metadata

specialties = Table(
    "specialties",
    metadata,
    Column("specialty_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text),
)

doctors = Table(
    "doctors",
    metadata,
    Column("doctor_id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(80), nullable=False),
    Column("last_name", String(80), nullable=False),
    Column("email", String(150), unique=True),
    Column("phone", String(30), unique=True),
    Column("license_number", String(50), unique=True),
    Column("hire_date", Date),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)

# Many-to-many doctors <-> specialties
doctor_specialties = Table(
    "doctor_specialties",
    metadata,
    Column(
        "doctor_id",
        Integer,
        ForeignKey("doctors.doctor_id", ondelete="CASCADE", onupdate="CASCADE"),
        primary_key=True,
    ),
    Column(
        "specialty_id",
        Integer,
        ForeignKey("specialties.specialty_id", ondelete="CASCADE", onupdate="CASCADE"),
        primary_key=True,
    ),
)
