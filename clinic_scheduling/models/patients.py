"""Patients table using SQLAlchemy Core."""

from sqlalchemy import Column, Date, DateTime, Integer, String, Table, func

from clinic_scheduling.models.metadata import metadata

patients = Table(
    "patients",
    metadata,
    Column("patient_id", Integer, primary_key=True, autoincrement=True),
    Column("first_name", String(80), nullable=False),
    Column("last_name", String(80), nullable=False),
    Column("date_of_birth", Date),
    Column("gender", String(10), server_default="Other"),
    Column("email", String(150), unique=True),
    Column("phone", String(30), unique=True),
    Column("address", String(255)),
    # Optional national health insurance id
    Column("nhis_number", String(100), unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
