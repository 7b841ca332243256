"""Appointments and appointment_services tables using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    func,
    text,
)

from clinic_scheduling.models.metadata import metadata

appointments = Table(
    "appointments",
    metadata,
    Column("appointment_id", Integer, primary_key=True, autoincrement=True),
    # References
    Column(
        "patient_id",
        Integer,
        ForeignKey("patients.patient_id", ondelete="RESTRICT", onupdate="CASCADE"),
        nullable=False,
    ),
    Column(
        "doctor_id",
        Integer,
        ForeignKey("doctors.doctor_id", ondelete="RESTRICT", onupdate="CASCADE"),
        nullable=False,
    ),
    Column(
        "room_id",
        Integer,
        ForeignKey("rooms.room_id", ondelete="SET NULL", onupdate="CASCADE"),
        nullable=True,
    ),
    # Half-open interval [scheduled_start, scheduled_end)
    Column("scheduled_start", DateTime(timezone=True), nullable=False),
    Column("scheduled_end", DateTime(timezone=True), nullable=False),
    Column("status", String(20), nullable=False, server_default="Scheduled"),
    Column("reason", String(255)),
    # Staff username who created the booking
    Column("created_by_user", String(100)),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("scheduled_end > scheduled_start", name="chk_appointment_times"),
    CheckConstraint(
        "status IN ('Scheduled', 'Confirmed', 'Completed', 'Cancelled', 'No-Show')",
        name="chk_appointment_status",
    ),
)

Index("idx_appointments_patient", appointments.c.patient_id)
Index("idx_appointments_doctor", appointments.c.doctor_id)
Index("idx_appointments_status", appointments.c.status)
Index("idx_appointments_start", appointments.c.scheduled_start)

# Many-to-many: an appointment may include multiple services
appointment_services = Table(
    "appointment_services",
    metadata,
    Column(
        "appointment_id",
        Integer,
        ForeignKey("appointments.appointment_id", ondelete="CASCADE", onupdate="CASCADE"),
        primary_key=True,
    ),
    Column(
        "service_id",
        Integer,
        ForeignKey("services.service_id", ondelete="RESTRICT", onupdate="CASCADE"),
        primary_key=True,
    ),
    Column("quantity", Integer, nullable=False, server_default=text("1")),
    Column("unit_price", Numeric(10, 2), nullable=False),
)
