"""Rooms and services tables using SQLAlchemy Core."""

from sqlalchemy import Boolean, Column, Integer, Numeric, String, Table, Text, text, true

from clinic_scheduling.models.metadata import metadata

rooms = Table(
    "rooms",
    metadata,
    Column("room_id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("location", String(100)),
    Column("capacity", Integer, server_default=text("1")),
    Column("is_available", Boolean, nullable=False, server_default=true()),
)

# Treatments or service types offered
services = Table(
    "services",
    metadata,
    Column("service_id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(30), nullable=False, unique=True),
    Column("name", String(120), nullable=False),
    Column("description", Text),
    Column("duration_minutes", Integer, nullable=False, server_default=text("30")),
    Column("price", Numeric(10, 2), nullable=False, server_default=text("0.00")),
)
