"""Database models."""

from clinic_scheduling.models.appointments import appointment_services, appointments
from clinic_scheduling.models.doctors import doctor_specialties, doctors, specialties
from clinic_scheduling.models.metadata import metadata
from clinic_scheduling.models.patients import patients
from clinic_scheduling.models.rooms import rooms, services

__all__ = [
    "appointment_services",
    "appointments",
    "doctor_specialties",
    "doctors",
    "metadata",
    "patients",
    "rooms",
    "services",
    "specialties",
]
