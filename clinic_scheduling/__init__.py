"""Conflict-free doctor and room appointment scheduling for the clinic booking system."""

__version__ = "0.1.0"
