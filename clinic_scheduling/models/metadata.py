"""Shared metadata for the clinic booking tables."""

from sqlalchemy import MetaData

# One metadata so foreign keys resolve across table modules
metadata = MetaData()
