"""
Persistence package for the Readings Service.

Readings are stored as JSONB documents in PostgreSQL. Records are immutable
once inserted; the store assigns their identifiers.
"""

from .postgres import PostgresReadingStore

__all__ = ["PostgresReadingStore"]
