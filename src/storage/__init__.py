"""Storage layer for the PostgreSQL connection pool."""

from src.storage.database import Database

__all__ = ["Database"]
