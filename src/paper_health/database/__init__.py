"""Database adapters for the health subsystem."""

from .connection import SQLAlchemyQueryClient

__all__ = ["SQLAlchemyQueryClient"]
