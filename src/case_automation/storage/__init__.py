"""Persistence adapters."""

from .sqlite import SqliteEntityStore

__all__ = ["SqliteEntityStore"]
