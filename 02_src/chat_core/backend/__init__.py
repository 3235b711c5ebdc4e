"""Backend collaborator: contract and SQLite implementation."""

from .backend import IChatBackend, RemoteHandler, Unsubscribe
from .sqlite_backend import SqliteBackend

__all__ = ["IChatBackend", "RemoteHandler", "SqliteBackend", "Unsubscribe"]
