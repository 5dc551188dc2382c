"""
Local store.

The local store is the device's source of truth. ``LocalStore`` defines the
contract; ``SQLiteLocalStore`` implements it on an embedded SQLite database.
"""

from .base import LocalStore
from .sqlite import SQLiteLocalStore, SQLiteStoreConfig

__all__ = [
    "LocalStore",
    "SQLiteLocalStore",
    "SQLiteStoreConfig",
]
