"""Persistence layer: store contract, in-memory and SQLite backends."""
from .store import (
    Store,
    MemoryStore,
    StoreError,
    StorageReadFailure,
    StorageWriteFailure,
    UnknownCollectionError,
)
from .sqlite_store import SQLiteStore

__all__ = [
    "Store",
    "MemoryStore",
    "SQLiteStore",
    "StoreError",
    "StorageReadFailure",
    "StorageWriteFailure",
    "UnknownCollectionError",
]
