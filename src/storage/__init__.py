"""
Storage abstraction layer for zkTLS snapshots.

This package provides a pluggable durable key-value backend plus the
encrypted snapshot store built on top of it:

- JSON file (default, durable)
- Memory (for testing)

Usage:
    from storage import get_storage_backend, SnapshotStore

    store = SnapshotStore(get_storage_backend())
    store.store_snapshot(secret, key)
    secret = store.retrieve_snapshot(snapshot_id, key)
"""

import os

from storage.base import StorageBackend, StorageError
from storage.json_file import JSONFileStorage
from storage.memory import MemoryStorage
from storage.snapshots import SnapshotStore

__all__ = [
    "JSONFileStorage",
    "MemoryStorage",
    "SnapshotStore",
    "StorageBackend",
    "StorageError",
    "get_storage_backend",
]


def get_storage_backend() -> StorageBackend:
    """
    Get the configured storage backend based on environment variables.

    Environment variables:
        ZKTLS_STORAGE_BACKEND: Backend type ("json", "memory")
        ZKTLS_STORAGE_FILE: Path for JSON file storage (default: zktls_store.json)

    Returns:
        Configured StorageBackend instance
    """
    backend_type = os.getenv("ZKTLS_STORAGE_BACKEND", "json").lower()

    if backend_type == "json":
        return JSONFileStorage(os.getenv("ZKTLS_STORAGE_FILE", "zktls_store.json"))
    elif backend_type == "memory":
        return MemoryStorage()
    else:
        raise StorageError(f"Unknown storage backend: {backend_type}", operation="configure")
