"""
In-memory storage backend.

This backend keeps values in a process-local dict, useful for:
- Unit testing
- Development
- Ephemeral sessions where nothing should survive the process
"""

import threading
from typing import Any

from storage.base import StorageBackend


class MemoryStorage(StorageBackend):
    """
    In-memory storage backend.

    All data is lost when the process exits. Thread-safe operations.
    """

    def __init__(self):
        """Initialize empty memory storage."""
        self._data: dict[str, bytes] = {}
        self._lock = threading.RLock()

    def put(self, namespace: str, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("Storage values must be bytes")
        with self._lock:
            self._data[self.full_key(namespace, key)] = bytes(value)

    def get(self, namespace: str, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(self.full_key(namespace, key))

    def delete(self, namespace: str, key: str) -> None:
        with self._lock:
            self._data.pop(self.full_key(namespace, key), None)

    def list_keys(self, namespace_prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(namespace_prefix))

    def is_available(self) -> bool:
        """Memory storage is always available."""
        return True

    def get_info(self) -> dict[str, Any]:
        info = super().get_info()
        with self._lock:
            info["key_count"] = len(self._data)
        return info

    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._data.clear()
