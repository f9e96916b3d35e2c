"""
Abstract base class for durable storage backends.

This module defines the key-value interface every backend must implement.
Keys are always addressed as ``namespace + key``; listing enumerates the
full keys under a namespace prefix.
"""

from abc import ABC, abstractmethod
from typing import Any

from errors import StorageIOFailure

# Storage-level name used by callers that catch storage problems generically
StorageError = StorageIOFailure


class StorageBackend(ABC):
    """
    Abstract base class for durable key-value storage.

    Every call crosses the host storage boundary: it may be slow or fail,
    and callers must not treat it as an in-memory cache.
    """

    @abstractmethod
    def put(self, namespace: str, key: str, value: bytes) -> None:
        """
        Store ``value`` under ``namespace + key``, replacing any previous value.

        Raises:
            StorageIOFailure: If writing fails
        """
        pass

    @abstractmethod
    def get(self, namespace: str, key: str) -> bytes | None:
        """
        Read the value stored under ``namespace + key``.

        Returns:
            Stored bytes, or None if the key does not exist

        Raises:
            StorageIOFailure: If reading fails
        """
        pass

    @abstractmethod
    def delete(self, namespace: str, key: str) -> None:
        """
        Remove ``namespace + key`` immediately. Deleting a missing key is a no-op.

        Raises:
            StorageIOFailure: If deletion fails
        """
        pass

    @abstractmethod
    def list_keys(self, namespace_prefix: str) -> list[str]:
        """
        List every full key that starts with ``namespace_prefix``, sorted.

        Raises:
            StorageIOFailure: If listing fails
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the storage backend is available and ready."""
        pass

    def get_info(self) -> dict[str, Any]:
        """
        Get information about the storage backend.

        Returns:
            Dictionary with backend type and status
        """
        return {
            "backend_type": self.__class__.__name__,
            "available": self.is_available(),
        }

    @staticmethod
    def full_key(namespace: str, key: str) -> str:
        return f"{namespace}{key}"

    def close(self) -> None:
        """Release resources. Default implementation does nothing."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
