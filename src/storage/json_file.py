"""
JSON file storage backend.

This is the default durable backend. The whole key space lives in one JSON
object mapping full keys to base64-encoded values, rewritten atomically on
every mutation.
"""

import base64
import binascii
import json
import os
import threading
from typing import Any

from storage.base import StorageBackend, StorageError


class JSONFileStorage(StorageBackend):
    """
    JSON file storage backend.

    Thread-safe operations using a process lock; writes go to a temp file and
    are renamed into place so a crash never leaves a half-written store.
    """

    def __init__(self, file_path: str = "zktls_store.json"):
        """
        Initialize JSON file storage.

        Args:
            file_path: Path to the JSON file
        """
        self.file_path = file_path
        self._lock = threading.Lock()

    def _load(self, operation: str) -> dict[str, str]:
        try:
            if not os.path.exists(self.file_path):
                return {}
            with open(self.file_path, encoding="utf-8") as f:
                raw = f.read()
            if not raw.strip():
                return {}
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise StorageError("Store file is not a JSON object", operation=operation)
            return data
        except StorageError:
            raise
        except PermissionError as e:
            raise StorageError(f"Permission denied: {self.file_path}", operation=operation, cause=e) from e
        except json.JSONDecodeError as e:
            raise StorageError(f"Invalid JSON format: {e}", operation=operation, cause=e) from e
        except OSError as e:
            raise StorageError(f"OS error: {e}", operation=operation, cause=e) from e

    def _save(self, data: dict[str, str], operation: str) -> None:
        try:
            directory = os.path.dirname(self.file_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            temp_path = f"{self.file_path}.tmp"
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(temp_path, self.file_path)
        except PermissionError as e:
            raise StorageError(f"Permission denied: {self.file_path}", operation=operation, cause=e) from e
        except OSError as e:
            raise StorageError(f"OS error: {e}", operation=operation, cause=e) from e

    def put(self, namespace: str, key: str, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeError("Storage values must be bytes")
        full_key = self.full_key(namespace, key)
        with self._lock:
            data = self._load("put")
            data[full_key] = base64.b64encode(bytes(value)).decode("ascii")
            self._save(data, "put")

    def get(self, namespace: str, key: str) -> bytes | None:
        full_key = self.full_key(namespace, key)
        with self._lock:
            encoded = self._load("get").get(full_key)
        if encoded is None:
            return None
        try:
            return base64.b64decode(encoded, validate=True)
        except binascii.Error as e:
            raise StorageError(f"Corrupt value for {full_key}", operation="get", key=full_key, cause=e) from e

    def delete(self, namespace: str, key: str) -> None:
        full_key = self.full_key(namespace, key)
        with self._lock:
            data = self._load("delete")
            if full_key in data:
                del data[full_key]
                self._save(data, "delete")

    def list_keys(self, namespace_prefix: str) -> list[str]:
        with self._lock:
            return sorted(k for k in self._load("list_keys") if k.startswith(namespace_prefix))

    def is_available(self) -> bool:
        """
        Check if file storage is available.

        Returns:
            True if the directory holding the file is writable
        """
        directory = os.path.dirname(self.file_path) or "."
        return os.path.isdir(directory) and os.access(directory, os.W_OK)

    def get_info(self) -> dict[str, Any]:
        """Get storage backend information."""
        info = super().get_info()
        info.update({
            "file_path": self.file_path,
            "file_exists": os.path.exists(self.file_path),
        })
        if os.path.exists(self.file_path):
            try:
                stat = os.stat(self.file_path)
                info["file_size_bytes"] = stat.st_size
                info["last_modified"] = stat.st_mtime
            except OSError:
                pass
        return info
