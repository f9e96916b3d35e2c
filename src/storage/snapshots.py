"""
Encrypted snapshot store.

Layers snapshot semantics over a StorageBackend:

- ``zktls_snapshot_<id>``  AES-GCM ciphertext of a SnapshotSecret
- ``zktls_record_<id>``    local copy of the PublicRecord (public data, plain JSON)
- ``zktls_tombstone_<id>`` marker left behind when a snapshot is revoked or expires

Every backend call is retried a bounded number of times on StorageIOFailure.
"""

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from encryption import decrypt_record, encrypt_record
from models import PublicRecord, SnapshotSecret, SnapshotStatus
from retry import RetryConfig, retry_call
from storage.base import StorageBackend

logger = logging.getLogger(__name__)

SNAPSHOT_NAMESPACE = "zktls_snapshot_"
RECORD_NAMESPACE = "zktls_record_"
TOMBSTONE_NAMESPACE = "zktls_tombstone_"

DEFAULT_STORAGE_RETRY = RetryConfig(max_retries=2, base_delay=0.2, max_delay=2.0, jitter=0.1)


class SnapshotStore:
    """
    Snapshot persistence keyed by snapshot id.

    Args:
        backend: Durable key-value backend
        retry_config: Retry policy for backend calls
        clock: Returns the current epoch time in seconds
    """

    def __init__(
        self,
        backend: StorageBackend,
        retry_config: RetryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend
        self.retry_config = retry_config or DEFAULT_STORAGE_RETRY
        self._clock = clock

    def _call(self, func: Callable, *args) -> Any:
        return retry_call(func, args=args, config=self.retry_config)

    # Ciphertext ---------------------------------------------------------

    def store_snapshot(self, secret: SnapshotSecret, key: bytes) -> None:
        """Encrypt ``secret`` with ``key`` and persist it."""
        ciphertext = encrypt_record(secret.to_dict(), key, associated_data=secret.snapshot_id)
        self._call(self.backend.put, SNAPSHOT_NAMESPACE, secret.snapshot_id,
                   ciphertext.encode("ascii"))

    def retrieve_snapshot(self, snapshot_id: str, key: bytes) -> SnapshotSecret | None:
        """
        Load and decrypt a snapshot.

        Returns:
            The secret, or None if no ciphertext exists for ``snapshot_id``

        Raises:
            DecryptionError: If the key is wrong or the ciphertext was tampered with
        """
        raw = self._call(self.backend.get, SNAPSHOT_NAMESPACE, snapshot_id)
        if raw is None:
            return None
        data = decrypt_record(raw.decode("ascii"), key, associated_data=snapshot_id)
        return SnapshotSecret.from_dict(data)

    def list_snapshot_ids(self) -> list[str]:
        """Enumerate every stored snapshot id, independent of provider."""
        keys = self._call(self.backend.list_keys, SNAPSHOT_NAMESPACE)
        return [k[len(SNAPSHOT_NAMESPACE):] for k in keys]

    def delete_snapshot(self, snapshot_id: str) -> None:
        """Delete the ciphertext immediately. Irreversible."""
        self._call(self.backend.delete, SNAPSHOT_NAMESPACE, snapshot_id)

    # Public records -----------------------------------------------------

    def save_record(self, record: PublicRecord) -> None:
        body = json.dumps(record.to_dict(), sort_keys=True).encode("utf-8")
        self._call(self.backend.put, RECORD_NAMESPACE, record.snapshot_id, body)

    def get_record(self, snapshot_id: str) -> PublicRecord | None:
        raw = self._call(self.backend.get, RECORD_NAMESPACE, snapshot_id)
        if raw is None:
            return None
        return PublicRecord.from_dict(json.loads(raw.decode("utf-8")))

    def delete_record(self, snapshot_id: str) -> None:
        self._call(self.backend.delete, RECORD_NAMESPACE, snapshot_id)

    def list_records(self, owner: str | None = None) -> list[PublicRecord]:
        records = []
        for full_key in self._call(self.backend.list_keys, RECORD_NAMESPACE):
            record = self.get_record(full_key[len(RECORD_NAMESPACE):])
            if record is not None and (owner is None or record.owner.lower() == owner.lower()):
                records.append(record)
        return records

    def pending_publish(self) -> list[PublicRecord]:
        """Records persisted locally that the metadata service has not acknowledged."""
        return [
            r for r in self.list_records()
            if not r.published and r.status == SnapshotStatus.ACTIVE
        ]

    # Lifecycle ----------------------------------------------------------

    def persist(self, secret: SnapshotSecret, key: bytes, record: PublicRecord) -> None:
        """
        Write the (ciphertext, record) pair for one snapshot.

        If the record write fails the ciphertext is rolled back so no half
        snapshot is left behind.
        """
        self.store_snapshot(secret, key)
        try:
            self.save_record(record)
        except Exception:
            logger.error(f"Record write failed for {secret.snapshot_id}; rolling back ciphertext")
            self.delete_snapshot(secret.snapshot_id)
            raise

    def tombstone(self, snapshot_id: str, status: SnapshotStatus, reason: str | None = None) -> None:
        """
        Destroy a snapshot's secret and mark its record revoked or expired.

        The ciphertext is deleted first; the public record is kept with its new
        status so the commitment history stays auditable.
        """
        now = int(self._clock())
        self.delete_snapshot(snapshot_id)

        record = self.get_record(snapshot_id)
        if record is not None:
            record.status = status
            if status == SnapshotStatus.REVOKED:
                record.revoked_at = now
                record.revocation_reason = reason
            self.save_record(record)

        marker = {"snapshot_id": snapshot_id, "status": status.value, "reason": reason, "at": now}
        self._call(self.backend.put, TOMBSTONE_NAMESPACE, snapshot_id,
                   json.dumps(marker, sort_keys=True).encode("utf-8"))
        logger.info(f"Snapshot {snapshot_id} tombstoned ({status.value})")

    def is_tombstoned(self, snapshot_id: str) -> bool:
        return self._call(self.backend.get, TOMBSTONE_NAMESPACE, snapshot_id) is not None

    def purge_expired(self) -> list[str]:
        """Tombstone every active snapshot whose validity window has ended."""
        now = int(self._clock())
        expired = [
            r.snapshot_id for r in self.list_records()
            if r.status == SnapshotStatus.ACTIVE and r.expires_at <= now
        ]
        for snapshot_id in expired:
            self.tombstone(snapshot_id, SnapshotStatus.EXPIRED)
        return expired
