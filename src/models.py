"""
zkTLS Snapshot - Core Data Types

SnapshotSecret is the device-only record (attributes + randomness) that is
persisted exclusively as ciphertext. PublicRecord is the only artifact that
crosses the trust boundary; it never carries attributes or randomness.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

SNAPSHOT_VERSION = 1


class SnapshotType(Enum):
    """Category of provider a snapshot was captured from."""
    SOCIAL = "social"
    KYC = "kyc"
    EMPLOYMENT = "employment"
    FREELANCE = "freelance"
    VIDEO = "video"
    STREAMING = "streaming"
    EDUCATION = "education"


class SnapshotStatus(Enum):
    """Lifecycle status of a published snapshot."""
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class VerificationMethod(Enum):
    """How the attributes behind a record were obtained."""
    NOTARIZED_TLS = "notarized_tls"
    UNATTESTED = "unattested"


def new_snapshot_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class SnapshotSecret:
    """Local secret snapshot. Exists decrypted only transiently in memory."""

    snapshot_id: str
    owner: str
    provider_id: str
    attrs: dict[str, Any]
    randomness: int
    created_at: int
    expires_at: int
    version: int = SNAPSHOT_VERSION

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary (randomness as a decimal string)."""
        return {
            "snapshot_id": self.snapshot_id,
            "owner": self.owner,
            "provider_id": self.provider_id,
            "attrs": dict(self.attrs),
            "randomness": str(self.randomness),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SnapshotSecret":
        return cls(
            snapshot_id=data["snapshot_id"],
            owner=data["owner"],
            provider_id=data["provider_id"],
            attrs=dict(data["attrs"]),
            randomness=int(data["randomness"]),
            created_at=int(data["created_at"]),
            expires_at=int(data["expires_at"]),
            version=int(data.get("version", SNAPSHOT_VERSION)),
        )

    def __repr__(self) -> str:
        # attrs and randomness stay out of reprs and therefore out of logs
        return (
            f"SnapshotSecret(snapshot_id={self.snapshot_id!r}, owner={self.owner!r}, "
            f"provider_id={self.provider_id!r}, version={self.version})"
        )


@dataclass
class PublicRecord:
    """
    Public metadata for a snapshot.

    ``attestation_proof_hash`` is None when no cryptographic attestation backs
    the record; the field is then omitted from the published payload.
    """

    snapshot_id: str
    owner: str
    provider_id: str
    snapshot_type: SnapshotType
    commitment: str
    scheme: str
    version: int
    snapshot_at: int
    expires_at: int
    status: SnapshotStatus = SnapshotStatus.ACTIVE
    verification_method: VerificationMethod = VerificationMethod.NOTARIZED_TLS
    attestation_proof_hash: str | None = None
    summary: dict[str, Any] | None = None

    # Local bookkeeping, never published
    published: bool = False
    remote_id: str | None = None
    revoked_at: int | None = None
    revocation_reason: str | None = None

    @property
    def is_attested(self) -> bool:
        return self.attestation_proof_hash is not None

    def to_payload(self) -> dict[str, Any]:
        """Build the body sent to the remote metadata service."""
        payload = {
            "snapshotId": self.snapshot_id,
            "userAddress": self.owner,
            "provider": self.provider_id,
            "snapshotType": self.snapshot_type.value,
            "commitment": self.commitment,
            "commitmentScheme": self.scheme,
            "snapshotVersion": self.version,
            "snapshotAt": self.snapshot_at,
            "expiresAt": self.expires_at,
            "status": self.status.value,
            "verificationMethod": self.verification_method.value,
        }
        if self.attestation_proof_hash is not None:
            payload["initialProofHash"] = self.attestation_proof_hash
        if self.summary:
            payload["summary"] = dict(self.summary)
        return payload

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for local persistence."""
        return {
            "snapshot_id": self.snapshot_id,
            "owner": self.owner,
            "provider_id": self.provider_id,
            "snapshot_type": self.snapshot_type.value,
            "commitment": self.commitment,
            "scheme": self.scheme,
            "version": self.version,
            "snapshot_at": self.snapshot_at,
            "expires_at": self.expires_at,
            "status": self.status.value,
            "verification_method": self.verification_method.value,
            "attestation_proof_hash": self.attestation_proof_hash,
            "summary": self.summary,
            "published": self.published,
            "remote_id": self.remote_id,
            "revoked_at": self.revoked_at,
            "revocation_reason": self.revocation_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PublicRecord":
        return cls(
            snapshot_id=data["snapshot_id"],
            owner=data["owner"],
            provider_id=data["provider_id"],
            snapshot_type=SnapshotType(data["snapshot_type"]),
            commitment=data["commitment"],
            scheme=data["scheme"],
            version=int(data["version"]),
            snapshot_at=int(data["snapshot_at"]),
            expires_at=int(data["expires_at"]),
            status=SnapshotStatus(data.get("status", "active")),
            verification_method=VerificationMethod(
                data.get("verification_method", VerificationMethod.NOTARIZED_TLS.value)
            ),
            attestation_proof_hash=data.get("attestation_proof_hash"),
            summary=data.get("summary"),
            published=bool(data.get("published", False)),
            remote_id=data.get("remote_id"),
            revoked_at=data.get("revoked_at"),
            revocation_reason=data.get("revocation_reason"),
        )
