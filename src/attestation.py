"""
zkTLS Snapshot - Attestation Types

An Attestation is the structured record of one notarized TLS session:
session descriptor, certificate chain, response descriptor, Groth16 proof
object, public-input vector and transcript commitment.

Public input vector (order is fixed and checked by the verifier):
    [0] domain hash
    [1] leaf certificate public-key digest
    [2] transcript commitment
    [3] response body digest
    [4] session timestamp (epoch seconds, decimal)
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

PUBLIC_INPUT_COUNT = 5
PROOF_PROTOCOL = "groth16"
PROOF_CURVE = "bn128"

ZERO_DIGEST = "0x" + "0" * 64


def canonical_json(data: Any) -> str:
    """JSON with sorted keys and no whitespace, used for every hashed structure."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return "0x" + hashlib.sha256(data).hexdigest()


def hash_domain(domain: str) -> str:
    return sha256_hex(domain.lower())


def body_digest(body: str) -> str:
    return sha256_hex(body)


def transcript_commitment(domain: str, handshake_hash: str, body_hash: str, timestamp: int) -> str:
    """Commitment over the notarized transcript, bound into the proof's public inputs."""
    return sha256_hex(canonical_json({
        "domain": domain,
        "handshake_hash": handshake_hash,
        "body_hash": body_hash,
        "timestamp": timestamp,
    }))


@dataclass(frozen=True)
class CertificateInfo:
    subject: str
    issuer: str
    valid_from: int
    valid_to: int
    subject_alt_names: tuple[str, ...] = ()
    public_key_hash: str = ZERO_DIGEST

    def is_valid_at(self, now: float) -> bool:
        return self.valid_from <= now <= self.valid_to

    def to_dict(self) -> dict[str, Any]:
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "valid_from": self.valid_from,
            "valid_to": self.valid_to,
            "subject_alt_names": list(self.subject_alt_names),
            "public_key_hash": self.public_key_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CertificateInfo":
        return cls(
            subject=data["subject"],
            issuer=data["issuer"],
            valid_from=int(data["valid_from"]),
            valid_to=int(data["valid_to"]),
            subject_alt_names=tuple(data.get("subject_alt_names", ())),
            public_key_hash=data.get("public_key_hash", ZERO_DIGEST),
        )


@dataclass(frozen=True)
class SessionDescriptor:
    domain: str
    cipher_suite: str
    handshake_hash: str
    timestamp: int
    session_id: str = ""
    certificate_chain: tuple[CertificateInfo, ...] = ()

    @property
    def leaf_certificate(self) -> CertificateInfo | None:
        return self.certificate_chain[0] if self.certificate_chain else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain": self.domain,
            "cipher_suite": self.cipher_suite,
            "handshake_hash": self.handshake_hash,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "certificate_chain": [c.to_dict() for c in self.certificate_chain],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionDescriptor":
        return cls(
            domain=data["domain"],
            cipher_suite=data.get("cipher_suite", ""),
            handshake_hash=data["handshake_hash"],
            timestamp=int(data["timestamp"]),
            session_id=data.get("session_id", ""),
            certificate_chain=tuple(
                CertificateInfo.from_dict(c) for c in data.get("certificate_chain", [])
            ),
        )


@dataclass(frozen=True)
class ResponseDescriptor:
    """
    Attested HTTP response.

    ``body`` is the plaintext revealed to the local device by the notarized
    session. It feeds the attribute normalizer and never leaves the device;
    only ``body_hash`` is public.
    """

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    body_hash: str = ZERO_DIGEST

    def json(self) -> Any:
        return json.loads(self.body) if self.body else {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "headers": dict(self.headers),
            "body": self.body,
            "body_hash": self.body_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseDescriptor":
        body = data.get("body", "")
        return cls(
            status=int(data["status"]),
            headers=dict(data.get("headers", {})),
            body=body,
            body_hash=data.get("body_hash") or body_digest(body),
        )


@dataclass(frozen=True)
class ProofObject:
    """Groth16 proof points as decimal strings, snarkjs layout."""

    pi_a: tuple[str, ...]
    pi_b: tuple[tuple[str, ...], ...]
    pi_c: tuple[str, ...]
    protocol: str = PROOF_PROTOCOL
    curve: str = PROOF_CURVE

    def coordinates(self) -> list[str]:
        coords = list(self.pi_a) + list(self.pi_c)
        for row in self.pi_b:
            coords.extend(row)
        return coords

    def is_placeholder(self) -> bool:
        return all(str(c).strip() in ("0", "") for c in self.coordinates())

    def to_dict(self) -> dict[str, Any]:
        return {
            "pi_a": list(self.pi_a),
            "pi_b": [list(row) for row in self.pi_b],
            "pi_c": list(self.pi_c),
            "protocol": self.protocol,
            "curve": self.curve,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProofObject":
        return cls(
            pi_a=tuple(str(v) for v in data["pi_a"]),
            pi_b=tuple(tuple(str(v) for v in row) for row in data["pi_b"]),
            pi_c=tuple(str(v) for v in data["pi_c"]),
            protocol=data.get("protocol", PROOF_PROTOCOL),
            curve=data.get("curve", PROOF_CURVE),
        )

    @classmethod
    def placeholder(cls) -> "ProofObject":
        return cls(pi_a=("0", "0"), pi_b=(("0", "0"), ("0", "0")), pi_c=("0", "0"))


@dataclass(frozen=True)
class Attestation:
    session: SessionDescriptor
    response: ResponseDescriptor
    proof: ProofObject
    public_inputs: tuple[str, ...]
    commitment: str

    @property
    def domain(self) -> str:
        return self.session.domain

    def expected_public_inputs(self) -> list[str]:
        """Public inputs recomputed from the session and response descriptors."""
        leaf = self.session.leaf_certificate
        return [
            hash_domain(self.session.domain),
            leaf.public_key_hash if leaf else ZERO_DIGEST,
            self.commitment,
            self.response.body_hash,
            str(self.session.timestamp),
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "response": self.response.to_dict(),
            "proof": self.proof.to_dict(),
            "public_inputs": list(self.public_inputs),
            "commitment": self.commitment,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Attestation":
        return cls(
            session=SessionDescriptor.from_dict(data["session"]),
            response=ResponseDescriptor.from_dict(data["response"]),
            proof=ProofObject.from_dict(data["proof"]),
            public_inputs=tuple(str(v) for v in data["public_inputs"]),
            commitment=data["commitment"],
        )


def build_public_inputs(
    session: SessionDescriptor, response: ResponseDescriptor
) -> tuple[str, tuple[str, ...]]:
    """
    Derive the transcript commitment and public input vector for a session.

    Returns:
        Tuple of (commitment, public_inputs)
    """
    commitment = transcript_commitment(
        session.domain, session.handshake_hash, response.body_hash, session.timestamp
    )
    leaf = session.leaf_certificate
    inputs = (
        hash_domain(session.domain),
        leaf.public_key_hash if leaf else ZERO_DIGEST,
        commitment,
        response.body_hash,
        str(session.timestamp),
    )
    return commitment, inputs


def attestation_proof_hash(attestation: Attestation, provider_id: str, version: int) -> str:
    """
    Hash of the proof retained in the public record after the attestation is discarded.

    The provider id and snapshot version are appended to the public inputs so the
    same proof cannot be replayed under another provider or record version.
    """
    return sha256_hex(canonical_json({
        "proof": attestation.proof.to_dict(),
        "public_inputs": list(attestation.public_inputs) + [provider_id, str(version)],
    }))
