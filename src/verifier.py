"""
zkTLS Snapshot - Attestation Verifier

Checks an attestation independently of who produced it. Checks run in order
and stop at the first failure:

1. Session domain equals the expected domain
2. Certificate chain is non-empty and the leaf is valid now
3. Optional predicate holds on the response descriptor
4. Proof checks against the verification key:
   - protocol and curve tags match the key
   - public input count equals the key's nPublic
   - every proof coordinate is a BN254 base field element and the proof is
     not the all-zero placeholder
   - public inputs bind to this attestation's session and response
   - the pluggable pairing check accepts the proof

The verifier never mutates the attestation and makes no network calls beyond
the first verification key load.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from attestation import Attestation, ProofObject, ResponseDescriptor, body_digest, transcript_commitment
from config import is_production
from errors import (
    CertificateExpired,
    DomainMismatch,
    PredicateFailed,
    ProofInvalid,
    VerificationError,
)
from vkey_loader import VerificationKey, VerificationKeyLoader

logger = logging.getLogger(__name__)

# BN254 (alt_bn128) base field modulus
BN254_FIELD_MODULUS = 21888242871839275222246405745257275088696311157297823662689037894645226208583

Predicate = Callable[[ResponseDescriptor], bool]
ProofChecker = Callable[[VerificationKey, list[str], ProofObject], bool]

_ERRORS_BY_CODE: dict[str, type[VerificationError]] = {
    cls.reason: cls for cls in (DomainMismatch, CertificateExpired, PredicateFailed, ProofInvalid)
}


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    reason: str | None = None
    code: str | None = None

    @classmethod
    def ok(cls) -> "VerificationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error_type: type[VerificationError], reason: str) -> "VerificationResult":
        return cls(valid=False, reason=reason, code=error_type.reason)


def raise_for_result(result: VerificationResult) -> None:
    """Raise the matching VerificationError subclass for a failed result."""
    if result.valid:
        return
    error_type = _ERRORS_BY_CODE.get(result.code or "", VerificationError)
    raise error_type(result.reason or "Attestation verification failed")


# =============================================================================
# Predicates
# =============================================================================

def _lookup(data: Any, path: str) -> Any:
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def field_at_least(path: str, minimum: int | float) -> Predicate:
    """Predicate: the numeric JSON field at dotted ``path`` is >= ``minimum``."""
    def check(response: ResponseDescriptor) -> bool:
        try:
            value = _lookup(response.json(), path)
            return value is not None and not isinstance(value, bool) and float(value) >= minimum
        except (TypeError, ValueError):
            return False
    return check


def field_equals(path: str, expected: Any) -> Predicate:
    def check(response: ResponseDescriptor) -> bool:
        try:
            return _lookup(response.json(), path) == expected
        except ValueError:
            return False
    return check


def status_ok() -> Predicate:
    return lambda response: 200 <= response.status < 300


# =============================================================================
# Verifier
# =============================================================================

def _is_field_element(value: str) -> bool:
    try:
        number = int(str(value), 0) if str(value).startswith("0x") else int(str(value))
    except ValueError:
        return False
    return 0 <= number < BN254_FIELD_MODULUS


class AttestationVerifier:
    """
    Args:
        vkey_loader: Source of the verification key
        production: Overrides the ZKTLS_ENV check. Production requires a proof_checker.
        proof_checker: Pairing check ``(vkey, public_inputs, proof) -> bool``
        clock: Returns the current epoch time in seconds
    """

    def __init__(
        self,
        vkey_loader: VerificationKeyLoader,
        production: bool | None = None,
        proof_checker: ProofChecker | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.vkey_loader = vkey_loader
        self.production = is_production() if production is None else production
        self.proof_checker = proof_checker
        self._clock = clock

    def verify(
        self,
        attestation: Attestation,
        expected_domain: str,
        predicate: Predicate | None = None,
        check_proof: bool = True,
    ) -> VerificationResult:
        """
        Verify ``attestation`` against ``expected_domain``.

        ``check_proof=False`` stops after the predicate; it is used only for
        results already tagged unattested, whose proof is known to be a placeholder.

        Raises:
            VerificationKeyError: If the verification key cannot be loaded
        """
        domain = attestation.session.domain.lower()
        if domain != expected_domain.lower():
            return VerificationResult.fail(
                DomainMismatch, f"Domain mismatch: expected {expected_domain}, got {domain}"
            )

        leaf = attestation.session.leaf_certificate
        if leaf is None:
            return VerificationResult.fail(CertificateExpired, "Empty certificate chain")
        if not leaf.is_valid_at(self._clock()):
            return VerificationResult.fail(CertificateExpired, f"Certificate for {leaf.subject} is not currently valid")

        if predicate is not None and not predicate(attestation.response):
            return VerificationResult.fail(PredicateFailed, "Predicate verification failed")

        if not check_proof:
            return VerificationResult.ok()
        return self.verify_proof(attestation)

    def verify_proof(self, attestation: Attestation) -> VerificationResult:
        vkey = self.vkey_loader.load()
        proof = attestation.proof

        if proof.protocol != vkey.protocol or proof.curve != vkey.curve:
            return VerificationResult.fail(
                ProofInvalid,
                f"Proof tags {proof.protocol}/{proof.curve} do not match key {vkey.protocol}/{vkey.curve}",
            )
        if len(attestation.public_inputs) != vkey.n_public:
            return VerificationResult.fail(
                ProofInvalid,
                f"Expected {vkey.n_public} public inputs, got {len(attestation.public_inputs)}",
            )
        if len(proof.pi_a) < 2 or len(proof.pi_c) < 2 or len(proof.pi_b) < 2:
            return VerificationResult.fail(ProofInvalid, "Proof points are incomplete")
        if not all(_is_field_element(c) for c in proof.coordinates()):
            return VerificationResult.fail(ProofInvalid, "Proof coordinate outside the BN254 field")
        if proof.is_placeholder():
            return VerificationResult.fail(ProofInvalid, "Placeholder proof")

        binding = self._check_binding(attestation)
        if binding is not None:
            return binding

        if self.proof_checker is None:
            if self.production:
                return VerificationResult.fail(ProofInvalid, "No pairing backend configured")
            logger.debug("No pairing backend configured; structural proof checks only")
            return VerificationResult.ok()

        if not self.proof_checker(vkey, list(attestation.public_inputs), proof):
            return VerificationResult.fail(ProofInvalid, "SNARK proof verification failed")
        return VerificationResult.ok()

    @staticmethod
    def _check_binding(attestation: Attestation) -> VerificationResult | None:
        session = attestation.session
        response = attestation.response

        if response.body and body_digest(response.body) != response.body_hash:
            return VerificationResult.fail(ProofInvalid, "Response body does not match its digest")

        expected_commitment = transcript_commitment(
            session.domain, session.handshake_hash, response.body_hash, session.timestamp
        )
        if attestation.commitment != expected_commitment:
            return VerificationResult.fail(ProofInvalid, "Transcript commitment does not match session")

        if list(attestation.public_inputs) != attestation.expected_public_inputs():
            return VerificationResult.fail(ProofInvalid, "Public inputs are not bound to this attestation")
        return None
