"""
zkTLS Snapshot - Exception Hierarchy

Every failure raised by the snapshot pipeline derives from SnapshotError and
carries a structured ErrorContext so it can be logged without leaking the
attribute values or randomness it was processing.

Taxonomy:
- CaptureUnavailable: notary/backend down (retried, then escalated or degraded)
- CaptureRejected: backend answered but the transcript is unusable (not retried)
- VerificationError and subclasses: attestation checks (never retried)
- VerificationKeyError: verification key missing, malformed or placeholder in production
- KeyDerivationFailed / DecryptionError / RandomnessUnavailable: cryptographic, fatal
- StorageIOFailure: durable store read/write (bounded retry, then fatal)
- PublishFailure: remote metadata service (non-fatal to the local run)
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from retry import NonRetryableError, RetryableError


class ErrorSeverity(Enum):
    """Severity levels for snapshot pipeline errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Structured context for error tracking."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
            "severity": self.severity.value,
        }


class SnapshotError(Exception):
    """
    Base exception for all snapshot pipeline errors.

    Includes structured context for logging and a stable ``reason`` code the
    orchestrator uses when it converts the error into an aborted outcome.
    """

    reason = "internal_error"

    def __init__(
        self,
        message: str,
        component: str = "unknown",
        action: str = "unknown",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = ErrorContext(
            component=component,
            action=action,
            severity=severity,
            details=details or {},
        )
        self.cause = cause
        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result = {
            "error_type": type(self).__name__,
            "reason": self.reason,
            "message": self.message,
            **self.context.to_dict(),
        }
        if self.cause:
            result["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return result

    def __str__(self) -> str:
        base = f"[{self.context.component}:{self.context.action}] {self.message}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


# =============================================================================
# Capture Errors
# =============================================================================

class CaptureUnavailable(SnapshotError, RetryableError):
    """The notary or capture backend could not be reached."""

    reason = "capture_unavailable"

    def __init__(self, message: str, backend: str = "unknown",
                 details: dict[str, Any] | None = None, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="capture",
            action=backend,
            severity=ErrorSeverity.HIGH,
            details=details,
            cause=cause,
        )
        self.backend = backend


class CaptureRejected(SnapshotError, NonRetryableError):
    """The backend responded, but with something that is not a usable attestation."""

    reason = "capture_rejected"

    def __init__(self, message: str, backend: str = "unknown",
                 details: dict[str, Any] | None = None, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="capture",
            action=backend,
            severity=ErrorSeverity.HIGH,
            details=details,
            cause=cause,
        )
        self.backend = backend


# =============================================================================
# Verification Errors
# =============================================================================

class VerificationError(SnapshotError, NonRetryableError):
    """Base class for attestation verification failures. Always fatal to a run."""

    reason = "verification_failed"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            component="verifier",
            action=self.reason,
            severity=ErrorSeverity.HIGH,
            details=details,
        )


class DomainMismatch(VerificationError):
    reason = "domain_mismatch"


class CertificateExpired(VerificationError):
    reason = "certificate_expired"


class PredicateFailed(VerificationError):
    reason = "predicate_failed"


class ProofInvalid(VerificationError):
    reason = "proof_invalid"


class VerificationKeyError(SnapshotError, NonRetryableError):
    """Verification key could not be loaded, or a placeholder key reached production."""

    reason = "verification_key_unavailable"

    def __init__(self, message: str, source: str = "unknown", cause: Exception | None = None):
        super().__init__(
            message=message,
            component="vkey_loader",
            action=source,
            severity=ErrorSeverity.CRITICAL,
            cause=cause,
        )


class PlaceholderVerificationKey(VerificationKeyError):
    """A development placeholder key was loaded in a production configuration."""

    reason = "placeholder_verification_key"


# =============================================================================
# Cryptographic Errors
# =============================================================================

class KeyDerivationFailed(SnapshotError, NonRetryableError):
    """Raised when the snapshot encryption key cannot be derived. No fallback key exists."""

    reason = "key_derivation_failed"

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="encryption",
            action="derive_key",
            severity=ErrorSeverity.CRITICAL,
            cause=cause,
        )


class DecryptionError(SnapshotError, NonRetryableError):
    """Raised when a ciphertext fails authentication or cannot be parsed."""

    reason = "decryption_failed"

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="encryption",
            action="decrypt",
            severity=ErrorSeverity.HIGH,
            cause=cause,
        )


class RandomnessUnavailable(SnapshotError, NonRetryableError):
    """The operating system CSPRNG could not supply commitment randomness."""

    reason = "randomness_unavailable"

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="commitment",
            action="generate_randomness",
            severity=ErrorSeverity.CRITICAL,
            cause=cause,
        )


# =============================================================================
# Storage / Publish Errors
# =============================================================================

class StorageIOFailure(SnapshotError, RetryableError):
    """A durable store read, write, list or delete failed."""

    reason = "storage_failure"

    def __init__(self, message: str, operation: str = "unknown",
                 key: str | None = None, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="storage",
            action=operation,
            severity=ErrorSeverity.HIGH,
            details={"key": key} if key else None,
            cause=cause,
        )
        self.operation = operation


class PublishFailure(SnapshotError):
    """The remote metadata service rejected or did not answer a request."""

    reason = "publish_failed"

    def __init__(self, message: str, status_code: int | None = None,
                 details: dict[str, Any] | None = None, cause: Exception | None = None):
        super().__init__(
            message=message,
            component="metadata_client",
            action="request",
            severity=ErrorSeverity.MEDIUM,
            details=details,
            cause=cause,
        )
        self.status_code = status_code


# =============================================================================
# Configuration / Internal Errors
# =============================================================================

class ConfigurationError(SnapshotError):
    reason = "invalid_configuration"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            component="config",
            action="validate",
            severity=ErrorSeverity.MEDIUM,
            details=details,
        )


class InvalidTransition(SnapshotError):
    """An orchestration run attempted a state transition the state machine forbids."""

    reason = "invalid_transition"

    def __init__(self, from_state: str, to_state: str):
        super().__init__(
            message=f"Invalid transition {from_state} -> {to_state}",
            component="orchestrator",
            action="transition",
            severity=ErrorSeverity.CRITICAL,
            details={"from": from_state, "to": to_state},
        )
