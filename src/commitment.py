"""
zkTLS Snapshot - Commitment Engine

C = H(serialize(attrs) || randomness || scheme_tag)

The commitment is the only value derived from a user's attributes that ever
leaves the device. It is binding under the chosen hash and hiding as long as
the 256-bit randomness stays secret.

Serialization is canonical: keys are sorted, integers are base-10, booleans
are ``true``/``false`` and enum strings are written verbatim, so two equal
attribute sets always hash identically regardless of construction order.
"""

import hashlib
import hmac
import secrets
from collections.abc import Mapping
from enum import Enum

from errors import RandomnessUnavailable

RANDOMNESS_BITS = 256


class CommitmentScheme(Enum):
    """Hash schemes a commitment can be bound to. The tag is part of the preimage."""
    SHA256_V1 = "sha256-v1"
    SHA3_256_V1 = "sha3-256-v1"


DEFAULT_SCHEME = CommitmentScheme.SHA256_V1

_HASHERS = {
    CommitmentScheme.SHA256_V1: hashlib.sha256,
    CommitmentScheme.SHA3_256_V1: hashlib.sha3_256,
}

AttributeValue = int | bool | str
AttributeSet = Mapping[str, AttributeValue]


def _resolve_scheme(scheme: CommitmentScheme | str) -> CommitmentScheme:
    if isinstance(scheme, CommitmentScheme):
        return scheme
    try:
        return CommitmentScheme(scheme)
    except ValueError:
        raise ValueError(f"Unknown commitment scheme: {scheme}") from None


def _format_value(key: str, value: AttributeValue) -> str:
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        if "|" in value or ":" in value:
            raise ValueError(f"Attribute {key!r} contains a reserved separator")
        return value
    raise ValueError(
        f"Attribute {key!r} has unsupported type {type(value).__name__}; "
        "normalize to int, bool or enum string first"
    )


def serialize_attributes(attrs: AttributeSet) -> str:
    """
    Serialize an attribute set deterministically.

    Args:
        attrs: Normalized attribute mapping

    Returns:
        ``key:value`` pairs sorted by key and joined with ``|``

    Raises:
        ValueError: If a key or value cannot be encoded canonically
    """
    parts = []
    for key in sorted(attrs):
        if not isinstance(key, str) or not key or "|" in key or ":" in key:
            raise ValueError(f"Invalid attribute key: {key!r}")
        parts.append(f"{key}:{_format_value(key, attrs[key])}")
    return "|".join(parts)


def generate_randomness() -> int:
    """
    Sample fresh 256-bit commitment randomness from the OS CSPRNG.

    Raises:
        RandomnessUnavailable: If the CSPRNG cannot be read. Never retried.
    """
    try:
        return secrets.randbits(RANDOMNESS_BITS)
    except (OSError, NotImplementedError) as e:
        raise RandomnessUnavailable("Secure random source unavailable", cause=e) from e


def commit(
    attrs: AttributeSet,
    randomness: int,
    scheme: CommitmentScheme | str = DEFAULT_SCHEME,
) -> str:
    """
    Compute the commitment to an attribute set.

    Args:
        attrs: Normalized attribute mapping
        randomness: Secret 256-bit blinding value
        scheme: Hash scheme tag (bound into the preimage)

    Returns:
        Lower-case hex digest
    """
    scheme = _resolve_scheme(scheme)
    if not isinstance(randomness, int) or isinstance(randomness, bool):
        raise ValueError("Randomness must be an integer")
    if randomness < 0 or randomness.bit_length() > RANDOMNESS_BITS:
        raise ValueError(f"Randomness must fit in {RANDOMNESS_BITS} bits")

    preimage = f"{serialize_attributes(attrs)}:{randomness}:{scheme.value}"
    return _HASHERS[scheme](preimage.encode("utf-8")).hexdigest()


def verify(
    digest: str,
    attrs: AttributeSet,
    randomness: int,
    scheme: CommitmentScheme | str = DEFAULT_SCHEME,
) -> bool:
    """Check that ``digest`` opens to ``(attrs, randomness)`` under ``scheme``."""
    try:
        computed = commit(attrs, randomness, scheme)
    except ValueError:
        return False
    return hmac.compare_digest(computed, digest.lower())
