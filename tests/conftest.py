"""
Pytest configuration and shared fixtures for zkTLS snapshot tests.

This module provides shared fixtures and test configuration including:
- Development environment with in-memory storage
- Circuit breaker and metrics reset between tests
- Snapshot stores with fast retry policies
- Factories for notarized attestations and notary fakes
"""

import hashlib
import json
import os
import sys
import time

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["ZKTLS_ENV"] = "test"
os.environ["ZKTLS_STORAGE_BACKEND"] = "memory"
os.environ.pop("ZKTLS_NOTARY_URL", None)
os.environ.pop("ZKTLS_VKEY_URL", None)

from attestation import (  # noqa: E402
    Attestation,
    CertificateInfo,
    ProofObject,
    ResponseDescriptor,
    SessionDescriptor,
    body_digest,
    build_public_inputs,
)
from capture import CaptureBackend  # noqa: E402
from encryption import MIN_PBKDF2_ITERATIONS  # noqa: E402
from monitoring import metrics  # noqa: E402
from retry import RetryConfig, reset_circuit_breakers  # noqa: E402
from storage.memory import MemoryStorage  # noqa: E402
from storage.snapshots import SnapshotStore  # noqa: E402
from vkey_loader import VerificationKey  # noqa: E402

OWNER = "0xABC"
SIGNATURE = "0x" + "ab" * 65
FAST_KDF_ITERATIONS = MIN_PBKDF2_ITERATIONS
NO_WAIT_RETRY = RetryConfig(max_retries=1, base_delay=0.0, jitter=0.0, log_retries=False)

# A proof whose coordinates are non-zero BN254 field elements
SAMPLE_PROOF = ProofObject(
    pi_a=("1", "2"),
    pi_b=(("3", "4"), ("5", "6")),
    pi_c=("7", "8"),
)

# A structurally valid, non-placeholder Groth16 key for five public inputs
VALID_VKEY = {
    "protocol": "groth16",
    "curve": "bn128",
    "nPublic": 5,
    "vk_alpha_1": ["11", "12", "1"],
    "vk_beta_2": [["13", "14"], ["15", "16"], ["1", "0"]],
    "vk_gamma_2": [["17", "18"], ["19", "20"], ["1", "0"]],
    "vk_delta_2": [["21", "22"], ["23", "24"], ["1", "0"]],
    "vk_alphabeta_12": [[["25", "26"], ["27", "28"], ["29", "30"]], [["31", "32"], ["33", "34"], ["35", "36"]]],
    "IC": [[str(i), str(i + 1), "1"] for i in range(1, 7)],
}


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset circuit breakers and metrics before each test."""
    reset_circuit_breakers()
    metrics.reset()
    yield
    reset_circuit_breakers()


@pytest.fixture
def memory_backend():
    return MemoryStorage()


@pytest.fixture
def snapshot_store(memory_backend):
    """Snapshot store over memory storage with a single immediate retry."""
    return SnapshotStore(memory_backend, retry_config=NO_WAIT_RETRY)


def make_attestation(
    domain: str = "api.github.com",
    body: dict | str | None = None,
    timestamp: int | None = None,
    proof: ProofObject = SAMPLE_PROOF,
    cert_valid_to: int | None = None,
) -> Attestation:
    """Build a self-consistent attestation for ``domain``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    if body is None:
        body = {"public_repos": 12, "followers": 340}
    text = body if isinstance(body, str) else json.dumps(body, sort_keys=True)

    leaf = CertificateInfo(
        subject=f"CN={domain}",
        issuer="CN=Test CA",
        valid_from=timestamp - 86400,
        valid_to=cert_valid_to if cert_valid_to is not None else timestamp + 86400 * 30,
        subject_alt_names=(domain,),
        public_key_hash="0x" + hashlib.sha256(f"key:{domain}".encode()).hexdigest(),
    )
    session = SessionDescriptor(
        domain=domain,
        cipher_suite="TLS_AES_128_GCM_SHA256",
        handshake_hash="0x" + hashlib.sha256(f"hs:{domain}:{timestamp}".encode()).hexdigest(),
        timestamp=timestamp,
        session_id="test-session",
        certificate_chain=(leaf,),
    )
    response = ResponseDescriptor(
        status=200,
        headers={"content-type": "application/json"},
        body=text,
        body_hash=body_digest(text),
    )
    commitment, public_inputs = build_public_inputs(session, response)
    return Attestation(
        session=session,
        response=response,
        proof=proof,
        public_inputs=public_inputs,
        commitment=commitment,
    )


@pytest.fixture
def attestation_factory():
    return make_attestation


class FakeNotaryBackend(CaptureBackend):
    """Notary stand-in returning attestations with a non-placeholder proof."""

    name = "notary"
    produces_attestations = True

    def __init__(self, bodies: dict | None = None, failures: list | None = None):
        self.bodies = bodies or {}
        self.failures = list(failures or [])
        self.calls = []

    def capture(self, domain, url, method="GET", headers=None, body=None):
        self.calls.append((domain, url, method, dict(headers or {})))
        if self.failures:
            raise self.failures.pop(0)
        return make_attestation(domain=domain, body=self.bodies.get(url, {}))


@pytest.fixture
def fake_notary():
    return FakeNotaryBackend()


class StaticKeyLoader:
    """Verification key loader returning a fixed key."""

    def __init__(self, data=None):
        self.key = VerificationKey.from_dict(data or VALID_VKEY, source="test")
        self.loads = 0

    def load(self):
        self.loads += 1
        return self.key
