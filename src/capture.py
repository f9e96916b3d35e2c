"""
zkTLS Snapshot - Attestation Capture Service

Drives a notarized TLS session against a provider API endpoint and returns the
resulting Attestation. Backends are interchangeable behind CaptureBackend:

- NotaryBackend: production. The notary co-participates in the TLS session
  and returns the notarized transcript with its proof.
- SimulatedBackend: no network. Fabricates a structurally complete
  attestation whose proof is the all-zero placeholder, which the verifier
  always rejects. Results from it are never tagged attested.

Only the construction site chooses a backend; callers go through
AttestationCaptureService and branch on ``CaptureResult.attested``.
"""

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

import requests

from attestation import (
    Attestation,
    CertificateInfo,
    ProofObject,
    ResponseDescriptor,
    SessionDescriptor,
    body_digest,
    build_public_inputs,
)
from config import NotaryConfig, default_notary_config, is_production
from errors import CaptureRejected, CaptureUnavailable
from monitoring import metrics
from providers.base import ProviderRegistry
from retry import CircuitOpenError, RetryConfig, retry_call

logger = logging.getLogger(__name__)

NOTARIZE_PATH = "/v1/notarize"
NOTARY_CIRCUIT = "notary"
CONNECT_TIMEOUT = 10

SIMULATED_CERT_LIFETIME = 90 * 24 * 60 * 60
SIMULATED_CIPHER_SUITE = "TLS_AES_256_GCM_SHA384"

# Status codes that mean "try again later" rather than "this request is bad"
RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


class CaptureBackend(ABC):
    """Performs one TLS capture and returns its Attestation."""

    name = "abstract"
    produces_attestations = True

    @abstractmethod
    def capture(
        self,
        domain: str,
        url: str,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: str | None = None,
    ) -> Attestation:
        """
        Raises:
            CaptureUnavailable: Backend or network unreachable (retryable)
            CaptureRejected: Backend answered but produced no usable attestation
        """
        pass


class NotaryBackend(CaptureBackend):
    """
    Capture through a notary server.

    Args:
        notary_url: Base URL of the notary
        timeout: Read timeout for the notarization round-trip, in seconds
        session: Optional requests session (injected in tests)
    """

    name = "notary"
    produces_attestations = True

    def __init__(self, notary_url: str, timeout: float = 30.0,
                 session: requests.Session | None = None):
        self.notary_url = notary_url.rstrip("/")
        self.timeout = timeout
        self.session = session or self._build_session()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "zktls-snapshot/1",
        })
        return session

    def capture(self, domain, url, method="GET", headers=None, body=None) -> Attestation:
        request_body = {
            "url": url,
            "method": method,
            "headers": dict(headers or {}),
            "body": body,
        }
        endpoint = f"{self.notary_url}{NOTARIZE_PATH}"

        try:
            response = self.session.post(
                endpoint, json=request_body, timeout=(CONNECT_TIMEOUT, self.timeout)
            )
        except requests.exceptions.Timeout as e:
            raise CaptureUnavailable("Notary request timed out", backend=self.name, cause=e) from e
        except requests.exceptions.ConnectionError as e:
            raise CaptureUnavailable(
                f"Notary unreachable: {self.notary_url}", backend=self.name, cause=e
            ) from e
        except requests.exceptions.RequestException as e:
            raise CaptureRejected(f"Notary request failed: {e}", backend=self.name, cause=e) from e

        if response.status_code in RETRYABLE_STATUS_CODES:
            raise CaptureUnavailable(
                f"Notary returned HTTP {response.status_code}",
                backend=self.name,
                details={"status_code": response.status_code},
            )
        if not response.ok:
            raise CaptureRejected(
                f"Notary rejected the session: HTTP {response.status_code}",
                backend=self.name,
                details={"status_code": response.status_code},
            )

        try:
            transcript = response.json()
            return Attestation.from_dict(transcript)
        except (ValueError, KeyError, TypeError) as e:
            raise CaptureRejected("Malformed notary transcript", backend=self.name, cause=e) from e


class SimulatedBackend(CaptureBackend):
    """
    Deterministic offline backend.

    Args:
        fixtures: Response bodies keyed by full URL (str or JSON-serializable)
        clock: Returns the current epoch time in seconds
    """

    name = "simulated"
    produces_attestations = False

    def __init__(self, fixtures: Mapping[str, Any] | None = None,
                 clock: Callable[[], float] = time.time):
        self.fixtures = dict(fixtures or {})
        self._clock = clock

    def _body_for(self, url: str) -> str:
        fixture = self.fixtures.get(url, {})
        if isinstance(fixture, str):
            return fixture
        return json.dumps(fixture, sort_keys=True)

    def capture(self, domain, url, method="GET", headers=None, body=None) -> Attestation:
        logger.warning(f"Using simulated capture for {url} (not attested)")
        timestamp = int(self._clock())
        response_body = self._body_for(url)

        leaf = CertificateInfo(
            subject=f"CN={domain}",
            issuer="CN=Simulated CA",
            valid_from=timestamp,
            valid_to=timestamp + SIMULATED_CERT_LIFETIME,
            subject_alt_names=(domain,),
            public_key_hash="0x" + hashlib.sha256(f"simulated-cert:{domain}".encode()).hexdigest(),
        )
        session = SessionDescriptor(
            domain=domain,
            cipher_suite=SIMULATED_CIPHER_SUITE,
            handshake_hash="0x" + hashlib.sha256(f"simulated:{domain}:{timestamp}".encode()).hexdigest(),
            timestamp=timestamp,
            session_id="simulated",
            certificate_chain=(leaf,),
        )
        response = ResponseDescriptor(
            status=200,
            headers={"content-type": "application/json"},
            body=response_body,
            body_hash=body_digest(response_body),
        )
        commitment, public_inputs = build_public_inputs(session, response)
        return Attestation(
            session=session,
            response=response,
            proof=ProofObject.placeholder(),
            public_inputs=public_inputs,
            commitment=commitment,
        )


@dataclass(frozen=True)
class CaptureResult:
    """
    Outcome of a capture.

    ``attested`` is False whenever the attestation came from a backend that
    cannot produce real proofs; such a result must never be recorded as
    cryptographically verified.
    """

    attestation: Attestation
    attested: bool
    backend: str
    domain: str
    fallback_reason: str | None = None


class AttestationCaptureService:
    """
    Resolve a provider to its API domain and capture through the configured backend.

    Args:
        registry: Provider capability registry
        backend: Primary capture backend
        config: Notary settings (retry count and delay are taken from here)
        fallback: Backend used after retries are exhausted, non-production only
        production: Overrides the ZKTLS_ENV check
        sleep: Sleep function between retries (replaceable in tests)
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        backend: CaptureBackend,
        config: NotaryConfig | None = None,
        fallback: CaptureBackend | None = None,
        production: bool | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.backend = backend
        self.config = config or default_notary_config()
        self.production = is_production() if production is None else production
        self.fallback = fallback if fallback is not None else SimulatedBackend()
        self._sleep = sleep

    @classmethod
    def from_config(cls, registry: ProviderRegistry, config: NotaryConfig, **kwargs) -> "AttestationCaptureService":
        return cls(registry, NotaryBackend(config.url, timeout=config.timeout), config=config, **kwargs)

    def _retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.config.max_retries,
            base_delay=self.config.retry_delay,
            max_delay=max(self.config.retry_delay * 8, self.config.retry_delay),
        )

    def resolve_domain(self, provider_id: str) -> str:
        capability = self.registry.get(provider_id)
        if capability is None:
            raise CaptureRejected(f"Unknown provider: {provider_id}", backend=self.backend.name)
        return capability.api_domain

    def capture(
        self,
        provider_id: str,
        endpoint: str,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: str | None = None,
    ) -> CaptureResult:
        """
        Capture ``endpoint`` on the provider's API domain.

        Raises:
            CaptureUnavailable: Retries exhausted in a production configuration
            CaptureRejected: Unknown provider or unusable transcript
        """
        domain = self.resolve_domain(provider_id)
        url = f"https://{domain}{endpoint}"
        logger.info(f"Capturing {url} via {self.backend.name}")

        def _on_retry(attempt: int, error: Exception, delay: float) -> None:
            metrics.increment("capture_retries_total", labels={"provider": provider_id})

        metrics.increment("capture_attempts_total", labels={"backend": self.backend.name})
        try:
            with metrics.timer("capture_duration_ms", labels={"backend": self.backend.name}):
                attestation = retry_call(
                    self.backend.capture,
                    args=(domain, url, method, headers, body),
                    config=self._retry_config(),
                    circuit_breaker_name=NOTARY_CIRCUIT,
                    on_retry=_on_retry,
                    sleep=self._sleep,
                )
        except (CaptureUnavailable, CircuitOpenError) as e:
            return self._degrade(provider_id, domain, url, method, headers, body, e)

        attested = self.backend.produces_attestations
        if not attested:
            metrics.increment("capture_unattested_total", labels={"provider": provider_id})
        return CaptureResult(
            attestation=attestation,
            attested=attested,
            backend=self.backend.name,
            domain=domain,
        )

    def _degrade(self, provider_id, domain, url, method, headers, body, error: Exception) -> CaptureResult:
        if self.production:
            logger.error(f"Capture backend unavailable for {provider_id}: {error}")
            if isinstance(error, CaptureUnavailable):
                raise error
            raise CaptureUnavailable(str(error), backend=self.backend.name, cause=error) from error

        logger.warning(
            f"Capture backend unavailable for {provider_id}, "
            f"falling back to {self.fallback.name}: {error}"
        )
        metrics.increment("capture_fallback_total", labels={"provider": provider_id})
        attestation = self.fallback.capture(domain, url, method, headers, body)
        return CaptureResult(
            attestation=attestation,
            attested=False,
            backend=self.fallback.name,
            domain=domain,
            fallback_reason=getattr(error, "reason", "capture_unavailable"),
        )
