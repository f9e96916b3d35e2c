"""
zkTLS Snapshot - Verification Key Loader

Loads the Groth16 verification key used to check attestation proofs:

1. Primary: HTTP GET of ZKTLS_VKEY_URL (or the default CDN location)
2. Fallback: the copy bundled in the ``vkeys`` package

The first key that loads and validates is cached for the life of the loader.
A key carrying placeholder values is accepted only outside production.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from importlib import resources
from typing import Any

import requests

from config import is_production
from errors import PlaceholderVerificationKey, VerificationKeyError

logger = logging.getLogger(__name__)

DEFAULT_VKEY_URL = "https://cdn.anylayer.com/vkeys/tlsnotary.vkey.json"
BUNDLED_PACKAGE = "vkeys"
BUNDLED_FILENAME = "tlsnotary.vkey.json"

REQUIRED_ARRAYS = ("vk_alpha_1", "vk_beta_2", "vk_gamma_2", "vk_delta_2", "vk_alphabeta_12", "IC")
PLACEHOLDER_VALUES = ("0", "placeholder")


@dataclass(frozen=True)
class VerificationKey:
    protocol: str
    curve: str
    n_public: int
    vk_alpha_1: tuple
    vk_beta_2: tuple
    vk_gamma_2: tuple
    vk_delta_2: tuple
    vk_alphabeta_12: tuple
    ic: tuple
    source: str = "unknown"

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_key(self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "curve": self.curve,
            "nPublic": self.n_public,
            "vk_alpha_1": _listify(self.vk_alpha_1),
            "vk_beta_2": _listify(self.vk_beta_2),
            "vk_gamma_2": _listify(self.vk_gamma_2),
            "vk_delta_2": _listify(self.vk_delta_2),
            "vk_alphabeta_12": _listify(self.vk_alphabeta_12),
            "IC": _listify(self.ic),
        }

    @classmethod
    def from_dict(cls, data: Any, source: str = "unknown") -> "VerificationKey":
        """
        Raises:
            VerificationKeyError: If the structure does not match the key schema
        """
        validate_verification_key(data, source)
        return cls(
            protocol=data["protocol"],
            curve=data["curve"],
            n_public=data["nPublic"],
            vk_alpha_1=_tuplify(data["vk_alpha_1"]),
            vk_beta_2=_tuplify(data["vk_beta_2"]),
            vk_gamma_2=_tuplify(data["vk_gamma_2"]),
            vk_delta_2=_tuplify(data["vk_delta_2"]),
            vk_alphabeta_12=_tuplify(data["vk_alphabeta_12"]),
            ic=_tuplify(data["IC"]),
            source=source,
        )


def _tuplify(value: Any) -> Any:
    if isinstance(value, list | tuple):
        return tuple(_tuplify(v) for v in value)
    return str(value)


def _listify(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_listify(v) for v in value]
    return value


def validate_verification_key(data: Any, source: str = "unknown") -> None:
    if not isinstance(data, dict):
        raise VerificationKeyError("Verification key is not an object", source=source)
    if data.get("protocol") != "groth16" or data.get("curve") != "bn128":
        raise VerificationKeyError(
            f"Unsupported key: protocol={data.get('protocol')} curve={data.get('curve')}",
            source=source,
        )
    n_public = data.get("nPublic")
    if not isinstance(n_public, int) or isinstance(n_public, bool) or n_public < 0:
        raise VerificationKeyError("nPublic must be a non-negative integer", source=source)
    for name in REQUIRED_ARRAYS:
        if not isinstance(data.get(name), list):
            raise VerificationKeyError(f"Missing or invalid array: {name}", source=source)
    if len(data["IC"]) != n_public + 1:
        raise VerificationKeyError(
            f"IC has {len(data['IC'])} rows, expected nPublic + 1 = {n_public + 1}",
            source=source,
        )


def is_placeholder_key(data: dict[str, Any]) -> bool:
    """
    Detect development placeholder keys.

    A key is a placeholder when more than half of its IC rows start with two
    zero coordinates, or when vk_alpha_1 carries a placeholder value.
    """
    ic = data.get("IC") or []
    zero_rows = [
        row for row in ic
        if isinstance(row, list | tuple) and len(row) >= 2
        and str(row[0]) == "0" and str(row[1]) == "0"
    ]
    if ic and len(zero_rows) > len(ic) / 2:
        return True
    return any(str(v) in PLACEHOLDER_VALUES for v in data.get("vk_alpha_1") or [])


class VerificationKeyLoader:
    """
    Primary/fallback key loading with a load-once cache.

    Args:
        url: Primary source (default: ZKTLS_VKEY_URL, then the CDN URL)
        bundled_path: Override for the bundled fallback file
        production: Overrides the ZKTLS_ENV check
        timeout: HTTP timeout in seconds for the primary source
        session: Optional requests session (injected in tests)
    """

    def __init__(
        self,
        url: str | None = None,
        bundled_path: str | None = None,
        production: bool | None = None,
        timeout: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.url = url or os.getenv("ZKTLS_VKEY_URL") or DEFAULT_VKEY_URL
        self.bundled_path = bundled_path
        self.production = is_production() if production is None else production
        self.timeout = timeout
        self.session = session or requests.Session()

        self._cached: VerificationKey | None = None
        self._lock = threading.Lock()

    @property
    def cached(self) -> VerificationKey | None:
        return self._cached

    def load(self) -> VerificationKey:
        """
        Return the cached key, loading it on first use.

        Raises:
            VerificationKeyError: If neither source yields a valid key, or a
                placeholder key is found in production
        """
        if self._cached is not None:
            return self._cached
        # One writer: concurrent first calls wait here and reuse the result
        with self._lock:
            if self._cached is None:
                self._cached = self._load_uncached()
            return self._cached

    def _load_uncached(self) -> VerificationKey:
        try:
            vkey = self._load_primary()
        except PlaceholderVerificationKey:
            raise
        except VerificationKeyError as primary_error:
            logger.warning(f"Primary verification key load failed, trying bundled copy: {primary_error}")
            try:
                vkey = self._load_bundled()
            except PlaceholderVerificationKey:
                raise
            except VerificationKeyError as bundle_error:
                raise VerificationKeyError(
                    f"Failed to load verification key from primary and bundled sources: {bundle_error}",
                    source="all",
                    cause=bundle_error,
                ) from bundle_error
        logger.info(f"Verification key loaded from {vkey.source}")
        return vkey

    def _check_placeholder(self, vkey: VerificationKey) -> VerificationKey:
        if not vkey.is_placeholder:
            return vkey
        if self.production:
            raise PlaceholderVerificationKey(
                "Placeholder verification key detected in production",
                source=vkey.source,
            )
        logger.warning(f"Placeholder verification key from {vkey.source} accepted outside production")
        return vkey

    def _load_primary(self) -> VerificationKey:
        logger.info(f"Loading verification key from {self.url}")
        try:
            response = self.session.get(
                self.url, headers={"Accept": "application/json"}, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            raise VerificationKeyError(f"Failed to fetch {self.url}: {e}", source="primary", cause=e) from e
        except ValueError as e:
            raise VerificationKeyError("Primary key is not valid JSON", source="primary", cause=e) from e
        return self._check_placeholder(VerificationKey.from_dict(data, source="primary"))

    def _load_bundled(self) -> VerificationKey:
        try:
            if self.bundled_path:
                with open(self.bundled_path, encoding="utf-8") as f:
                    data = json.load(f)
            else:
                text = resources.files(BUNDLED_PACKAGE).joinpath(BUNDLED_FILENAME).read_text("utf-8")
                data = json.loads(text)
        except (OSError, ModuleNotFoundError) as e:
            raise VerificationKeyError(f"Bundled key unavailable: {e}", source="bundled", cause=e) from e
        except ValueError as e:
            raise VerificationKeyError("Bundled key is not valid JSON", source="bundled", cause=e) from e
        return self._check_placeholder(VerificationKey.from_dict(data, source="bundled"))

    def preload(self) -> bool:
        """Warm the cache at start-up. Failures are logged, never raised."""
        try:
            self.load()
            return True
        except VerificationKeyError as e:
            logger.warning(f"Verification key preload failed: {e}")
            return False

    def clear_cache(self) -> None:
        """Drop the cached key (key rotation)."""
        with self._lock:
            self._cached = None
