"""
Provider capability registry.

A capability bundle tells the pipeline everything it needs to run a capture
against one provider: which hosts it lives on, which API endpoint to attest,
how to build auth headers, how to tell that the user is logged in, and how to
normalize the attested response into an AttributeSet. All provider-specific
parsing lives in the bundle; the registry itself knows nothing about sites.
"""

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from urllib.parse import urlparse

from commitment import AttributeSet
from models import SnapshotType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageHandle:
    """
    What the pipeline can observe about the page the user is on.

    ``markers`` are identifiers of page elements found by the surface that
    produced the handle (for example a rendered account menu).
    """

    url: str
    cookies: Mapping[str, str] = field(default_factory=dict)
    markers: frozenset[str] = frozenset()
    meta: Mapping[str, str] = field(default_factory=dict)

    @property
    def host(self) -> str:
        return (urlparse(self.url).hostname or "").lower()

    def has_cookie(self, *names: str) -> bool:
        return any(self.cookies.get(name) for name in names)

    def has_cookie_prefix(self, *prefixes: str) -> bool:
        return any(key.startswith(prefixes) and value for key, value in self.cookies.items())

    def has_marker(self, *names: str) -> bool:
        return any(name in self.markers for name in names)


def _no_headers(page: PageHandle) -> dict[str, str]:
    return {}


@dataclass(frozen=True)
class ProviderCapability:
    provider_id: str
    host_patterns: tuple[str, ...]
    api_domain: str
    endpoint: str
    login_check: Callable[[PageHandle], bool]
    attribute_normalizer: Callable[[Mapping[str, Any]], AttributeSet]
    snapshot_type: SnapshotType
    default_validity: timedelta
    http_method: str = "GET"
    auth_header_builder: Callable[[PageHandle], dict[str, str]] = _no_headers
    summary_builder: Callable[[AttributeSet], dict[str, Any]] | None = None

    def matches_host(self, host: str) -> bool:
        return any(match_host_pattern(host, pattern) for pattern in self.host_patterns)


def validate_host_pattern(pattern: str) -> None:
    """
    Raises:
        ValueError: If the pattern has more than one wildcard or a partial-label wildcard
    """
    labels = pattern.lower().split(".")
    wildcards = [label for label in labels if "*" in label]
    if len(wildcards) > 1:
        raise ValueError(f"Host pattern {pattern!r} has more than one wildcard")
    if wildcards and wildcards[0] != "*":
        raise ValueError(f"Wildcard in {pattern!r} must be a whole label")
    if any(not label for label in labels):
        raise ValueError(f"Host pattern {pattern!r} has an empty label")


def match_host_pattern(host: str, pattern: str) -> bool:
    """Exact match, or a single ``*`` label matching exactly one DNS label."""
    host = host.lower().rstrip(".")
    pattern = pattern.lower()
    if host == pattern:
        return True
    if "*" not in pattern:
        return False

    host_labels = host.split(".")
    pattern_labels = pattern.split(".")
    if len(host_labels) != len(pattern_labels):
        return False
    return all(
        (p == "*" and h != "") or p == h
        for h, p in zip(host_labels, pattern_labels, strict=True)
    )


class ProviderRegistry:
    """
    Append-only registry of provider capabilities.

    Registration happens at process start; ``freeze()`` closes it once start-up
    is complete. Lookups are safe from any thread.
    """

    def __init__(self, capabilities: Iterable[ProviderCapability] = ()):
        self._capabilities: dict[str, ProviderCapability] = {}
        self._frozen = False
        self._lock = threading.Lock()
        for capability in capabilities:
            self.register(capability)

    def register(self, capability: ProviderCapability) -> None:
        """
        Raises:
            ValueError: On a duplicate provider id or a malformed host pattern
            RuntimeError: If the registry has been frozen
        """
        for pattern in capability.host_patterns:
            validate_host_pattern(pattern)
        with self._lock:
            if self._frozen:
                raise RuntimeError("Provider registry is frozen")
            if capability.provider_id in self._capabilities:
                raise ValueError(f"Provider already registered: {capability.provider_id}")
            self._capabilities[capability.provider_id] = capability
        logger.debug(f"Registered provider {capability.provider_id}")

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, provider_id: str) -> ProviderCapability | None:
        return self._capabilities.get(provider_id)

    def all(self) -> list[ProviderCapability]:
        return list(self._capabilities.values())

    def find_by_host(self, host: str) -> ProviderCapability | None:
        """First registered capability whose patterns match ``host``, else None."""
        for capability in self._capabilities.values():
            if capability.matches_host(host):
                return capability
        return None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._capabilities

    def __len__(self) -> int:
        return len(self._capabilities)
