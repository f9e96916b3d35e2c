"""
Provider capability bundles and the registry that resolves them by host.

Usage:
    from providers import default_registry, PageHandle

    registry = default_registry()
    capability = registry.find_by_host(PageHandle(url="https://x.com/home").host)
"""

from providers.base import (
    PageHandle,
    ProviderCapability,
    ProviderRegistry,
    match_host_pattern,
)
from providers.builtin import BUILTIN_PROVIDERS, default_registry

__all__ = [
    "BUILTIN_PROVIDERS",
    "PageHandle",
    "ProviderCapability",
    "ProviderRegistry",
    "default_registry",
    "match_host_pattern",
]
