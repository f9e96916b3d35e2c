"""
zkTLS Snapshot - Runtime Configuration

The notary endpoint is the only externally tunable behavior of the pipeline.
Resolution order:

1. User override saved in the durable store (``zktls_settings_notary_config``)
2. ``ZKTLS_NOTARY_URL`` environment value
3. Compiled-in default (public notary, dev/test only)

Environment Variables:
    ZKTLS_ENV=development          # "production" disables simulated fallbacks
    ZKTLS_NOTARY_URL=https://...   # notary server
    ZKTLS_METADATA_URL=https://... # remote metadata service
    ZKTLS_VKEY_URL=https://...     # verification key primary source
"""

import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Any
from urllib.parse import urlparse

from errors import ConfigurationError, StorageIOFailure
from storage.base import StorageBackend

logger = logging.getLogger(__name__)

DEFAULT_NOTARY_URL = "https://notary.pse.dev"
DEFAULT_METADATA_URL = "http://localhost:3000"

SETTINGS_NAMESPACE = "zktls_settings_"
NOTARY_CONFIG_KEY = "notary_config"

_PRODUCTION_VALUES = ("production", "prod")


@dataclass
class NotaryConfig:
    """Notary server settings. Timeouts and delays are in seconds."""

    url: str = DEFAULT_NOTARY_URL
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def is_production() -> bool:
    """True when ZKTLS_ENV names a production deployment. Unset means development."""
    return os.getenv("ZKTLS_ENV", "development").strip().lower() in _PRODUCTION_VALUES


def default_notary_config() -> NotaryConfig:
    """Defaults with the environment override applied."""
    return NotaryConfig(url=os.getenv("ZKTLS_NOTARY_URL") or DEFAULT_NOTARY_URL)


def validate_notary_config(config: NotaryConfig) -> bool:
    try:
        parsed = urlparse(config.url)
    except (TypeError, ValueError):
        return False
    return (
        parsed.scheme == "https"
        and bool(parsed.netloc)
        and config.timeout > 0
        and config.max_retries >= 0
        and config.retry_delay >= 0
    )


def _load_override(store: StorageBackend) -> dict[str, Any]:
    """
    Read the stored user override, limited to known fields.

    An override that cannot be read or parsed is logged and ignored so a
    broken settings entry never blocks capture.
    """
    try:
        raw = store.get(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY)
    except StorageIOFailure as e:
        logger.warning(f"Failed to load stored notary config: {e}")
        return {}
    if raw is None:
        return {}

    try:
        override = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring corrupt stored notary config: {e}")
        return {}
    if not isinstance(override, dict):
        logger.warning("Ignoring stored notary config that is not an object")
        return {}

    fields = NotaryConfig().to_dict()
    return {k: v for k, v in override.items() if k in fields}


def _apply_override(override: dict[str, Any]) -> NotaryConfig:
    config = default_notary_config()
    merged = {**config.to_dict(), **override}
    merged["url"] = override.get("url") or config.url
    return NotaryConfig(**merged)


def get_notary_config(store: StorageBackend | None = None) -> NotaryConfig:
    """Resolve the effective notary configuration."""
    if store is None:
        return default_notary_config()
    return _apply_override(_load_override(store))


def set_notary_config(store: StorageBackend, **partial: Any) -> NotaryConfig:
    """
    Save a user override and return the resulting effective configuration.

    Only fields the user has set are stored, so values coming from the
    environment or the defaults keep tracking their source.

    Raises:
        ConfigurationError: If an unknown field is given or the merged config is invalid
    """
    unknown = set(partial) - set(NotaryConfig().to_dict())
    if unknown:
        raise ConfigurationError(f"Unknown notary settings: {sorted(unknown)}")

    override = {**_load_override(store), **partial}
    merged = _apply_override(override)
    if not validate_notary_config(merged):
        raise ConfigurationError("Invalid notary configuration", details={"url": merged.url})

    store.put(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY,
              json.dumps(override, sort_keys=True).encode("utf-8"))
    logger.info(f"Saved notary configuration: {merged.url}")
    return merged


def clear_notary_config(store: StorageBackend) -> None:
    store.delete(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY)


def metadata_url() -> str:
    return os.getenv("ZKTLS_METADATA_URL") or DEFAULT_METADATA_URL
