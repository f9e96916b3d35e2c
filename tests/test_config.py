"""
Tests for notary configuration resolution and persistence.
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from config import (
    DEFAULT_METADATA_URL,
    DEFAULT_NOTARY_URL,
    NOTARY_CONFIG_KEY,
    SETTINGS_NAMESPACE,
    NotaryConfig,
    clear_notary_config,
    get_notary_config,
    is_production,
    metadata_url,
    set_notary_config,
    validate_notary_config,
)
from errors import ConfigurationError


class TestResolution:
    """Stored override, then environment, then defaults."""

    def test_defaults(self):
        config = get_notary_config()
        assert config.url == DEFAULT_NOTARY_URL
        assert config.timeout == 30.0
        assert config.max_retries == 3

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("ZKTLS_NOTARY_URL", "https://notary.env.test")
        assert get_notary_config().url == "https://notary.env.test"

    def test_stored_override_wins(self, monkeypatch, memory_backend):
        monkeypatch.setenv("ZKTLS_NOTARY_URL", "https://notary.env.test")
        memory_backend.put(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY,
                           json.dumps({"url": "https://notary.user.test", "timeout": 5}).encode())

        config = get_notary_config(memory_backend)

        assert config.url == "https://notary.user.test"
        assert config.timeout == 5
        assert config.max_retries == 3

    def test_unknown_stored_fields_ignored(self, memory_backend):
        memory_backend.put(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY,
                           json.dumps({"url": "https://n.test", "colour": "red"}).encode())
        assert get_notary_config(memory_backend).url == "https://n.test"

    def test_corrupt_override_ignored(self, memory_backend):
        """A broken settings entry must not block capture."""
        memory_backend.put(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY, b"{not json")
        assert get_notary_config(memory_backend).url == DEFAULT_NOTARY_URL

    def test_non_object_override_ignored(self, memory_backend):
        memory_backend.put(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY, b'["https://n.test"]')
        assert get_notary_config(memory_backend).url == DEFAULT_NOTARY_URL


class TestSetNotaryConfig:
    """Tests for saving overrides."""

    def test_partial_update_merges(self, memory_backend):
        set_notary_config(memory_backend, url="https://notary.user.test")
        config = set_notary_config(memory_backend, timeout=12)

        assert config.url == "https://notary.user.test"
        assert config.timeout == 12
        assert get_notary_config(memory_backend) == config

    def test_environment_url_not_frozen_into_override(self, monkeypatch, memory_backend):
        """Saving only a timeout must keep the URL tracking the environment."""
        monkeypatch.setenv("ZKTLS_NOTARY_URL", "https://notary.env-a.test")
        set_notary_config(memory_backend, timeout=12)

        stored = json.loads(memory_backend.get(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY))
        assert stored == {"timeout": 12}

        monkeypatch.setenv("ZKTLS_NOTARY_URL", "https://notary.env-b.test")
        config = get_notary_config(memory_backend)
        assert config.url == "https://notary.env-b.test"
        assert config.timeout == 12

    def test_unknown_field_rejected(self, memory_backend):
        with pytest.raises(ConfigurationError):
            set_notary_config(memory_backend, colour="red")

    def test_plain_http_rejected(self, memory_backend):
        with pytest.raises(ConfigurationError):
            set_notary_config(memory_backend, url="http://notary.test")
        assert memory_backend.get(SETTINGS_NAMESPACE, NOTARY_CONFIG_KEY) is None

    def test_negative_retries_rejected(self, memory_backend):
        with pytest.raises(ConfigurationError):
            set_notary_config(memory_backend, max_retries=-1)

    def test_clear_restores_defaults(self, memory_backend):
        set_notary_config(memory_backend, url="https://notary.user.test")
        clear_notary_config(memory_backend)
        assert get_notary_config(memory_backend).url == DEFAULT_NOTARY_URL


class TestValidation:
    """Tests for validate_notary_config."""

    def test_valid(self):
        assert validate_notary_config(NotaryConfig(url="https://notary.test"))

    def test_missing_host(self):
        assert not validate_notary_config(NotaryConfig(url="https://"))

    def test_zero_timeout(self):
        assert not validate_notary_config(NotaryConfig(url="https://notary.test", timeout=0))


class TestEnvironment:
    """Tests for environment helpers."""

    @pytest.mark.parametrize("value,expected", [
        ("production", True),
        ("PROD", True),
        ("development", False),
        ("test", False),
    ])
    def test_is_production(self, monkeypatch, value, expected):
        monkeypatch.setenv("ZKTLS_ENV", value)
        assert is_production() is expected

    def test_unset_is_development(self, monkeypatch):
        monkeypatch.delenv("ZKTLS_ENV", raising=False)
        assert is_production() is False

    def test_metadata_url(self, monkeypatch):
        monkeypatch.delenv("ZKTLS_METADATA_URL", raising=False)
        assert metadata_url() == DEFAULT_METADATA_URL
        monkeypatch.setenv("ZKTLS_METADATA_URL", "https://meta.test")
        assert metadata_url() == "https://meta.test"
