"""
Tests for verification key loading, validation and placeholder detection.
"""

import json
import os
import sys
import threading
from unittest.mock import MagicMock

import pytest
import requests

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from errors import PlaceholderVerificationKey, VerificationKeyError
from conftest import VALID_VKEY
from vkey_loader import (
    VerificationKey,
    VerificationKeyLoader,
    is_placeholder_key,
    validate_verification_key,
)


def session_returning(payload=None, error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.json.return_value = payload
        session.get.return_value = response
    return session


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "key.json"
    path.write_text(json.dumps(VALID_VKEY))
    return str(path)


class TestValidation:
    """Tests for validate_verification_key."""

    def test_valid_key(self):
        validate_verification_key(VALID_VKEY)

    def test_wrong_protocol(self):
        with pytest.raises(VerificationKeyError):
            validate_verification_key({**VALID_VKEY, "protocol": "plonk"})

    def test_missing_array(self):
        data = dict(VALID_VKEY)
        del data["vk_delta_2"]
        with pytest.raises(VerificationKeyError):
            validate_verification_key(data)

    def test_ic_length_must_match_n_public(self):
        with pytest.raises(VerificationKeyError):
            validate_verification_key({**VALID_VKEY, "nPublic": 4})

    def test_n_public_must_be_int(self):
        with pytest.raises(VerificationKeyError):
            validate_verification_key({**VALID_VKEY, "nPublic": "5"})

    def test_not_an_object(self):
        with pytest.raises(VerificationKeyError):
            validate_verification_key(["groth16"])


class TestPlaceholderDetection:
    """Tests for is_placeholder_key."""

    def test_real_key(self):
        assert not is_placeholder_key(VALID_VKEY)

    def test_zero_ic_rows(self):
        data = {**VALID_VKEY, "IC": [["0", "0", "1"]] * 4 + [["1", "2", "1"]] * 2}
        assert is_placeholder_key(data)

    def test_minority_zero_rows_is_not_placeholder(self):
        data = {**VALID_VKEY, "IC": [["0", "0", "1"]] * 2 + [["1", "2", "1"]] * 4}
        assert not is_placeholder_key(data)

    def test_sentinel_alpha(self):
        assert is_placeholder_key({**VALID_VKEY, "vk_alpha_1": ["placeholder", "1", "1"]})

    def test_bundled_key_is_placeholder(self):
        """The key shipped with the package is a development placeholder."""
        loader = VerificationKeyLoader(session=session_returning(error=requests.exceptions.ConnectionError()),
                                       production=False)
        key = loader.load()
        assert key.source == "bundled"
        assert key.is_placeholder
        assert key.n_public == 5


class TestVerificationKeyLoader:
    """Tests for primary/fallback loading and caching."""

    def test_primary_source(self):
        session = session_returning(VALID_VKEY)
        loader = VerificationKeyLoader(url="https://keys.test/k.json", session=session, production=True)

        key = loader.load()

        assert key.source == "primary"
        assert key.to_dict() == VALID_VKEY
        session.get.assert_called_once()
        assert session.get.call_args.args[0] == "https://keys.test/k.json"

    def test_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("ZKTLS_VKEY_URL", "https://env.test/key.json")
        assert VerificationKeyLoader().url == "https://env.test/key.json"

    def test_falls_back_to_bundled_copy(self, key_file):
        session = session_returning(error=requests.exceptions.Timeout("slow"))
        loader = VerificationKeyLoader(session=session, bundled_path=key_file, production=True)
        key = loader.load()
        assert key.source == "bundled"

    def test_invalid_primary_falls_back(self, key_file):
        session = session_returning({"protocol": "groth16"})
        loader = VerificationKeyLoader(session=session, bundled_path=key_file, production=True)
        assert loader.load().source == "bundled"

    def test_both_sources_fail(self, tmp_path):
        session = session_returning(error=requests.exceptions.ConnectionError())
        loader = VerificationKeyLoader(session=session, bundled_path=str(tmp_path / "missing.json"))
        with pytest.raises(VerificationKeyError):
            loader.load()

    def test_placeholder_primary_fatal_in_production(self, key_file):
        """A placeholder key in production must not silently fall back."""
        placeholder = {**VALID_VKEY, "vk_alpha_1": ["0", "0", "1"]}
        loader = VerificationKeyLoader(session=session_returning(placeholder),
                                       bundled_path=key_file, production=True)
        with pytest.raises(PlaceholderVerificationKey):
            loader.load()

    def test_placeholder_accepted_outside_production(self):
        placeholder = {**VALID_VKEY, "vk_alpha_1": ["0", "0", "1"]}
        loader = VerificationKeyLoader(session=session_returning(placeholder), production=False)
        assert loader.load().is_placeholder

    def test_cached_after_first_load(self):
        session = session_returning(VALID_VKEY)
        loader = VerificationKeyLoader(session=session, production=False)
        first = loader.load()
        assert loader.load() is first
        assert session.get.call_count == 1

    def test_concurrent_first_loads_share_one_fetch(self):
        """Concurrent callers must not trigger more than one load."""
        session = session_returning(VALID_VKEY)
        loader = VerificationKeyLoader(session=session, production=False)
        results = []

        threads = [threading.Thread(target=lambda: results.append(loader.load())) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert session.get.call_count == 1
        assert all(r is results[0] for r in results)

    def test_clear_cache_reloads(self):
        session = session_returning(VALID_VKEY)
        loader = VerificationKeyLoader(session=session, production=False)
        loader.load()
        loader.clear_cache()
        assert loader.cached is None
        loader.load()
        assert session.get.call_count == 2

    def test_preload_never_raises(self, tmp_path):
        session = session_returning(error=requests.exceptions.ConnectionError())
        loader = VerificationKeyLoader(session=session, bundled_path=str(tmp_path / "missing.json"))
        assert loader.preload() is False

    def test_key_round_trip(self):
        key = VerificationKey.from_dict(VALID_VKEY, source="x")
        assert VerificationKey.from_dict(key.to_dict()).to_dict() == VALID_VKEY
