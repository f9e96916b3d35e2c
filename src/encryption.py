"""
zkTLS Snapshot - Snapshot Encryption Module

Turns a wallet-controlled secret into a symmetric key and seals snapshot
secrets with it before they touch durable storage.

Security Features:
- PBKDF2-HMAC-SHA256 key derivation (600,000 iterations by default, never below 100,000)
- Static, versioned salt so one re-derivation opens every snapshot of an owner
- AES-256-GCM with a fresh 96-bit nonce per encryption
- Snapshot id bound as associated data, so ciphertexts cannot be swapped between keys
- Decryption fails closed: any authentication or format problem raises DecryptionError
"""

import base64
import json
import secrets
import threading
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from errors import DecryptionError, KeyDerivationFailed

# Constants
NONCE_SIZE = 12  # 96 bits for GCM (recommended)
TAG_SIZE = 16
KEY_SIZE = 32  # 256 bits
PBKDF2_ITERATIONS = 600_000  # OWASP recommended minimum for PBKDF2-HMAC-SHA256
MIN_PBKDF2_ITERATIONS = 100_000

# Domain separation. Changing either value orphans every stored snapshot.
KEY_DOMAIN_SEPARATOR = "zktls-snapshot key"
KEY_SALT = b"zktls-snapshot-salt-v1"

# Encrypted data prefix for identification
ENCRYPTED_PREFIX = "ENC:1:"


def derive_key(
    owner: str,
    signature: str,
    iterations: int = PBKDF2_ITERATIONS,
    salt: bytes = KEY_SALT,
) -> bytes:
    """
    Derive the 256-bit snapshot key for an owner.

    Args:
        owner: Owner identity (wallet address)
        signature: Wallet signature acting as the owner secret
        iterations: PBKDF2 iteration count
        salt: Versioned domain-separation salt

    Returns:
        32-byte key. Identical inputs always give the identical key.

    Raises:
        KeyDerivationFailed: On empty inputs, weak parameters or KDF failure
    """
    if not owner or not signature:
        raise KeyDerivationFailed("Owner and signature are required for key derivation")
    if iterations < MIN_PBKDF2_ITERATIONS:
        raise KeyDerivationFailed(
            f"Refusing PBKDF2 with {iterations} iterations (minimum {MIN_PBKDF2_ITERATIONS})"
        )

    try:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=iterations,
        )
        material = f"{owner}:{signature}:{KEY_DOMAIN_SEPARATOR}".encode("utf-8")
        return kdf.derive(material)
    except Exception as e:
        raise KeyDerivationFailed(f"Key derivation failed: {e}", cause=e) from e


def encrypt_record(record: dict[str, Any], key: bytes, associated_data: str) -> str:
    """
    Encrypt a JSON-serializable record with AES-256-GCM.

    Args:
        record: Record to encrypt
        key: 32-byte key from derive_key()
        associated_data: Value bound to the ciphertext (the snapshot id)

    Returns:
        ENCRYPTED_PREFIX + base64(nonce || ciphertext || tag)
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")

    plaintext = json.dumps(record, sort_keys=True, separators=(",", ":")).encode("utf-8")
    nonce = secrets.token_bytes(NONCE_SIZE)
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, associated_data.encode("utf-8"))
    return ENCRYPTED_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")


def decrypt_record(encrypted: str, key: bytes, associated_data: str) -> dict[str, Any]:
    """
    Decrypt a record produced by encrypt_record().

    Raises:
        DecryptionError: On wrong key, wrong associated data, tampering or bad format.
            No partial plaintext is ever returned.
    """
    if not isinstance(encrypted, str) or not encrypted.startswith(ENCRYPTED_PREFIX):
        raise DecryptionError("Invalid encrypted data format: missing prefix")

    try:
        blob = base64.b64decode(encrypted[len(ENCRYPTED_PREFIX):], validate=True)
    except ValueError as e:
        raise DecryptionError("Invalid encrypted data: not base64", cause=e) from e

    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Invalid encrypted data: too short")

    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, associated_data.encode("utf-8"))
    except InvalidTag as e:
        raise DecryptionError("Authentication failed: wrong key or tampered data", cause=e) from e
    except ValueError as e:
        raise DecryptionError(f"Decryption failed: {e}", cause=e) from e

    try:
        return json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise DecryptionError("Decrypted payload is not valid JSON", cause=e) from e


def is_encrypted(data: str) -> bool:
    """Check if a string looks like encrypt_record() output."""
    return isinstance(data, str) and data.startswith(ENCRYPTED_PREFIX)


class KeySlot:
    """
    Single-writer holder for the encryption key of one orchestration run.

    The key is written once, read by any step of the run, and dropped on
    every exit path. A second write is a programming error.
    """

    def __init__(self):
        self._key: bytes | None = None
        self._lock = threading.Lock()

    def set(self, key: bytes) -> None:
        with self._lock:
            if self._key is not None:
                raise RuntimeError("Encryption key already set for this run")
            self._key = key

    def get(self) -> bytes:
        with self._lock:
            if self._key is None:
                raise RuntimeError("No encryption key in slot")
            return self._key

    @property
    def is_set(self) -> bool:
        with self._lock:
            return self._key is not None

    def clear(self) -> None:
        with self._lock:
            self._key = None


__all__ = [
    "ENCRYPTED_PREFIX",
    "KEY_SALT",
    "KeySlot",
    "MIN_PBKDF2_ITERATIONS",
    "PBKDF2_ITERATIONS",
    "decrypt_record",
    "derive_key",
    "encrypt_record",
    "is_encrypted",
]
