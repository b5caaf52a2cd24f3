"""
Record hashing and symmetric encryption.

- Canonical form: sorted-key compact JSON, UTF-8. The same record always
  serializes to the same bytes regardless of dict insertion order.
- Hash: SHA-256 hex digest of the canonical bytes.
- Encryption: AES-256-GCM with a random 12-byte nonce prepended to the
  ciphertext, so the same plaintext encrypts to unlinkable blobs.
- Key: derived once per process from ENCRYPTION_KEY via PBKDF2-HMAC-SHA256.
  The salt is fixed (one key for every tenant); this is a known limitation.
"""
import hashlib
import json
import os
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32  # AES-256
NONCE_SIZE = 12
TAG_SIZE = 16
KDF_ITERATIONS = 600_000
FIXED_SALT = b"petchain-record-encryption-v1"


class DecryptionError(RuntimeError):
    """Raised when a blob cannot be decrypted (corrupt input or wrong key)."""


def canonicalize(data: Any) -> bytes:
    """Serialize a JSON-compatible value to its canonical byte form.

    Raises:
        TypeError: if the value is not JSON-serializable.
    """
    return json.dumps(
        data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


def hash_payload(payload: bytes) -> str:
    """SHA-256 hex digest (64 lowercase chars)."""
    return hashlib.sha256(payload).hexdigest()


def derive_key(
    secret: str,
    salt: bytes = FIXED_SALT,
    iterations: int = KDF_ITERATIONS,
) -> bytes:
    """Derive a 32-byte AES key from a configured secret with PBKDF2-HMAC-SHA256."""
    if not secret:
        raise ValueError("Encryption secret cannot be empty")
    return hashlib.pbkdf2_hmac(
        "sha256", secret.encode("utf-8"), salt, iterations, dklen=KEY_SIZE
    )


def encrypt(payload: bytes, key: bytes) -> bytes:
    """Encrypt with AES-256-GCM. Returns nonce(12) + ciphertext + tag(16)."""
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes")
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, payload, None)


def decrypt(blob: bytes, key: bytes) -> bytes:
    """Inverse of encrypt().

    Raises:
        DecryptionError: on truncated input, tampered ciphertext or wrong key.
    """
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes")
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise DecryptionError("Encrypted payload too short")
    nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as exc:
        raise DecryptionError(
            "Decryption failed: wrong key or tampered ciphertext"
        ) from exc


class Encryptor:
    """Holds the process-wide record key.

    Usage:
        encryptor = Encryptor.from_secret(settings.encryption_key)
        blob = encryptor.encrypt(canonicalize(data))
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"Key must be {KEY_SIZE} bytes")
        self._key = key

    @classmethod
    def from_secret(cls, secret: str, iterations: int = KDF_ITERATIONS) -> "Encryptor":
        return cls(derive_key(secret, iterations=iterations))

    def hash(self, payload: bytes) -> str:
        return hash_payload(payload)

    def hash_data(self, data: Any) -> str:
        """Hash of the canonical form of a JSON-compatible record."""
        return hash_payload(canonicalize(data))

    def encrypt(self, payload: bytes) -> bytes:
        return encrypt(payload, self._key)

    def decrypt(self, blob: bytes) -> bytes:
        return decrypt(blob, self._key)
