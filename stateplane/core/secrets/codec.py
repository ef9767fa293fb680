"""
Secret codec — envelope encryption for values crossing the state boundary.

Envelope layout (JSON object, every binary field base64)::

    {
        "scheme": "aes-256-gcm/pbkdf2-sha256/v1",
        "ciphertext": "...",     # AES-GCM output, tag appended
        "nonce": "...",          # 12 bytes
        "salt": "...",           # 16 bytes, PBKDF2 salt
        "iterations": 480000
    }

Key derivation: PBKDF2-SHA256 over the run's passphrase.
Encryption: AES-256-GCM. The scheme string is checked on decrypt so
later schemes can be added without breaking old state.

Decryption fails closed: a missing key, a wrong key or a malformed
envelope all raise DecryptionError and the run aborts.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import os
import threading
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from stateplane.core.errors import DecryptionError, SecretError

logger = logging.getLogger(__name__)

# ── Constants ────────────────────────────────────────────────────────

SCHEME_AES_GCM_V1 = "aes-256-gcm/pbkdf2-sha256/v1"
SUPPORTED_SCHEMES = frozenset({SCHEME_AES_GCM_V1})

KDF_ITERATIONS = 480_000
KEY_BYTES = 32
SALT_BYTES = 16
NONCE_BYTES = 12

_FINGERPRINT_SALT = b"stateplane/fingerprint/v1"

_ENVELOPE_FIELDS = ("scheme", "ciphertext", "nonce", "salt")


# ── Key derivation ───────────────────────────────────────────────────

def _derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a 256-bit key from passphrase using PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any, field: str) -> bytes:
    if not isinstance(value, str):
        raise DecryptionError(f"Malformed secret envelope: '{field}' is not a string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionError(f"Malformed secret envelope: bad base64 in '{field}'") from e


def is_envelope(value: Any) -> bool:
    """Whether *value* looks like a secret envelope."""
    return isinstance(value, dict) and "scheme" in value and "ciphertext" in value


# ── Stateless API ────────────────────────────────────────────────────

def _seal(aes_key: bytes, salt: bytes, iterations: int, plaintext: str) -> dict[str, Any]:
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = AESGCM(aes_key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return {
        "scheme": SCHEME_AES_GCM_V1,
        "ciphertext": _b64(ciphertext),
        "nonce": _b64(nonce),
        "salt": _b64(salt),
        "iterations": iterations,
    }


def _parse_envelope(envelope: Any) -> tuple[bytes, bytes, bytes, int]:
    """Validate an envelope and return (ciphertext, nonce, salt, iterations)."""
    if not isinstance(envelope, dict):
        raise DecryptionError("Malformed secret envelope: expected a mapping")
    missing = [f for f in _ENVELOPE_FIELDS if f not in envelope]
    if missing:
        raise DecryptionError(f"Malformed secret envelope: missing {', '.join(missing)}")
    scheme = envelope["scheme"]
    if scheme not in SUPPORTED_SCHEMES:
        raise DecryptionError(f"Unsupported secret scheme: {scheme!r}")

    iterations = envelope.get("iterations", KDF_ITERATIONS)
    if not isinstance(iterations, int) or iterations <= 0:
        raise DecryptionError("Malformed secret envelope: bad iteration count")

    ciphertext = _unb64(envelope["ciphertext"], "ciphertext")
    nonce = _unb64(envelope["nonce"], "nonce")
    salt = _unb64(envelope["salt"], "salt")
    if len(nonce) != NONCE_BYTES:
        raise DecryptionError("Malformed secret envelope: bad nonce length")
    return ciphertext, nonce, salt, iterations


def _open(aes_key: bytes, ciphertext: bytes, nonce: bytes) -> str:
    try:
        plaintext = AESGCM(aes_key).decrypt(nonce, ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("Cannot decrypt secret: wrong key or corrupted data") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted secret is not valid UTF-8") from e


def encrypt(plaintext: str, key: str, iterations: int = KDF_ITERATIONS) -> dict[str, Any]:
    """Encrypt *plaintext* with *key* into a fresh envelope.

    Raises:
        SecretError: If no key material is given.
    """
    if not key:
        raise SecretError("Cannot encrypt secret: no key material configured")
    salt = os.urandom(SALT_BYTES)
    return _seal(_derive_key(key, salt, iterations), salt, iterations, plaintext)


def decrypt(envelope: dict[str, Any], key: str) -> str:
    """Decrypt an envelope produced by ``encrypt``.

    Raises:
        DecryptionError: Missing key, wrong key or malformed envelope.
    """
    if not key:
        raise DecryptionError("Cannot decrypt secret: no key material configured")
    ciphertext, nonce, salt, iterations = _parse_envelope(envelope)
    return _open(_derive_key(key, salt, iterations), ciphertext, nonce)


# ── Run-bound codec ──────────────────────────────────────────────────


class SecretCodec:
    """Codec bound to one run's key material.

    PBKDF2 is deliberately slow, so derived keys are cached per salt.
    Envelopes written by one codec share its salt; each still gets a
    fresh nonce.
    """

    def __init__(self, key: str | None, iterations: int = KDF_ITERATIONS):
        self._key = key or None
        self._iterations = iterations
        self._salt = os.urandom(SALT_BYTES)
        self._keys: dict[tuple[bytes, int], bytes] = {}
        self._fingerprint_key: bytes | None = None
        self._lock = threading.Lock()

    @property
    def has_key(self) -> bool:
        return self._key is not None

    @property
    def scheme(self) -> str:
        return SCHEME_AES_GCM_V1

    def _key_for(self, salt: bytes, iterations: int) -> bytes:
        assert self._key is not None
        with self._lock:
            cached = self._keys.get((salt, iterations))
            if cached is None:
                cached = _derive_key(self._key, salt, iterations)
                self._keys[(salt, iterations)] = cached
            return cached

    def encrypt(self, plaintext: str) -> dict[str, Any]:
        if self._key is None:
            raise SecretError(
                "Cannot encrypt secret: no key material configured "
                "(set the passphrase when opening the scope)"
            )
        key = self._key_for(self._salt, self._iterations)
        return _seal(key, self._salt, self._iterations, plaintext)

    def decrypt(self, envelope: dict[str, Any]) -> str:
        if self._key is None:
            raise DecryptionError(
                "Cannot decrypt secret: no key material configured "
                "(state contains encrypted values)"
            )
        ciphertext, nonce, salt, iterations = _parse_envelope(envelope)
        return _open(self._key_for(salt, iterations), ciphertext, nonce)

    def fingerprint(self, plaintext: str) -> str:
        """Keyed, deterministic digest of a secret for change detection.

        Stable across runs for the same key, changes when the secret
        changes, and reveals nothing without the key.
        """
        if self._key is None:
            raise SecretError("Cannot fingerprint secret: no key material configured")
        with self._lock:
            if self._fingerprint_key is None:
                self._fingerprint_key = _derive_key(
                    self._key, _FINGERPRINT_SALT, self._iterations
                )
            fp_key = self._fingerprint_key
        digest = hmac.new(fp_key, plaintext.encode("utf-8"), hashlib.sha256)
        return "hmac-sha256:" + digest.hexdigest()
