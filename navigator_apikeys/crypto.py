"""
API Keys Crypto Core — Key derivation, AEAD encryption and value serialization.

Every encryption domain derives its own key from the master secret:
- Memory layer: HKDF(master, "navigator-apikeys-memory") → AEAD → MemoryEntry
- Key store layer: HKDF(master, "navigator-apikeys-keystore") → AEAD → JSON payload

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import logging
from typing import Any, Callable, Optional, Union

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .exceptions import DecryptionError

logger = logging.getLogger("navigator.apikeys")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # GCM / Poly1305 tag
KEY_LENGTH = 32  # AES-256

MEMORY_CONTEXT = "navigator-apikeys-memory"
KEYSTORE_CONTEXT = "navigator-apikeys-keystore"

_BYTES_WRAPPER_KEY = "__apikeys_bytes_b64__"

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}

NonceSource = Callable[[int], bytes]


def cipher_class(backend: str = "aesgcm") -> type:
    """Return the AEAD cipher class for a backend name.

    Raises:
        ValueError: If the backend is not supported.
    """
    try:
        return _CIPHERS[backend.lower()]
    except KeyError:
        raise ValueError(f"Unsupported cipher backend: {backend}") from None


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: Union[str, bytes], context: str) -> bytes:
    """Derive a 32-byte encryption key using HKDF-SHA256.

    The derivation is one-way: the derived key never reveals the seed.

    Args:
        seed: Input key material (the master secret).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    if isinstance(seed, str):
        seed = seed.encode("utf-8")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic: the same master secret must reopen old files
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# AEAD cipher
# ---------------------------------------------------------------------------

class AEADCipher:
    """Small AEAD wrapper with a split ``(nonce, ciphertext, tag)`` layout.

    ``nonce_source`` receives the nonce size and returns that many bytes;
    tests inject a deterministic one, production uses ``os.urandom``.
    """

    def __init__(
        self,
        key: bytes,
        backend: str = "aesgcm",
        nonce_source: Optional[NonceSource] = None,
    ):
        if len(key) != KEY_LENGTH:
            raise ValueError(f"AEAD key must be {KEY_LENGTH} bytes, got {len(key)}")
        self.backend = backend.lower()
        self._cipher = cipher_class(self.backend)(key)
        self._nonce_source = nonce_source or os.urandom

    @classmethod
    def from_secret(
        cls,
        secret: Union[str, bytes],
        context: str,
        backend: str = "aesgcm",
        nonce_source: Optional[NonceSource] = None,
    ) -> "AEADCipher":
        """Build a cipher whose key is derived from ``secret`` and ``context``."""
        return cls(derive_key(secret, context), backend=backend, nonce_source=nonce_source)

    def encrypt(
        self, plaintext: bytes, associated_data: Optional[bytes] = None
    ) -> tuple[bytes, bytes, bytes]:
        """Encrypt plaintext with a fresh nonce.

        Returns:
            Tuple of (nonce, ciphertext, auth_tag).
        """
        nonce = self._nonce_source(NONCE_SIZE)
        sealed = self._cipher.encrypt(nonce, plaintext, associated_data)
        return nonce, sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

    def decrypt(
        self,
        nonce: bytes,
        ciphertext: bytes,
        tag: bytes,
        associated_data: Optional[bytes] = None,
    ) -> bytes:
        """Authenticate and decrypt.

        Raises:
            DecryptionError: If the tag does not match or the layout is invalid.
        """
        if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
            raise DecryptionError("Invalid nonce or authentication tag size")
        try:
            return self._cipher.decrypt(nonce, ciphertext + tag, associated_data)
        except InvalidTag as err:
            raise DecryptionError("Authentication tag mismatch") from err


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to bytes for encryption.

    Supports: str, int, float, dict, list, bytes, bool, None.
    bytes values are wrapped as {"__apikeys_bytes_b64__": "<base64>"} for safe
    JSON round-trip.

    Args:
        value: Python value to serialize.

    Returns:
        orjson-encoded bytes.
    """
    if isinstance(value, bytes):
        wrapped = {_BYTES_WRAPPER_KEY: base64.b64encode(value).decode("ascii")}
        return orjson.dumps(wrapped)
    return orjson.dumps(value)


def deserialize_value(data: bytes) -> Any:
    """Deserialize bytes back to a Python value.

    Args:
        data: orjson-encoded bytes from serialize_value.

    Returns:
        Original Python value.
    """
    parsed = orjson.loads(data)
    if isinstance(parsed, dict) and _BYTES_WRAPPER_KEY in parsed and len(parsed) == 1:
        return base64.b64decode(parsed[_BYTES_WRAPPER_KEY])
    return parsed


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"))
