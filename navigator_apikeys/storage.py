"""
SecureMemoryStorage — Encrypted, TTL-bounded in-memory cache.

Provides the cache used by the lifecycle manager for key material:
- ``set(key, value, ttl)``: serialize, encrypt and store with an expiry
- ``get(key, default)``: decrypt, slide the expiry forward (renew-on-read)
- ``has(key)`` / ``delete(key)`` / ``clear()``: direct map operations
- ``cleanup()``: evict expired entries, also run by a background task

Security Note:
    Entries are always encrypted at rest; plaintext only exists in the return
    path of ``get()``. Never log plaintext or ciphertext values, only key names.
"""
import sys
import time
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .crypto import (
    MEMORY_CONTEXT,
    AEADCipher,
    serialize_value,
    deserialize_value,
)
from .exceptions import DecryptionError
from .utils import PeriodicTask

logger = logging.getLogger("navigator.apikeys.storage")

_DEFAULT_TTL = 30 * 60
_DEFAULT_CLEANUP_INTERVAL = 60


@dataclass
class MemoryEntry:
    """Encrypted cache entry; ``expires_at`` is the only mutable field."""

    key: str
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes
    expires_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def size(self) -> int:
        return (
            sys.getsizeof(self.key)
            + len(self.ciphertext)
            + len(self.nonce)
            + len(self.auth_tag)
        )


class SecureMemoryStorage:
    """Encrypted key-value cache with renew-on-read TTL.

    The storage key is derived from the master secret with HKDF and a fixed
    context string, so the master secret itself is never used as a cipher key.
    """

    def __init__(
        self,
        master_secret: str,
        ttl: float = _DEFAULT_TTL,
        cleanup_interval: float = _DEFAULT_CLEANUP_INTERVAL,
        cipher: Optional[AEADCipher] = None,
        clock: Callable[[], float] = time.time,
        backend: str = "aesgcm",
    ):
        if not master_secret:
            raise ValueError("SecureMemoryStorage requires a master secret")
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._cipher = cipher or AEADCipher.from_secret(
            master_secret, MEMORY_CONTEXT, backend=backend,
        )
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, MemoryEntry] = {}
        self._lock = threading.RLock()
        self._cleanup_task = PeriodicTask("memory-cleanup", cleanup_interval, self.cleanup)

    @property
    def ttl(self) -> float:
        return self._ttl

    # ------------------------------------------------------------------
    # Map operations
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Encrypt and store a value.

        Args:
            key: Entry name.
            value: Any orjson-serializable value (bytes supported).
            ttl: Seconds to live; defaults to the storage TTL.
        """
        ttl = self._ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        nonce, ciphertext, tag = self._cipher.encrypt(
            serialize_value(value), key.encode("utf-8"),
        )
        entry = MemoryEntry(
            key=key,
            ciphertext=ciphertext,
            nonce=nonce,
            auth_tag=tag,
            expires_at=self._clock() + ttl,
            ttl=ttl,
        )
        with self._lock:
            self._entries[key] = entry
        logger.debug("Memory set: key=%s ttl=%.0fs", key, ttl)

    def get(self, key: str, default: Any = None) -> Any:
        """Decrypt and return a value, sliding its expiry forward.

        Expired entries are evicted. An entry that fails authentication is
        evicted and reported as a miss.

        Returns:
            Stored value, or ``default`` on a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            now = self._clock()
            if entry.is_expired(now):
                del self._entries[key]
                logger.debug("Memory entry expired: key=%s", key)
                return default
            try:
                plaintext = self._cipher.decrypt(
                    entry.nonce, entry.ciphertext, entry.auth_tag, key.encode("utf-8"),
                )
            except DecryptionError as err:
                self._entries.pop(key, None)
                logger.warning("Memory entry discarded: key=%s (%s)", key, err)
                return default
            entry.expires_at = now + entry.ttl
        return deserialize_value(plaintext)

    def has(self, key: str) -> bool:
        """Check whether a live (unexpired) entry exists."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Memory storage cleared (%d entries)", count)
        return count

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return self.has(str(key))

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def cleanup(self) -> int:
        """Evict all expired entries.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Memory cleanup evicted %d entries", len(expired))
        return len(expired)

    def get_stats(self) -> dict:
        """Return active/expired counts and approximate memory usage in bytes."""
        with self._lock:
            now = self._clock()
            expired = sum(1 for e in self._entries.values() if e.is_expired(now))
            usage = sum(e.size() for e in self._entries.values())
            total = len(self._entries)
        return {
            "total": total,
            "active": total - expired,
            "expired": expired,
            "memory_usage": usage,
            "ttl": self._ttl,
        }

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the periodic cleanup task (requires a running event loop)."""
        self._cleanup_task.start()

    async def stop(self) -> None:
        await self._cleanup_task.stop()
