"""
SIWA Nonce Generation and Tracking.

Provides the unbiased nonce generator and the pending-challenge store.
A nonce is written when a challenge is issued and consumed exactly once
when the signed challenge is verified, which prevents replay.
Supports both in-memory and Redis-backed storage.
"""

import secrets
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from redis.exceptions import RedisError

from siwa.errors import StoreUnavailableError
from siwa.store import Clock, ExpiringStore, MemoryStore, RedisStore, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

NONCE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"

# Bytes at or above this value are rejected to keep ``byte % 62`` uniform.
_MAX_VALID_BYTE = 256 - (256 % len(NONCE_ALPHABET))


def generate_nonce(length: int = 16) -> str:
    """
    Generate a cryptographically secure alphanumeric nonce.

    Random bytes are mapped onto the 62-character alphabet with rejection
    sampling: bytes >= 248 are discarded instead of wrapped, so every
    character is equally likely. The default length gives ~95 bits.

    Args:
        length: Number of characters to produce.

    Returns:
        A string of exactly ``length`` characters from NONCE_ALPHABET.
    """
    result = []
    while len(result) < length:
        for byte in secrets.token_bytes(length - len(result)):
            if byte < _MAX_VALID_BYTE and len(result) < length:
                result.append(NONCE_ALPHABET[byte % len(NONCE_ALPHABET)])
    return "".join(result)


@dataclass
class NonceRecord:
    """
    Server-side state for an issued, not yet consumed challenge.

    Attributes:
        pubkey: Address the challenge was issued to.
        message: Serialized challenge text.
        expires_at: When the challenge stops being redeemable.
    """

    pubkey: str
    message: str
    expires_at: datetime

    def to_dict(self) -> dict:
        return {"pubkey": self.pubkey, "message": self.message, "expiresAt": to_iso(self.expires_at)}

    @classmethod
    def from_dict(cls, data: dict) -> "NonceRecord":
        return cls(
            pubkey=data["pubkey"],
            message=data["message"],
            expires_at=from_iso(data["expiresAt"]),
        )


class NonceStoreInterface(ExpiringStore[NonceRecord]):
    """Abstract interface for pending-challenge storage."""

    async def delete_and_get(self, nonce: str) -> Optional[NonceRecord]:
        """
        Remove the record for nonce and return it, or None if absent/expired.

        This default composes get() then delete(). Two concurrent callers can
        both read the record before either deletes it, so it does NOT give
        at-most-once consumption. Backends override it with an atomic
        operation; custom backends relying on this fallback inherit that
        time-of-check-to-time-of-use window.
        """
        record = await self.get(nonce)
        if record is not None:
            await self.delete(nonce)
        return record

    @property
    def atomic_consume(self) -> bool:
        """True when delete_and_get() is a single indivisible operation."""
        return type(self).delete_and_get is not NonceStoreInterface.delete_and_get


class MemoryNonceStore(MemoryStore[NonceRecord], NonceStoreInterface):
    """
    In-memory nonce store with atomic consumption.

    Suitable for single-instance deployments. For multi-instance
    deployments, use RedisNonceStore.

    Example:
        >>> store = MemoryNonceStore()
        >>> await store.set(nonce, NonceRecord(pubkey, message, expires_at))
        >>> record = await store.delete_and_get(nonce)  # only the first caller gets it
    """

    def __init__(self, cleanup_interval: int = 60, clock: Clock = utcnow):
        super().__init__(cleanup_interval=cleanup_interval, clock=clock)
        self._stats = {"issued": 0, "consumed": 0, "misses": 0}

    async def set(self, key: str, record: NonceRecord) -> None:
        async with self._lock:
            if self._set_unlocked(key, record):
                self._stats["issued"] += 1

    async def delete_and_get(self, nonce: str) -> Optional[NonceRecord]:
        """Atomically remove and return the nonce record."""
        async with self._lock:
            record = self._records.pop(nonce, None)
            if record is None or self._is_expired(record):
                self._stats["misses"] += 1
                return None
            self._stats["consumed"] += 1
            return record

    @property
    def stats(self) -> dict:
        """Return tracking statistics."""
        return {**self._stats, "pending": len(self._records)}


class RedisNonceStore(RedisStore[NonceRecord], NonceStoreInterface):
    """
    Redis-backed nonce store for distributed deployments.

    Consumption uses GETDEL, which Redis executes atomically, so two
    verifier instances racing on the same nonce cannot both obtain it.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> store = RedisNonceStore(client)
    """

    def __init__(self, redis_client, key_prefix: str = "siwa:nonce:", clock: Clock = utcnow):
        super().__init__(redis_client, NonceRecord, key_prefix=key_prefix, clock=clock)

    async def delete_and_get(self, nonce: str) -> Optional[NonceRecord]:
        """Atomically consume a nonce with GETDEL."""
        try:
            raw = await self._redis.getdel(self._key(nonce))
        except (RedisError, OSError) as e:
            logger.error(f"Redis nonce consume error: {e}")
            raise StoreUnavailableError(f"Redis getdel failed: {e}") from e
        return await self._decode(nonce, raw)
