"""
SIWA Store Abstraction.

Generic key-value contract with expiry semantics shared by the nonce,
session and rate-limit stores. Two reference backends are provided:

- MemoryStore: process-local dict, lazy expiry on read plus a periodic sweep.
- RedisStore: JSON records under a key prefix, expiry delegated to Redis TTLs.

Records are dataclasses exposing ``expires_at`` (aware UTC datetime),
``to_dict()`` and ``from_dict()``.
"""

import json
import math
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar

from redis.exceptions import RedisError

from siwa.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

R = TypeVar("R")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def from_iso(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ExpiringStore(ABC, Generic[R]):
    """
    Abstract key-value store whose records carry an explicit ``expires_at``.

    Implementations must never return a record whose ``expires_at`` has
    passed, and must eventually reclaim expired records.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[R]:
        """Return the record for key, or None if absent or expired."""
        pass

    @abstractmethod
    async def set(self, key: str, record: R) -> None:
        """Store a record. Records that are already expired are not stored."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key. Deleting a missing key is not an error."""
        pass


class MemoryStore(ExpiringStore[R]):
    """
    In-memory store with lazy expiry and opportunistic sweeping.

    Suitable for single-instance deployments and tests. State is owned by
    the instance; nothing is shared at module level.

    Example:
        >>> store = MemoryStore(cleanup_interval=60)
        >>> await store.set("key", record)
        >>> await store.get("key")
    """

    def __init__(self, cleanup_interval: int = 60, clock: Clock = utcnow):
        """
        Initialize the memory store.

        Args:
            cleanup_interval: Seconds between automatic sweeps of expired records.
            clock: Callable returning the current aware datetime.
        """
        self._records: Dict[str, Any] = {}
        self._clock = clock
        self._cleanup_interval = timedelta(seconds=cleanup_interval)
        self._last_cleanup = clock()
        self._lock = asyncio.Lock()

    def _is_expired(self, record: Any, now: Optional[datetime] = None) -> bool:
        return record.expires_at <= (now or self._clock())

    def _get_unlocked(self, key: str) -> Optional[R]:
        record = self._records.get(key)
        if record is None:
            return None
        if self._is_expired(record):
            del self._records[key]
            return None
        return record

    async def get(self, key: str) -> Optional[R]:
        async with self._lock:
            self._maybe_cleanup()
            return self._get_unlocked(key)

    def _set_unlocked(self, key: str, record: R) -> bool:
        self._maybe_cleanup()
        if self._is_expired(record):
            return False
        self._records[key] = record
        return True

    async def set(self, key: str, record: R) -> None:
        async with self._lock:
            self._set_unlocked(key, record)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._records.pop(key, None)

    async def cleanup_expired(self) -> int:
        """Remove all expired records. Returns count removed."""
        async with self._lock:
            return self._cleanup_internal()

    async def sweep_forever(self, interval: Optional[float] = None) -> None:
        """
        Sweep expired records until cancelled.

        Intended to be scheduled by the owner, e.g.
        ``task = asyncio.create_task(store.sweep_forever())``.
        """
        delay = interval if interval is not None else self._cleanup_interval.total_seconds()
        while True:
            await asyncio.sleep(delay)
            removed = await self.cleanup_expired()
            if removed:
                logger.debug(f"Swept {removed} expired records")

    async def clear(self) -> None:
        """Remove every record."""
        async with self._lock:
            self._records.clear()

    def _cleanup_internal(self) -> int:
        now = self._clock()
        expired = [key for key, record in self._records.items() if self._is_expired(record, now)]
        for key in expired:
            del self._records[key]
        self._last_cleanup = now
        return len(expired)

    def _maybe_cleanup(self) -> None:
        if self._clock() - self._last_cleanup >= self._cleanup_interval:
            self._cleanup_internal()

    def __len__(self) -> int:
        return len(self._records)


class RedisStore(ExpiringStore[R]):
    """
    Redis-backed store for multi-instance deployments.

    Records are stored as JSON under ``{key_prefix}{key}`` with a TTL
    matching the record's ``expires_at``, so Redis reclaims them on its own.
    Backend failures raise StoreUnavailableError.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> store = RedisStore(client, SessionRecord, key_prefix="siwa:session:")
    """

    def __init__(
        self,
        redis_client,
        record_type: Type[R],
        key_prefix: str = "siwa:",
        clock: Clock = utcnow,
    ):
        """
        Initialize Redis store.

        Args:
            redis_client: An async Redis client (redis.asyncio.Redis).
            record_type: Record class providing from_dict().
            key_prefix: Prefix for every key written by this store.
            clock: Callable returning the current aware datetime.
        """
        self._redis = redis_client
        self._record_type = record_type
        self._prefix = key_prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        """Generate prefixed key."""
        return f"{self._prefix}{key}"

    def _ttl_ms(self, record: Any) -> int:
        remaining = (record.expires_at - self._clock()).total_seconds()
        return math.ceil(remaining * 1000)

    async def _decode(self, key: str, raw: Any) -> Optional[R]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            record = self._record_type.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping corrupt record at {self._key(key)}: {e}")
            await self.delete(key)
            return None
        if record.expires_at <= self._clock():
            return None
        return record

    async def get(self, key: str) -> Optional[R]:
        try:
            raw = await self._redis.get(self._key(key))
        except (RedisError, OSError) as e:
            logger.error(f"Redis get error: {e}")
            raise StoreUnavailableError(f"Redis get failed: {e}") from e
        return await self._decode(key, raw)

    async def set(self, key: str, record: R) -> None:
        ttl_ms = self._ttl_ms(record)
        if ttl_ms <= 0:
            return
        try:
            await self._redis.set(self._key(key), json.dumps(record.to_dict()), px=ttl_ms)
        except (RedisError, OSError) as e:
            logger.error(f"Redis set error: {e}")
            raise StoreUnavailableError(f"Redis set failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except (RedisError, OSError) as e:
            logger.error(f"Redis delete error: {e}")
            raise StoreUnavailableError(f"Redis delete failed: {e}") from e

    async def ping(self) -> bool:
        """Check Redis connectivity."""
        try:
            return bool(await self._redis.ping())
        except (RedisError, OSError):
            return False
