"""
SIWA Rate Limiting.

Fixed-window request counters keyed by caller identifier (IP address or
public key). Challenge issuance consults these before doing any work.

A fixed window can admit up to 2x max_requests in a short burst that
straddles a window boundary; this is a known imprecision of the scheme.
"""

import logging
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis.exceptions import RedisError

from siwa.errors import StoreUnavailableError
from siwa.store import Clock, ExpiringStore, MemoryStore, RedisStore, utcnow

logger = logging.getLogger(__name__)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_ms(value: float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    count: int
    reset_time: datetime
    retry_after: Optional[float] = None


@dataclass
class RateLimitRecord:
    """Counter state for one identifier's current window."""

    count: int
    window_start: datetime
    expires_at: datetime

    # Timestamps are epoch milliseconds so the Redis script can compare them.
    def to_dict(self) -> dict:
        return {
            "count": self.count,
            "windowStart": _to_ms(self.window_start),
            "expiresAt": _to_ms(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RateLimitRecord":
        return cls(
            count=int(data["count"]),
            window_start=_from_ms(data["windowStart"]),
            expires_at=_from_ms(data["expiresAt"]),
        )


class RateLimitStoreInterface(ExpiringStore[RateLimitRecord]):
    """Abstract interface for rate limit counters."""

    @abstractmethod
    async def increment(
        self, identifier: str, window_minutes: float, max_requests: int
    ) -> RateLimitResult:
        """
        Count one request against identifier.

        A new window starts when no record exists or the current window
        began before ``now - window_minutes``. Within an active window the
        count is incremented, and requests are rejected once
        ``count >= max_requests``.

        Args:
            identifier: Caller identifier (e.g., IP, public key).
            window_minutes: Window length in minutes.
            max_requests: Requests allowed per window.

        Returns:
            RateLimitResult with allowed status, current count and reset time.
        """
        pass


class MemoryRateLimitStore(MemoryStore[RateLimitRecord], RateLimitStoreInterface):
    """
    In-memory fixed-window rate limiter.

    Suitable for single-instance deployments. For multi-instance
    deployments, use RedisRateLimitStore.

    Example:
        >>> limiter = MemoryRateLimitStore()
        >>> result = await limiter.increment("203.0.113.7", window_minutes=15, max_requests=10)
        >>> if not result.allowed:
        ...     raise RateLimitExceeded(retry_after=result.retry_after)
    """

    async def increment(
        self, identifier: str, window_minutes: float, max_requests: int
    ) -> RateLimitResult:
        async with self._lock:
            self._maybe_cleanup()

            now = self._clock()
            window = timedelta(minutes=window_minutes)
            record = self._get_unlocked(identifier)

            if record is None or record.window_start < now - window:
                record = RateLimitRecord(count=1, window_start=now, expires_at=now + window)
                self._records[identifier] = record
                return RateLimitResult(allowed=True, count=1, reset_time=record.expires_at)

            if record.count >= max_requests:
                return RateLimitResult(
                    allowed=False,
                    count=record.count,
                    reset_time=record.expires_at,
                    retry_after=max(0.0, (record.expires_at - now).total_seconds()),
                )

            record.count += 1
            return RateLimitResult(allowed=True, count=record.count, reset_time=record.expires_at)


# KEYS[1] = counter key; ARGV = now_ms, window_ms, max_requests.
# Returns {allowed (0/1), count, reset_ms}.
_INCREMENT_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])
local record = nil
if raw then
  local ok, decoded = pcall(cjson.decode, raw)
  if ok then record = decoded end
end
if (not record) or record.windowStart < now - window or record.expiresAt <= now then
  record = {count = 1, windowStart = now, expiresAt = now + window}
  redis.call('SET', KEYS[1], cjson.encode(record), 'PX', window)
  return {1, 1, record.expiresAt}
end
if record.count >= max_requests then
  return {0, record.count, record.expiresAt}
end
record.count = record.count + 1
redis.call('SET', KEYS[1], cjson.encode(record), 'PX', record.expiresAt - now)
return {1, record.count, record.expiresAt}
"""


class RedisRateLimitStore(RedisStore[RateLimitRecord], RateLimitStoreInterface):
    """
    Redis-backed fixed-window rate limiter.

    The read-modify-write runs as one Lua script, so concurrent bursts from
    many instances are counted exactly.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> limiter = RedisRateLimitStore(client)
        >>> result = await limiter.increment("203.0.113.7", 15, 10)
    """

    def __init__(self, redis_client, key_prefix: str = "siwa:ratelimit:", clock: Clock = utcnow):
        super().__init__(redis_client, RateLimitRecord, key_prefix=key_prefix, clock=clock)

    async def increment(
        self, identifier: str, window_minutes: float, max_requests: int
    ) -> RateLimitResult:
        now = self._clock()
        now_ms = _to_ms(now)
        window_ms = int(window_minutes * 60 * 1000)
        try:
            allowed, count, reset_ms = await self._redis.eval(
                _INCREMENT_SCRIPT, 1, self._key(identifier), now_ms, window_ms, max_requests
            )
        except (RedisError, OSError) as e:
            logger.error(f"Redis rate limit error: {e}")
            raise StoreUnavailableError(f"Redis rate limit failed: {e}") from e

        reset_time = _from_ms(int(reset_ms))
        if int(allowed):
            return RateLimitResult(allowed=True, count=int(count), reset_time=reset_time)
        return RateLimitResult(
            allowed=False,
            count=int(count),
            reset_time=reset_time,
            retry_after=max(0.0, (reset_time - now).total_seconds()),
        )
