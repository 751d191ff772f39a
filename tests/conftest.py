"""
Shared pytest fixtures for SIWA tests.
"""

import fnmatch
from datetime import datetime, timedelta, timezone

import pytest

from siwa.config import ServerConfig
from siwa.keys import KeyPair
from siwa.nonce import MemoryNonceStore
from siwa.ratelimit import MemoryRateLimitStore
from siwa.session import MemorySessionStore
from siwa.server import SIWAServer

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock for expiry tests."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeRedis:
    """
    In-memory stand-in for the redis.asyncio client methods the stores use.

    TTLs are tracked against the shared FakeClock so tests can expire keys.
    """

    def __init__(self, clock: FakeClock):
        self._clock = clock
        self._data = {}
        self.calls = []

    def _live(self, key):
        item = self._data.get(key)
        if item is None:
            return None
        value, expires = item
        if expires is not None and expires <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key):
        self.calls.append(("get", key))
        return self._live(key)

    async def set(self, key, value, px=None):
        self.calls.append(("set", key, px))
        expires = self._clock() + timedelta(milliseconds=px) if px else None
        self._data[key] = (value.encode("utf-8") if isinstance(value, str) else value, expires)
        return True

    async def getdel(self, key):
        self.calls.append(("getdel", key))
        value = self._live(key)
        self._data.pop(key, None)
        return value

    async def delete(self, *keys):
        self.calls.append(("delete",) + keys)
        return sum(1 for key in keys if self._data.pop(key, None) is not None)

    async def ping(self):
        return True

    def keys(self, pattern="*"):
        return [key for key in self._data if fnmatch.fnmatch(key, pattern)]


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at T0 until advanced."""
    return FakeClock()


@pytest.fixture
def fake_redis(clock: FakeClock) -> FakeRedis:
    """Fake async Redis client sharing the test clock."""
    return FakeRedis(clock)


@pytest.fixture
def keypair() -> KeyPair:
    """Generate a fresh agent keypair."""
    return KeyPair.generate()


@pytest.fixture
def other_keypair() -> KeyPair:
    """A second, unrelated agent keypair."""
    return KeyPair.generate()


@pytest.fixture
def config() -> ServerConfig:
    """Server config for api.example.com."""
    return ServerConfig(
        domain="api.example.com",
        uri="https://api.example.com",
        statement="Sign in to Example API",
        resources=["read:data"],
    )


@pytest.fixture
def server(config: ServerConfig, clock: FakeClock) -> SIWAServer:
    """Server with in-memory stores driven by the test clock."""
    return SIWAServer(
        config,
        nonce_store=MemoryNonceStore(clock=clock),
        session_store=MemorySessionStore(clock=clock),
        rate_limit_store=MemoryRateLimitStore(clock=clock),
        clock=clock,
    )
