"""
SIWA Session Storage.

Sessions are opaque bearer tokens minted after a successful verification.
Every protected-resource access re-reads the store, so revocation and
expiry take effect across all instances sharing a backend.
"""

import hashlib
import secrets
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from siwa.store import Clock, ExpiringStore, MemoryStore, RedisStore, from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

SESSION_TOKEN_PREFIX = "siwa_"


def generate_session_token() -> str:
    """Mint a URL-safe session token with 256 bits of entropy."""
    return f"{SESSION_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def token_fingerprint(token: str) -> str:
    """Short non-reversible identifier for a token, safe to log."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]


@dataclass
class SessionRecord:
    """
    A live session.

    Attributes:
        address: Authenticated agent address.
        expires_at: When the session stops being valid.
        scopes: Resources granted by the signed message.
        message: The verified message, as a field dict.
    """

    address: str
    expires_at: datetime
    scopes: List[str] = field(default_factory=list)
    message: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "expiresAt": to_iso(self.expires_at),
            "scopes": list(self.scopes),
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        return cls(
            address=data["address"],
            expires_at=from_iso(data["expiresAt"]),
            scopes=list(data.get("scopes") or []),
            message=data.get("message"),
        )


class SessionStoreInterface(ExpiringStore[SessionRecord]):
    """Abstract interface for session storage. Last writer wins."""


class MemorySessionStore(MemoryStore[SessionRecord], SessionStoreInterface):
    """
    In-memory session store.

    Example:
        >>> store = MemorySessionStore()
        >>> await store.set(token, SessionRecord(address, expires_at))
    """


class RedisSessionStore(RedisStore[SessionRecord], SessionStoreInterface):
    """
    Redis-backed session store shared across instances.

    Example:
        >>> import redis.asyncio as redis
        >>> store = RedisSessionStore(redis.Redis(host='localhost', port=6379))
    """

    def __init__(self, redis_client, key_prefix: str = "siwa:session:", clock: Clock = utcnow):
        super().__init__(redis_client, SessionRecord, key_prefix=key_prefix, clock=clock)
