"""
SIWA - Sign In With Agent.

Wallet-based challenge/response authentication for autonomous agents:
a service issues a human-readable challenge, the agent signs it with its
Ed25519 key, and the service exchanges a valid signature for a session.
"""

__version__ = "1.0.0"
SIWA_VERSION = __version__

# Message codec
from .message import (
    MESSAGE_VERSION,
    Message,
    TimingResult,
    create_message,
    parse_message,
    serialize_message,
    validate_timing,
)
from .nonce import generate_nonce

# Verification
from .verify import VerificationResult, is_valid_solana_address, verify, verify_signature_only
from .keys import KeyPair

# Errors
from .errors import (
    SIWAError,
    MessageError,
    InvalidDomain,
    InvalidURI,
    InvalidAddress,
    InvalidMessage,
    VerificationError,
    NonceInvalidOrExpired,
    Unauthorized,
    RateLimitExceeded,
    StoreUnavailableError,
)

from .config import ServerConfig


# Server, stores and client (lazy imports keep prometheus_client and httpx
# out of codec-only use)
def __getattr__(name):
    """Lazy loading of server-side and client components."""
    if name in ("SIWAServer", "Challenge", "Session", "AuthContext", "create_redis_stores"):
        from . import server

        return getattr(server, name)
    elif name in ("MemoryNonceStore", "RedisNonceStore", "NonceStoreInterface", "NonceRecord"):
        from . import nonce

        return getattr(nonce, name)
    elif name in (
        "MemorySessionStore",
        "RedisSessionStore",
        "SessionStoreInterface",
        "SessionRecord",
    ):
        from . import session

        return getattr(session, name)
    elif name in (
        "MemoryRateLimitStore",
        "RedisRateLimitStore",
        "RateLimitStoreInterface",
        "RateLimitResult",
    ):
        from . import ratelimit

        return getattr(ratelimit, name)
    elif name in ("ExpiringStore", "MemoryStore", "RedisStore"):
        from . import store

        return getattr(store, name)
    elif name == "SIWAMetrics":
        from .metrics import SIWAMetrics

        return SIWAMetrics
    elif name in ("SIWAClient", "SIWAClientError", "SignedMessage", "create_client"):
        from . import client

        return getattr(client, name)
    raise AttributeError(f"module 'siwa' has no attribute '{name}'")


__all__ = [
    "__version__",
    "SIWA_VERSION",
    # Message
    "MESSAGE_VERSION",
    "Message",
    "TimingResult",
    "create_message",
    "parse_message",
    "serialize_message",
    "validate_timing",
    "generate_nonce",
    # Verification
    "VerificationResult",
    "is_valid_solana_address",
    "verify",
    "verify_signature_only",
    "KeyPair",
    # Errors
    "SIWAError",
    "MessageError",
    "InvalidDomain",
    "InvalidURI",
    "InvalidAddress",
    "InvalidMessage",
    "VerificationError",
    "NonceInvalidOrExpired",
    "Unauthorized",
    "RateLimitExceeded",
    "StoreUnavailableError",
    # Config
    "ServerConfig",
    # Server (lazy loaded)
    "SIWAServer",
    "Challenge",
    "Session",
    "AuthContext",
    "create_redis_stores",
    # Stores
    "ExpiringStore",
    "MemoryStore",
    "RedisStore",
    "NonceStoreInterface",
    "NonceRecord",
    "MemoryNonceStore",
    "RedisNonceStore",
    "SessionStoreInterface",
    "SessionRecord",
    "MemorySessionStore",
    "RedisSessionStore",
    "RateLimitStoreInterface",
    "RateLimitResult",
    "MemoryRateLimitStore",
    "RedisRateLimitStore",
    # Metrics
    "SIWAMetrics",
    # Client
    "SIWAClient",
    "SIWAClientError",
    "SignedMessage",
    "create_client",
]
