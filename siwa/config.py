# siwa/config.py
"""
Centralized configuration for SIWA servers.

All configurable values are read from environment variables with sensible
defaults, so different environments (dev, staging, production) can use
different settings without code changes.

Usage:
    from siwa.config import ServerConfig
    from siwa.server import SIWAServer

    server = SIWAServer(ServerConfig.from_env())

Environment Variables:
    SIWA_DOMAIN: Domain that challenges are bound to (default: localhost)
    SIWA_URI: URI embedded in challenges (default: http://localhost)
    SIWA_STATEMENT: Optional statement shown to the signer
    SIWA_CHAIN_ID: Target network (default: mainnet-beta)
    SIWA_CHALLENGE_TTL_MINUTES: Challenge lifetime (default: 5)
    SIWA_SESSION_TTL_MINUTES: Session lifetime (default: 60)
    SIWA_RATE_LIMIT_ENABLED: Enable challenge rate limiting (default: true)
    SIWA_RATE_LIMIT_MAX_REQUESTS: Challenges per window (default: 10)
    SIWA_RATE_LIMIT_WINDOW_MINUTES: Rate limit window (default: 15)
    SIWA_REDIS_PREFIX: Key prefix for Redis-backed stores (default: siwa:)
"""

import os
from dataclasses import dataclass, field
from typing import Final, List, Mapping, Optional

from siwa.message import DEFAULT_CHAIN_ID

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_DOMAIN: Final[str] = "localhost"
DEFAULT_URI: Final[str] = "http://localhost"
DEFAULT_CHALLENGE_TTL_MINUTES: Final[float] = 5
DEFAULT_SESSION_TTL_MINUTES: Final[float] = 60
DEFAULT_RATE_LIMIT_MAX_REQUESTS: Final[int] = 10
DEFAULT_RATE_LIMIT_WINDOW_MINUTES: Final[float] = 15
DEFAULT_REDIS_PREFIX: Final[str] = "siwa:"

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass
class ServerConfig:
    """
    Settings for a SIWAServer.

    Attributes:
        domain: Domain every challenge is bound to and every signature must match.
        uri: URI embedded in challenges.
        statement: Optional statement included in challenges.
        resources: Scopes requested by every challenge; copied into sessions.
        chain_id: Target network identifier.
        challenge_expiration_minutes: How long an issued challenge stays redeemable.
        session_expiration_minutes: Lifetime of sessions minted on verification.
        rate_limit_enabled: Whether create_challenge consults the rate limiter.
        rate_limit_max_requests: Challenges allowed per identifier per window.
        rate_limit_window_minutes: Rate limit window length.
        redis_key_prefix: Namespace prefix for Redis-backed stores.
    """

    domain: str = DEFAULT_DOMAIN
    uri: str = DEFAULT_URI
    statement: Optional[str] = None
    resources: List[str] = field(default_factory=list)
    chain_id: str = DEFAULT_CHAIN_ID
    challenge_expiration_minutes: float = DEFAULT_CHALLENGE_TTL_MINUTES
    session_expiration_minutes: float = DEFAULT_SESSION_TTL_MINUTES
    rate_limit_enabled: bool = True
    rate_limit_max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS
    rate_limit_window_minutes: float = DEFAULT_RATE_LIMIT_WINDOW_MINUTES
    redis_key_prefix: str = DEFAULT_REDIS_PREFIX

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides) -> "ServerConfig":
        """
        Build a config from environment variables.

        Args:
            env: Mapping to read instead of os.environ (useful in tests).
            **overrides: Field values that take precedence over the environment.

        Raises:
            ValueError: If a numeric or boolean variable is malformed.
        """
        env = os.environ if env is None else env
        values = dict(
            domain=env.get("SIWA_DOMAIN") or DEFAULT_DOMAIN,
            uri=env.get("SIWA_URI") or DEFAULT_URI,
            statement=env.get("SIWA_STATEMENT") or None,
            chain_id=env.get("SIWA_CHAIN_ID") or DEFAULT_CHAIN_ID,
            challenge_expiration_minutes=_env_number(
                env, "SIWA_CHALLENGE_TTL_MINUTES", DEFAULT_CHALLENGE_TTL_MINUTES
            ),
            session_expiration_minutes=_env_number(
                env, "SIWA_SESSION_TTL_MINUTES", DEFAULT_SESSION_TTL_MINUTES
            ),
            rate_limit_enabled=_env_bool(env, "SIWA_RATE_LIMIT_ENABLED", True),
            rate_limit_max_requests=_env_number(
                env, "SIWA_RATE_LIMIT_MAX_REQUESTS", DEFAULT_RATE_LIMIT_MAX_REQUESTS, cast=int
            ),
            rate_limit_window_minutes=_env_number(
                env, "SIWA_RATE_LIMIT_WINDOW_MINUTES", DEFAULT_RATE_LIMIT_WINDOW_MINUTES
            ),
            redis_key_prefix=env.get("SIWA_REDIS_PREFIX") or DEFAULT_REDIS_PREFIX,
        )
        values.update(overrides)
        return cls(**values)
