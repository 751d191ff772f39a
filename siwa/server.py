"""
SIWA Server - challenge issuance, verification and sessions.

Composes the message codec, signature verifier and stores into the four
operations an HTTP layer exposes: create_challenge, verify_signature,
validate_session and revoke_session, plus rate limiting and bearer-token
authentication.

The server holds no per-agent state itself. Every check re-reads the
stores, so several server instances can share one Redis deployment.
"""

import base64
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional

from siwa.config import DEFAULT_REDIS_PREFIX, ServerConfig
from siwa.errors import (
    ChallengeMismatch,
    InvalidDomain,
    InvalidPublicKey,
    InvalidURI,
    NonceInvalidOrExpired,
    PublicKeyMismatch,
    RateLimitExceeded,
    Unauthorized,
    VerificationError,
)
from siwa.message import create_message, is_valid_domain, is_valid_uri, serialize_message
from siwa.metrics import SIWAMetrics
from siwa.nonce import MemoryNonceStore, NonceRecord, NonceStoreInterface, RedisNonceStore, generate_nonce
from siwa.ratelimit import (
    MemoryRateLimitStore,
    RateLimitResult,
    RateLimitStoreInterface,
    RedisRateLimitStore,
)
from siwa.session import (
    MemorySessionStore,
    RedisSessionStore,
    SessionRecord,
    SessionStoreInterface,
    generate_session_token,
    token_fingerprint,
)
from siwa.store import Clock, to_iso, utcnow
from siwa.verify import is_valid_solana_address, verify

logger = logging.getLogger(__name__)

CHALLENGE_NONCE_LENGTH = 32


def _b64url_sha256(text: str) -> str:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass
class Challenge:
    """
    A challenge for an agent to sign.

    Attributes:
        challenge_id: Derived from the nonce hash; informational only.
        message: Serialized message text to sign, byte for byte.
        message_hash: base64url SHA-256 of message, for tamper detection.
        expires_at: ISO-8601 time after which the challenge is refused.
    """

    challenge_id: str
    message: str
    message_hash: str
    expires_at: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "challengeId": self.challenge_id,
            "message": self.message,
            "messageHash": self.message_hash,
            "expiresAt": self.expires_at,
        }


@dataclass
class Session:
    """Credential returned to an agent after successful verification."""

    token: str
    address: str
    expires_at: str
    scopes: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "address": self.address,
            "expiresAt": self.expires_at,
            "scopes": list(self.scopes),
        }


@dataclass
class AuthContext:
    """Identity attached to a request that presented a valid session token."""

    address: str
    scopes: List[str]
    session: SessionRecord


class SIWAServer:
    """
    Sign-In-With-Agent authentication server.

    Example:
        >>> server = SIWAServer(ServerConfig(domain="api.example.com",
        ...                                  uri="https://api.example.com"))
        >>> challenge = await server.create_challenge(pubkey, client_id=request_ip)
        >>> # agent signs challenge.message
        >>> session = await server.verify_signature(challenge.message, pubkey, signature)
        >>> ctx = await server.authenticate(f"Bearer {session.token}")

    For multi-instance deployments pass Redis-backed stores::

        >>> server = SIWAServer(config, **create_redis_stores(redis_client, config))
    """

    def __init__(
        self,
        config: Optional[ServerConfig] = None,
        nonce_store: Optional[NonceStoreInterface] = None,
        session_store: Optional[SessionStoreInterface] = None,
        rate_limit_store: Optional[RateLimitStoreInterface] = None,
        metrics: Optional[SIWAMetrics] = None,
        clock: Clock = utcnow,
    ):
        """
        Initialize the server.

        Args:
            config: Server settings (defaults to ServerConfig()).
            nonce_store: Pending-challenge store (in-memory if None).
            session_store: Session store (in-memory if None).
            rate_limit_store: Rate limit store (in-memory if None). Ignored
                when config.rate_limit_enabled is False.
            metrics: Optional metrics collector.
            clock: Callable returning the current aware datetime.

        Raises:
            InvalidDomain, InvalidURI: If the configured domain or URI is malformed.
        """
        self.config = config or ServerConfig()
        if not is_valid_domain(self.config.domain):
            raise InvalidDomain(f"Invalid domain format: {self.config.domain!r}")
        if not is_valid_uri(self.config.uri):
            raise InvalidURI(f"Invalid URI format: {self.config.uri!r}")

        self._clock = clock
        self.nonce_store = nonce_store or MemoryNonceStore(clock=clock)
        self.session_store = session_store or MemorySessionStore(clock=clock)
        self.rate_limit_store: Optional[RateLimitStoreInterface] = None
        if self.config.rate_limit_enabled:
            self.rate_limit_store = rate_limit_store or MemoryRateLimitStore(clock=clock)
        self.metrics = metrics

        if not self.nonce_store.atomic_consume:
            logger.warning(
                f"{type(self.nonce_store).__name__} has no atomic delete_and_get; "
                "concurrent verifications of one nonce may both succeed"
            )

    # =========================================================================
    # Rate limiting
    # =========================================================================

    async def check_rate_limit(self, identifier: str) -> RateLimitResult:
        """
        Count a request from identifier against the configured limit.

        Returns an always-allowed result when rate limiting is disabled.
        """
        if self.rate_limit_store is None:
            return RateLimitResult(allowed=True, count=0, reset_time=self._clock())

        result = await self.rate_limit_store.increment(
            identifier, self.config.rate_limit_window_minutes, self.config.rate_limit_max_requests
        )
        if not result.allowed:
            logger.warning(f"Rate limit exceeded for {identifier} ({result.count} requests)")
            if self.metrics:
                self.metrics.record_rate_limit_exceeded()
        return result

    def _rate_limit_error(self, result: RateLimitResult) -> RateLimitExceeded:
        return RateLimitExceeded(
            f"Rate limit exceeded: max {self.config.rate_limit_max_requests} requests "
            f"per {self.config.rate_limit_window_minutes:g} minutes",
            retry_after=result.retry_after,
        )

    # =========================================================================
    # Challenge / verification
    # =========================================================================

    async def create_challenge(self, pubkey: str, client_id: Optional[str] = None) -> Challenge:
        """
        Issue a challenge for pubkey to sign.

        Args:
            pubkey: Agent's base58 public key.
            client_id: Caller identifier for rate limiting (IP or pubkey).

        Raises:
            RateLimitExceeded: If client_id has exhausted its window.
            InvalidPublicKey: If pubkey is not a valid Ed25519 public key.
            StoreUnavailableError: If a backend store cannot be reached.
        """
        if self.rate_limit_store is not None and client_id:
            result = await self.check_rate_limit(client_id)
            if not result.allowed:
                raise self._rate_limit_error(result)

        if not is_valid_solana_address(pubkey):
            raise InvalidPublicKey()

        now = self._clock()
        nonce = generate_nonce(CHALLENGE_NONCE_LENGTH)
        message = create_message(
            domain=self.config.domain,
            address=pubkey,
            uri=self.config.uri,
            statement=self.config.statement,
            chain_id=self.config.chain_id,
            nonce=nonce,
            expiration_minutes=self.config.challenge_expiration_minutes,
            resources=self.config.resources,
            now=now,
        )
        message_text = serialize_message(message)
        expires_at = now + timedelta(minutes=self.config.challenge_expiration_minutes)

        await self.nonce_store.set(
            nonce, NonceRecord(pubkey=pubkey, message=message_text, expires_at=expires_at)
        )

        logger.info(f"Issued challenge for {pubkey}")
        if self.metrics:
            self.metrics.record_challenge()

        return Challenge(
            challenge_id=f"ch_{_b64url_sha256(nonce)[:16]}",
            message=message_text,
            message_hash=_b64url_sha256(message_text),
            expires_at=to_iso(expires_at),
        )

    async def verify_signature(self, message: str, pubkey: str, signature: str) -> Session:
        """
        Verify a signed challenge and mint a session.

        The nonce is consumed before the session is written, so a given
        challenge can produce at most one session.

        Args:
            message: The exact challenge text that was signed.
            pubkey: Agent's base58 public key.
            signature: Base58 or base64 signature over message.

        Raises:
            VerificationError: Subclass describing why verification failed,
                including NonceInvalidOrExpired for unknown, consumed or
                expired challenges.
            StoreUnavailableError: If a backend store cannot be reached.
        """
        if self.metrics:
            with self.metrics.verification_timer():
                result = verify(message, signature, pubkey, domain=self.config.domain, now=self._clock())
        else:
            result = verify(message, signature, pubkey, domain=self.config.domain, now=self._clock())

        try:
            siwa_message = result.raise_for_error()
            record = await self.nonce_store.delete_and_get(siwa_message.nonce)
            if record is None:
                logger.warning(f"Rejected unknown, used or expired nonce from {pubkey}")
                if self.metrics:
                    self.metrics.record_replay_blocked()
                raise NonceInvalidOrExpired()

            if record.pubkey != pubkey:
                logger.warning(f"Nonce issued to {record.pubkey} presented by {pubkey}")
                raise PublicKeyMismatch()

            if record.message != message:
                logger.warning(f"Signed message from {pubkey} differs from the issued challenge")
                raise ChallengeMismatch()
        except VerificationError as e:
            if self.metrics:
                self.metrics.record_verification(False, e.code)
            raise

        token = generate_session_token()
        expires_at = self._clock() + timedelta(minutes=self.config.session_expiration_minutes)
        scopes = list(siwa_message.resources or [])
        await self.session_store.set(
            token,
            SessionRecord(
                address=pubkey,
                expires_at=expires_at,
                scopes=scopes,
                message=siwa_message.to_dict(),
            ),
        )

        logger.info(f"Issued session {token_fingerprint(token)} for {pubkey}")
        if self.metrics:
            self.metrics.record_verification(True)
            self.metrics.record_session("issued")

        return Session(token=token, address=pubkey, expires_at=to_iso(expires_at), scopes=scopes)

    # =========================================================================
    # Sessions
    # =========================================================================

    async def validate_session(self, token: str) -> Optional[SessionRecord]:
        """Return the live session for token, or None if unknown or expired."""
        if not token:
            return None
        return await self.session_store.get(token)

    async def revoke_session(self, token: str) -> None:
        """Delete a session. Revoking an unknown token is a no-op."""
        await self.session_store.delete(token)
        logger.info(f"Revoked session {token_fingerprint(token)}")
        if self.metrics:
            self.metrics.record_session("revoked")

    async def authenticate(
        self, authorization: Optional[str], required: bool = True
    ) -> Optional[AuthContext]:
        """
        Resolve an Authorization header to the caller's identity.

        Args:
            authorization: Raw header value, expected as "Bearer <token>".
            required: When False, a missing header or unknown session yields
                None instead of raising.

        Raises:
            Unauthorized: With the reason, for the HTTP layer to map to 401.
        """
        if not authorization:
            if required:
                raise Unauthorized("Authorization header required")
            return None

        parts = authorization.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
            raise Unauthorized("Invalid authorization header")

        session = await self.validate_session(parts[1])
        if session is None:
            if required:
                raise Unauthorized("Invalid or expired session")
            return None

        return AuthContext(address=session.address, scopes=list(session.scopes), session=session)


def create_redis_stores(
    redis_client,
    config: Optional[ServerConfig] = None,
    key_prefix: Optional[str] = None,
    clock: Clock = utcnow,
) -> Dict[str, object]:
    """
    Build Redis-backed stores sharing one client, namespaced under one prefix.

    Args:
        redis_client: A ``redis.asyncio`` client.
        config: Supplies ``redis_key_prefix`` (``SIWA_REDIS_PREFIX``).
        key_prefix: Explicit prefix, overriding the config.
        clock: Time source for record expiry.

    Returns:
        Keyword arguments for SIWAServer: nonce_store, session_store and
        rate_limit_store.
    """
    if key_prefix is None:
        key_prefix = config.redis_key_prefix if config else DEFAULT_REDIS_PREFIX
    return {
        "nonce_store": RedisNonceStore(redis_client, key_prefix=f"{key_prefix}nonce:", clock=clock),
        "session_store": RedisSessionStore(
            redis_client, key_prefix=f"{key_prefix}session:", clock=clock
        ),
        "rate_limit_store": RedisRateLimitStore(
            redis_client, key_prefix=f"{key_prefix}ratelimit:", clock=clock
        ),
    }
