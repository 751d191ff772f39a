"""
Integration tests for the SIWA server: challenge, verify, sessions.
"""

import asyncio
import base64
import hashlib

import pytest

from siwa.config import ServerConfig
from siwa.errors import (
    ChallengeMismatch,
    DomainMismatch,
    InvalidDomain,
    InvalidPublicKey,
    MessageExpired,
    NonceInvalidOrExpired,
    PublicKeyMismatch,
    RateLimitExceeded,
    SignatureVerificationFailed,
    Unauthorized,
    VerificationError,
)
from siwa.message import create_message, parse_message, serialize_message
from siwa.metrics import SIWAMetrics
from siwa.nonce import MemoryNonceStore
from siwa.server import SIWAServer, create_redis_stores
from siwa.session import MemorySessionStore


async def _sign_in(server, keypair):
    challenge = await server.create_challenge(keypair.address)
    return await server.verify_signature(
        challenge.message, keypair.address, keypair.sign_base58(challenge.message)
    )


class TestServerInit:
    """Construction tests."""

    def test_defaults(self):
        """A server can be built with no arguments."""
        server = SIWAServer()
        assert server.config.domain == "localhost"
        assert server.rate_limit_store is not None

    def test_invalid_domain(self):
        """A malformed configured domain is rejected at startup."""
        with pytest.raises(InvalidDomain):
            SIWAServer(ServerConfig(domain="not a domain"))

    def test_rate_limit_disabled(self):
        """Disabling rate limiting drops the limiter."""
        server = SIWAServer(ServerConfig(rate_limit_enabled=False))
        assert server.rate_limit_store is None


class TestCreateChallenge:
    """create_challenge() tests."""

    @pytest.mark.asyncio
    async def test_challenge_contents(self, server, keypair, clock):
        """The challenge message is bound to the server's domain and the agent."""
        challenge = await server.create_challenge(keypair.address)
        message = parse_message(challenge.message)

        assert message.domain == "api.example.com"
        assert message.address == keypair.address
        assert message.uri == "https://api.example.com"
        assert message.statement == "Sign in to Example API"
        assert message.resources == ["read:data"]
        assert len(message.nonce) == 32
        assert message.issued_at == "2025-01-15T12:00:00.000Z"
        assert challenge.expires_at == "2025-01-15T12:05:00.000Z"

    @pytest.mark.asyncio
    async def test_challenge_id_and_hash(self, server, keypair):
        """challenge_id derives from the nonce; message_hash from the text."""
        challenge = await server.create_challenge(keypair.address)
        nonce = parse_message(challenge.message).nonce

        nonce_hash = base64.urlsafe_b64encode(hashlib.sha256(nonce.encode()).digest()).decode()
        text_hash = base64.urlsafe_b64encode(hashlib.sha256(challenge.message.encode()).digest())
        assert challenge.challenge_id == "ch_" + nonce_hash[:16]
        assert challenge.message_hash == text_hash.decode().rstrip("=")

    @pytest.mark.asyncio
    async def test_to_dict(self, server, keypair):
        """Challenges serialize with camelCase keys."""
        data = (await server.create_challenge(keypair.address)).to_dict()
        assert set(data) == {"challengeId", "message", "messageHash", "expiresAt"}

    @pytest.mark.asyncio
    async def test_nonce_stored(self, server, keypair):
        """The pending challenge is recorded against its nonce."""
        challenge = await server.create_challenge(keypair.address)
        nonce = parse_message(challenge.message).nonce

        record = await server.nonce_store.get(nonce)
        assert record.pubkey == keypair.address
        assert record.message == challenge.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pubkey", ["", "invalid", "0x1234567890abcdef"])
    async def test_invalid_pubkey(self, server, pubkey):
        """Invalid public keys are refused before any state is written."""
        with pytest.raises(InvalidPublicKey):
            await server.create_challenge(pubkey)
        assert len(server.nonce_store) == 0

    @pytest.mark.asyncio
    async def test_rate_limited(self, server, keypair):
        """The 11th challenge from one client in the window is refused."""
        for _ in range(10):
            await server.create_challenge(keypair.address, client_id="203.0.113.7")

        with pytest.raises(RateLimitExceeded) as exc_info:
            await server.create_challenge(keypair.address, client_id="203.0.113.7")

        assert exc_info.value.retry_after == 15 * 60
        assert str(exc_info.value) == "Rate limit exceeded: max 10 requests per 15 minutes"
        assert exc_info.value.http_status == 429

    @pytest.mark.asyncio
    async def test_rate_limit_needs_client_id(self, server, keypair):
        """Without a client id the limiter is not consulted."""
        for _ in range(12):
            await server.create_challenge(keypair.address)

    @pytest.mark.asyncio
    async def test_check_rate_limit_disabled(self, keypair):
        """check_rate_limit always allows when disabled."""
        server = SIWAServer(ServerConfig(rate_limit_enabled=False))
        for _ in range(20):
            assert (await server.check_rate_limit("client")).allowed is True


class TestVerifySignature:
    """verify_signature() tests."""

    @pytest.mark.asyncio
    async def test_success(self, server, keypair):
        """A signed challenge yields a session carrying the message scopes."""
        session = await _sign_in(server, keypair)

        assert session.token.startswith("siwa_")
        assert session.address == keypair.address
        assert session.scopes == ["read:data"]
        assert session.expires_at == "2025-01-15T13:00:00.000Z"

        record = await server.validate_session(session.token)
        assert record.address == keypair.address
        assert record.message["domain"] == "api.example.com"

    @pytest.mark.asyncio
    async def test_replay_rejected(self, server, keypair):
        """The same signed challenge cannot be used twice."""
        challenge = await server.create_challenge(keypair.address)
        signature = keypair.sign_base58(challenge.message)

        await server.verify_signature(challenge.message, keypair.address, signature)
        with pytest.raises(NonceInvalidOrExpired) as exc_info:
            await server.verify_signature(challenge.message, keypair.address, signature)
        assert str(exc_info.value) == "Invalid or expired nonce"

    @pytest.mark.asyncio
    async def test_concurrent_verify_single_session(self, server, keypair):
        """Concurrent verifications of one challenge produce exactly one session."""
        challenge = await server.create_challenge(keypair.address)
        signature = keypair.sign_base58(challenge.message)

        results = await asyncio.gather(
            *(
                server.verify_signature(challenge.message, keypair.address, signature)
                for _ in range(5)
            ),
            return_exceptions=True,
        )

        sessions = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(sessions) == 1
        assert all(isinstance(f, NonceInvalidOrExpired) for f in failures)

    @pytest.mark.asyncio
    async def test_unknown_nonce(self, server, keypair, clock):
        """A self-made message with a nonce the server never issued is rejected."""
        text = serialize_message(
            create_message(
                domain="api.example.com",
                address=keypair.address,
                uri="https://api.example.com",
                now=clock(),
            )
        )
        with pytest.raises(NonceInvalidOrExpired):
            await server.verify_signature(text, keypair.address, keypair.sign_base58(text))

    @pytest.mark.asyncio
    async def test_expired_challenge(self, server, keypair, clock):
        """Challenges signed after expiry are rejected."""
        challenge = await server.create_challenge(keypair.address)
        clock.advance(minutes=6)

        with pytest.raises(MessageExpired):
            await server.verify_signature(
                challenge.message, keypair.address, keypair.sign_base58(challenge.message)
            )

    @pytest.mark.asyncio
    async def test_wrong_domain(self, server, keypair, clock):
        """A message for another domain is rejected before the nonce is touched."""
        text = serialize_message(
            create_message(
                domain="evil.example.com",
                address=keypair.address,
                uri="https://evil.example.com",
                now=clock(),
            )
        )
        with pytest.raises(DomainMismatch):
            await server.verify_signature(text, keypair.address, keypair.sign_base58(text))

    @pytest.mark.asyncio
    async def test_bad_signature_keeps_nonce(self, server, keypair, other_keypair):
        """A bad signature does not consume the challenge."""
        challenge = await server.create_challenge(keypair.address)

        with pytest.raises(SignatureVerificationFailed):
            await server.verify_signature(
                challenge.message, keypair.address, other_keypair.sign_base58(challenge.message)
            )

        session = await server.verify_signature(
            challenge.message, keypair.address, keypair.sign_base58(challenge.message)
        )
        assert session.address == keypair.address

    @pytest.mark.asyncio
    async def test_challenge_for_other_key(self, server, keypair, other_keypair, clock):
        """A nonce issued to one key cannot be redeemed by another."""
        challenge = await server.create_challenge(keypair.address)
        nonce = parse_message(challenge.message).nonce
        text = serialize_message(
            create_message(
                domain="api.example.com",
                address=other_keypair.address,
                uri="https://api.example.com",
                nonce=nonce,
                now=clock(),
            )
        )

        with pytest.raises(PublicKeyMismatch):
            await server.verify_signature(
                text, other_keypair.address, other_keypair.sign_base58(text)
            )

    @pytest.mark.asyncio
    async def test_altered_challenge_rejected(self, server, keypair, clock):
        """Re-signing an issued nonce with extra resources does not grant them."""
        challenge = await server.create_challenge(keypair.address)
        nonce = parse_message(challenge.message).nonce
        text = serialize_message(
            create_message(
                domain="api.example.com",
                address=keypair.address,
                uri="https://api.example.com",
                nonce=nonce,
                resources=["admin"],
                now=clock(),
            )
        )

        with pytest.raises(ChallengeMismatch):
            await server.verify_signature(text, keypair.address, keypair.sign_base58(text))

    @pytest.mark.asyncio
    async def test_errors_are_verification_errors(self, server, keypair):
        """Every rejection is a 401-class VerificationError."""
        with pytest.raises(VerificationError) as exc_info:
            await server.verify_signature("garbage", keypair.address, "sig")
        assert exc_info.value.http_status == 401


class TestSessions:
    """Session lifecycle tests."""

    @pytest.mark.asyncio
    async def test_session_expires(self, server, keypair, clock):
        """Sessions stop validating after their lifetime."""
        session = await _sign_in(server, keypair)
        clock.advance(minutes=60)
        assert await server.validate_session(session.token) is None

    @pytest.mark.asyncio
    async def test_revoke(self, server, keypair):
        """Revoked sessions no longer validate; revoking twice is harmless."""
        session = await _sign_in(server, keypair)

        await server.revoke_session(session.token)
        assert await server.validate_session(session.token) is None
        await server.revoke_session(session.token)

    @pytest.mark.asyncio
    async def test_unknown_token(self, server):
        """Unknown and empty tokens do not validate."""
        assert await server.validate_session("siwa_unknown") is None
        assert await server.validate_session("") is None


class TestAuthenticate:
    """Bearer-token authentication tests."""

    @pytest.mark.asyncio
    async def test_valid_token(self, server, keypair):
        """A valid bearer token resolves to the agent identity."""
        session = await _sign_in(server, keypair)
        ctx = await server.authenticate(f"Bearer {session.token}")

        assert ctx.address == keypair.address
        assert ctx.scopes == ["read:data"]

    @pytest.mark.asyncio
    async def test_missing_header(self, server):
        """A missing header is refused when auth is required."""
        with pytest.raises(Unauthorized, match="Authorization header required"):
            await server.authenticate(None)

    @pytest.mark.asyncio
    async def test_missing_header_optional(self, server):
        """A missing header yields None when auth is optional."""
        assert await server.authenticate(None, required=False) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", ["Basic abc", "Bearer", "Bearer a b", "token"])
    async def test_malformed_header(self, server, header):
        """Headers not of the form 'Bearer <token>' are refused."""
        with pytest.raises(Unauthorized, match="Invalid authorization header"):
            await server.authenticate(header)

    @pytest.mark.asyncio
    async def test_unknown_session(self, server):
        """Unknown tokens are refused, or None when optional."""
        with pytest.raises(Unauthorized, match="Invalid or expired session"):
            await server.authenticate("Bearer siwa_nope")
        assert await server.authenticate("Bearer siwa_nope", required=False) is None


class TestEndToEnd:
    """Full flows across the public API."""

    @pytest.mark.asyncio
    async def test_sign_in_replay_and_revoke(self, server, keypair):
        """Sign in, reject replay, use the session, revoke it."""
        challenge = await server.create_challenge(keypair.address, client_id="agent-1")
        signature = keypair.sign_base58(challenge.message)

        session = await server.verify_signature(challenge.message, keypair.address, signature)
        assert (await server.authenticate(f"Bearer {session.token}")).address == keypair.address

        with pytest.raises(NonceInvalidOrExpired):
            await server.verify_signature(challenge.message, keypair.address, signature)

        await server.revoke_session(session.token)
        with pytest.raises(Unauthorized):
            await server.authenticate(f"Bearer {session.token}")

    @pytest.mark.asyncio
    async def test_redis_backed_server(self, config, keypair, clock, fake_redis):
        """The same flow works against Redis-backed nonce and session stores."""
        stores = create_redis_stores(fake_redis, clock=clock)
        stores.pop("rate_limit_store")
        server = SIWAServer(
            ServerConfig(domain=config.domain, uri=config.uri, rate_limit_enabled=False),
            clock=clock,
            **stores,
        )

        session = await _sign_in(server, keypair)

        assert any(call[0] == "getdel" for call in fake_redis.calls)
        assert fake_redis.keys("siwa:session:*") == [f"siwa:session:{session.token}"]
        assert fake_redis.keys("siwa:nonce:*") == []
        assert (await server.validate_session(session.token)).address == keypair.address

    def test_create_redis_stores_prefixes(self, fake_redis):
        """create_redis_stores namespaces each store under the shared prefix."""
        stores = create_redis_stores(fake_redis, key_prefix="app:")
        assert stores["nonce_store"]._key("n") == "app:nonce:n"
        assert stores["session_store"]._key("t") == "app:session:t"
        assert stores["rate_limit_store"]._key("c") == "app:ratelimit:c"

    def test_create_redis_stores_uses_config_prefix(self, fake_redis):
        """The prefix comes from SIWA_REDIS_PREFIX via the server config."""
        config = ServerConfig.from_env({"SIWA_REDIS_PREFIX": "tenant1:"})
        stores = create_redis_stores(fake_redis, config)

        assert stores["nonce_store"]._key("n") == "tenant1:nonce:n"
        assert stores["session_store"]._key("t") == "tenant1:session:t"
        assert stores["rate_limit_store"]._key("c") == "tenant1:ratelimit:c"

    def test_create_redis_stores_explicit_prefix_wins(self, fake_redis):
        """An explicit key_prefix overrides the config."""
        stores = create_redis_stores(
            fake_redis, ServerConfig(redis_key_prefix="tenant1:"), key_prefix="app:"
        )
        assert stores["nonce_store"]._key("n") == "app:nonce:n"

    @pytest.mark.asyncio
    async def test_redis_backed_server_config_prefix(self, keypair, clock, fake_redis):
        """Records land under the configured prefix during a full sign-in."""
        config = ServerConfig(
            domain="api.example.com",
            uri="https://api.example.com",
            rate_limit_enabled=False,
            redis_key_prefix="tenant1:",
        )
        stores = create_redis_stores(fake_redis, config, clock=clock)
        stores.pop("rate_limit_store")
        server = SIWAServer(config, clock=clock, **stores)

        session = await _sign_in(server, keypair)

        assert fake_redis.keys("tenant1:session:*") == [f"tenant1:session:{session.token}"]
        assert fake_redis.keys("siwa:*") == []


class TestServerMetrics:
    """Metrics integration tests."""

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, config, keypair, clock):
        """Challenges, outcomes, replays and sessions are counted."""
        metrics = SIWAMetrics()
        server = SIWAServer(
            config,
            nonce_store=MemoryNonceStore(clock=clock),
            session_store=MemorySessionStore(clock=clock),
            metrics=metrics,
            clock=clock,
        )

        challenge = await server.create_challenge(keypair.address)
        signature = keypair.sign_base58(challenge.message)
        session = await server.verify_signature(challenge.message, keypair.address, signature)
        with pytest.raises(NonceInvalidOrExpired):
            await server.verify_signature(challenge.message, keypair.address, signature)
        await server.revoke_session(session.token)

        stats = metrics.get_stats()
        assert stats["challenges_issued"] == 1
        assert stats["verifications_success"] == 1
        assert stats["verifications_failure"] == 1
        assert stats["failures_nonce_invalid_or_expired"] == 1
        assert stats["replays_blocked"] == 1
        assert stats["sessions_issued"] == 1
        assert stats["sessions_revoked"] == 1
        assert stats["verification_duration_count"] == 2
