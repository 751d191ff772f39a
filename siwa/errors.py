"""
SIWA Error Hierarchy.

Every failure the library can report is a concrete exception class with a
stable ``code`` and a recommended ``http_status``, so an HTTP layer can map
errors to responses without string matching.

Hierarchy:
    SIWAError
    +-- MessageError              (400, malformed input)
    |   +-- InvalidDomain
    |   +-- InvalidURI
    |   +-- InvalidAddress
    |   +-- InvalidMessage
    +-- VerificationError         (401, authentication failed)
    |   +-- InvalidPublicKey, DomainMismatch, NonceMismatch, ...
    |   +-- NonceInvalidOrExpired, PublicKeyMismatch, ChallengeMismatch
    |   +-- Unauthorized
    +-- RateLimitExceeded         (429)
    +-- StoreUnavailableError     (503, transient, safe to retry)
"""

from typing import Any, Dict, Optional


class SIWAError(Exception):
    """
    Base exception for all SIWA errors.

    Attributes:
        code: Stable machine-readable error code.
        http_status: Recommended HTTP status code.
        message: Human-readable description.
    """

    code: str = "siwa_error"
    http_status: int = 500
    message: str = "SIWA error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        if message is not None:
            self.message = message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly error body."""
        body: Dict[str, Any] = {"code": self.code, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# Message construction / parsing
# =============================================================================


class MessageError(SIWAError, ValueError):
    """Caller supplied a malformed message or message parameter."""

    code = "invalid_message"
    http_status = 400


class InvalidDomain(MessageError):
    code = "invalid_domain"
    message = "Invalid domain format"


class InvalidURI(MessageError):
    code = "invalid_uri"
    message = "Invalid URI format"


class InvalidAddress(MessageError):
    code = "invalid_address"
    message = "Invalid Solana address format"


class InvalidMessage(MessageError):
    """The message text does not follow the canonical layout."""

    code = "invalid_message"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid SIWA message: {reason}")


# =============================================================================
# Verification
# =============================================================================


class VerificationError(SIWAError):
    """Authentication failed. Not retryable with the same input."""

    code = "verification_failed"
    http_status = 401
    message = "Verification failed"


class InvalidPublicKey(VerificationError):
    code = "invalid_public_key"
    message = "Invalid Solana public key"


class DomainMismatch(VerificationError):
    code = "domain_mismatch"
    message = "Domain mismatch"


class NonceMismatch(VerificationError):
    code = "nonce_mismatch"
    message = "Nonce mismatch"


class MessageExpired(VerificationError):
    code = "message_expired"
    message = "Message has expired"


class MessageNotYetValid(VerificationError):
    code = "message_not_yet_valid"
    message = "Message not yet valid"


class MessageIssuedInFuture(VerificationError):
    code = "message_issued_in_future"
    message = "Message issued in the future"


class InvalidSignatureEncoding(VerificationError):
    code = "invalid_signature_encoding"
    message = "Invalid signature encoding (expected base58 or base64)"


class InvalidSignatureLength(VerificationError):
    code = "invalid_signature_length"
    message = "Invalid signature length"


class SignatureVerificationFailed(VerificationError):
    code = "signature_verification_failed"
    message = "Signature verification failed"


class PublicKeyMismatch(VerificationError):
    code = "public_key_mismatch"
    message = "Public key mismatch"


class NonceInvalidOrExpired(VerificationError):
    code = "nonce_invalid_or_expired"
    message = "Invalid or expired nonce"


class ChallengeMismatch(VerificationError):
    """The signed text differs from the challenge issued for its nonce."""

    code = "challenge_mismatch"
    message = "Signed message does not match the issued challenge"


class Unauthorized(VerificationError):
    """No usable session credential was presented."""

    code = "unauthorized"
    message = "Invalid or expired session"


# =============================================================================
# Rate limiting / infrastructure
# =============================================================================


class RateLimitExceeded(SIWAError):
    code = "rate_limit_exceeded"
    http_status = 429
    message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        if retry_after is not None:
            super().__init__(message, retry_after=retry_after)
        else:
            super().__init__(message)


class StoreUnavailableError(SIWAError):
    """A storage backend could not be reached. Transient; callers may retry."""

    code = "store_unavailable"
    http_status = 503
    message = "Storage backend unavailable"


# Maps the error codes reported by verify() back to exception classes.
ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        InvalidPublicKey,
        DomainMismatch,
        NonceMismatch,
        MessageExpired,
        MessageNotYetValid,
        MessageIssuedInFuture,
        InvalidSignatureEncoding,
        InvalidSignatureLength,
        SignatureVerificationFailed,
        PublicKeyMismatch,
    )
}
