"""
SIWA Signature Verification.

Checks that a SIWA message was signed by the key it names, is addressed
to the expected domain, carries the expected nonce and is within its
validity window. Failures are reported as structured results; nothing in
this module raises to the caller.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from siwa.errors import ERRORS_BY_CODE, InvalidMessage, VerificationError
from siwa.keys import is_on_curve
from siwa.message import Message, parse_message, validate_timing

logger = logging.getLogger(__name__)

SIGNATURE_LENGTH = 64
PUBLIC_KEY_LENGTH = 32

BytesOrStr = Union[bytes, bytearray, str]


@dataclass
class VerificationResult:
    """
    Result of verify().

    Attributes:
        success: Whether every check passed.
        message: The parsed message on success.
        error: Human-readable failure reason.
        error_code: Stable code matching the SIWAError subclass for the failure.
    """

    success: bool
    message: Optional[Message] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def raise_for_error(self) -> Message:
        """Return the message, or raise the VerificationError subclass for the failure."""
        if self.success:
            return self.message
        error_cls = ERRORS_BY_CODE.get(self.error_code, VerificationError)
        raise error_cls(self.error)


def _fail(error: str, code: str) -> VerificationResult:
    logger.debug(f"SIWA verification failed ({code}): {error}")
    return VerificationResult(success=False, error=error, error_code=code)


def is_valid_solana_address(address: str) -> bool:
    """
    Return True if address is a base58 Ed25519 public key on the curve.

    Textual shape alone is not enough: the decoded 32 bytes must be a
    valid curve point.
    """
    if not address or not isinstance(address, str):
        return False
    try:
        key_bytes = base58.b58decode(address)
    except ValueError:
        return False
    return len(key_bytes) == PUBLIC_KEY_LENGTH and is_on_curve(key_bytes)


def decode_signature(signature: str) -> bytes:
    """
    Decode a base58 or base64 signature.

    Base58 is tried first. Base64 is used when base58 decoding fails, or
    when it does not yield a 64-byte signature but base64 does.

    Raises:
        ValueError: If the text is neither base58 nor base64.
    """
    try:
        as_base58: Optional[bytes] = base58.b58decode(signature)
    except ValueError:
        as_base58 = None
    if as_base58 is not None and len(as_base58) == SIGNATURE_LENGTH:
        return as_base58

    try:
        as_base64: Optional[bytes] = base64.b64decode(signature, validate=True)
    except (binascii.Error, ValueError):
        as_base64 = None

    if as_base64 is not None and (as_base58 is None or len(as_base64) == SIGNATURE_LENGTH):
        return as_base64
    if as_base58 is not None:
        return as_base58
    raise ValueError("Invalid signature encoding (expected base58 or base64)")


def _verify_ed25519(message: bytes, signature: bytes, public_key: bytes) -> bool:
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def verify(
    message_text: str,
    signature: str,
    public_key: str,
    domain: Optional[str] = None,
    nonce: Optional[str] = None,
    skip_time_check: bool = False,
    now: Optional[datetime] = None,
) -> VerificationResult:
    """
    Verify a signed SIWA message.

    Args:
        message_text: The exact text that was signed.
        signature: Base58 (preferred) or base64 Ed25519 signature.
        public_key: Base58 public key of the signer.
        domain: If given, the message domain must equal it.
        nonce: If given, the message nonce must equal it.
        skip_time_check: Skip expiry/not-before/issued-at checks.
        now: Reference time for timing checks (defaults to current UTC time).

    Returns:
        VerificationResult with the parsed message on success.
    """
    try:
        try:
            message = parse_message(message_text)
        except InvalidMessage as e:
            return _fail(f"Failed to parse message: {e.message}", "invalid_message")

        if not is_valid_solana_address(public_key):
            return _fail("Invalid Solana public key", "invalid_public_key")

        if message.address != public_key:
            return _fail("Public key does not match message address", "public_key_mismatch")

        if domain and message.domain != domain:
            return _fail(
                f"Domain mismatch: expected {domain}, got {message.domain}", "domain_mismatch"
            )

        if nonce and message.nonce != nonce:
            return _fail("Nonce mismatch", "nonce_mismatch")

        if not skip_time_check:
            timing = validate_timing(message, now=now)
            if not timing.valid:
                return _fail(timing.error, timing.error_code)

        try:
            signature_bytes = decode_signature(signature)
        except ValueError as e:
            return _fail(str(e), "invalid_signature_encoding")

        if len(signature_bytes) != SIGNATURE_LENGTH:
            return _fail(
                f"Invalid signature length: {len(signature_bytes)} (expected {SIGNATURE_LENGTH})",
                "invalid_signature_length",
            )

        public_key_bytes = base58.b58decode(public_key)
        message_bytes = message_text.encode("utf-8")

        if not _verify_ed25519(message_bytes, signature_bytes, public_key_bytes):
            return _fail("Signature verification failed", "signature_verification_failed")

        return VerificationResult(success=True, message=message)

    except Exception as e:
        logger.warning(f"Unexpected SIWA verification error: {e}")
        return _fail(f"Verification error: {e}", "verification_failed")


def verify_signature_only(
    message: BytesOrStr, signature: BytesOrStr, public_key: BytesOrStr
) -> bool:
    """
    Check an Ed25519 signature without any SIWA message semantics.

    Each argument may be raw bytes or text: message text is UTF-8 encoded,
    signature text is base58 or base64, public key text is base58.
    Returns False on any decoding or verification failure.
    """
    try:
        message_bytes = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        signature_bytes = (
            decode_signature(signature) if isinstance(signature, str) else bytes(signature)
        )
        public_key_bytes = (
            base58.b58decode(public_key) if isinstance(public_key, str) else bytes(public_key)
        )
    except (ValueError, TypeError) as e:
        logger.debug(f"Signature decode failed: {e}")
        return False

    if len(signature_bytes) != SIGNATURE_LENGTH or len(public_key_bytes) != PUBLIC_KEY_LENGTH:
        return False
    return _verify_ed25519(message_bytes, signature_bytes, public_key_bytes)
