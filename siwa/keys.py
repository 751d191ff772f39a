"""
SIWA Key Management.

Ed25519 keypairs in the Solana wallet layout (base58 addresses, 64-byte
secret keys made of seed + public key), plus the curve-point check used
to reject public keys that are well-formed text but not real keys.
"""

from dataclasses import dataclass
from typing import Union

import base58
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from solders.pubkey import Pubkey


def is_on_curve(key_bytes: bytes) -> bool:
    """
    Return True if key_bytes is the compressed encoding of an Ed25519 point.

    Uses the same decompression as Solana's own ``PublicKey.isOnCurve``, so
    non-canonical encodings the runtime accepts are accepted here too.
    """
    if len(key_bytes) != 32:
        return False
    return Pubkey.from_bytes(bytes(key_bytes)).is_on_curve()


def _raw_public_bytes(private_key: Ed25519PrivateKey) -> bytes:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw
    )


@dataclass
class KeyPair:
    """
    An agent's Ed25519 signing identity.

    Example:
        >>> keypair = KeyPair.generate()  # or:
        >>> keypair = KeyPair.from_secret_key(os.environ["AGENT_SECRET_KEY"])
        >>> signature = keypair.sign_base58(challenge_text)
    """

    private_key: Ed25519PrivateKey

    @classmethod
    def generate(cls) -> "KeyPair":
        """Generate a fresh keypair."""
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_secret_key(cls, secret_key: Union[bytes, str]) -> "KeyPair":
        """
        Load a keypair from a secret key.

        Args:
            secret_key: 32-byte seed, or 64-byte seed+public key as used by
                Solana wallets, as raw bytes or base58 text.

        Raises:
            ValueError: If the key has the wrong size or its public half
                does not match the seed.
        """
        if isinstance(secret_key, str):
            secret_key = base58.b58decode(secret_key)
        if len(secret_key) not in (32, 64):
            raise ValueError(f"Secret key must be 32 or 64 bytes, got {len(secret_key)}")

        private_key = Ed25519PrivateKey.from_private_bytes(bytes(secret_key[:32]))
        if len(secret_key) == 64 and bytes(secret_key[32:]) != _raw_public_bytes(private_key):
            raise ValueError("Secret key public half does not match its seed")
        return cls(private_key)

    @property
    def public_key_bytes(self) -> bytes:
        return _raw_public_bytes(self.private_key)

    @property
    def address(self) -> str:
        """Base58 public key."""
        return base58.b58encode(self.public_key_bytes).decode("ascii")

    @property
    def secret_key(self) -> bytes:
        """64-byte seed + public key."""
        seed = self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return seed + self.public_key_bytes

    def sign(self, message: Union[str, bytes]) -> bytes:
        """Sign the exact UTF-8 bytes of message. Returns a 64-byte signature."""
        if isinstance(message, str):
            message = message.encode("utf-8")
        return self.private_key.sign(message)

    def sign_base58(self, message: Union[str, bytes]) -> str:
        return base58.b58encode(self.sign(message)).decode("ascii")
