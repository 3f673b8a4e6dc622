"""
Cryptographic operations for account identities.

Accounts are identified by an address derived from their Ed25519 public
key. Keys and signatures travel as base58 text.
"""
import hashlib
import logging
from typing import Optional

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)
from cryptography.hazmat.primitives.serialization import (
    Encoding, PrivateFormat, PublicFormat, NoEncryption
)

logger = logging.getLogger(__name__)

ADDRESS_PREFIX = "acct1"


def derive_address(public_key: bytes) -> str:
    """
    Derive an account address from a raw Ed25519 public key.

    Args:
        public_key: Raw 32-byte Ed25519 public key

    Returns:
        Address string, ``acct1`` followed by base58 of the key hash
    """
    digest = hashlib.sha256(b"\xed\x01" + public_key).digest()[:20]
    return ADDRESS_PREFIX + base58.b58encode(digest).decode("ascii")


def encode_key(public_key: bytes) -> str:
    return base58.b58encode(public_key).decode("ascii")


def decode_key(text: str) -> bytes:
    """
    Decode a base58 public key or signature.

    Raises:
        ValueError: If the text is not valid base58
    """
    try:
        return base58.b58decode(text)
    except Exception as e:
        raise ValueError(f"Invalid base58 value: {e}") from e


def verify_signature(public_key_b58: str, signature_b58: str, message: bytes) -> bool:
    """
    Verify an Ed25519 signature given as base58 text.

    Returns:
        True if the signature is valid, False for a bad signature or a
        malformed key
    """
    try:
        public_key = Ed25519PublicKey.from_public_bytes(decode_key(public_key_b58))
        public_key.verify(decode_key(signature_b58), message)
        return True
    except (InvalidSignature, ValueError):
        return False


class Keypair:
    """
    An Ed25519 signing key bound to its account address.
    """

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None):
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self.public_key_bytes = self._private_key.public_key().public_bytes(
            Encoding.Raw, PublicFormat.Raw
        )
        self.public_key = encode_key(self.public_key_bytes)
        self.address = derive_address(self.public_key_bytes)

    @classmethod
    def generate(cls) -> "Keypair":
        keypair = cls()
        logger.debug("Generated keypair for %s…", keypair.address[:10])
        return keypair

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        """
        Deterministically derive a keypair from arbitrary seed bytes.

        Only intended for tests and fixtures: the seed is hashed to 32 bytes.
        """
        return cls(Ed25519PrivateKey.from_private_bytes(hashlib.sha256(seed).digest()))

    def private_bytes(self) -> bytes:
        return self._private_key.private_bytes(
            encoding=Encoding.Raw,
            format=PrivateFormat.Raw,
            encryption_algorithm=NoEncryption(),
        )

    def sign(self, message: bytes) -> str:
        """Sign ``message`` and return the base58 signature."""
        return encode_key(self._private_key.sign(message))

    def __repr__(self) -> str:
        return f"Keypair(address={self.address!r})"
