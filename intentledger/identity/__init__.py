"""
Identity module for intentledger.

This module handles Ed25519 key pair generation, signing and address
derivation for ledger accounts.
"""
from intentledger.identity.crypto import (
    Keypair, derive_address, encode_key, decode_key, verify_signature, ADDRESS_PREFIX
)

__all__ = [
    'Keypair',
    'derive_address',
    'encode_key',
    'decode_key',
    'verify_signature',
    'ADDRESS_PREFIX',
]
