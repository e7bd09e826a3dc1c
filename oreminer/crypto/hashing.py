"""
ORE Miner Hashing Module

Hash functions used by the miner:
- keccak256: ORE proof-of-work digest (original Keccak padding, not SHA3-256)
- sha256: Solana program-derived address derivation
"""

import hashlib
from typing import Union

from Crypto.Hash import keccak as _keccak


def keccak256(data: Union[bytes, bytearray, memoryview]) -> bytes:
    """
    Compute Keccak-256 hash.

    Args:
        data: Input bytes

    Returns:
        32-byte hash
    """
    k = _keccak.new(digest_bits=256)
    k.update(bytes(data))
    return k.digest()


def sha256(data: Union[bytes, bytearray]) -> bytes:
    """Compute SHA-256 hash."""
    return hashlib.sha256(data).digest()
