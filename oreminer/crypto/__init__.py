"""
ORE Miner Cryptography

Keccak/SHA-256 hashing, ed25519 keypairs and program-derived addresses.
"""

from .hashing import keccak256, sha256
from .keys import (
    Pubkey,
    Keypair,
    to_pubkey,
    load_keypair_file,
    read_keys,
    write_keypair_file,
    find_program_address,
    create_program_address,
    is_on_curve,
)

__all__ = [
    "keccak256",
    "sha256",
    "Pubkey",
    "Keypair",
    "to_pubkey",
    "load_keypair_file",
    "read_keys",
    "write_keypair_file",
    "find_program_address",
    "create_program_address",
    "is_on_curve",
]
