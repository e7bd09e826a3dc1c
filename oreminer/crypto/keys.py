"""
ORE Miner Key Management

Ed25519 keypairs (PyNaCl) and base58 public keys, Solana CLI keypair file
loading, and program-derived address derivation.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence, Tuple, Union

import base58
from nacl.signing import SigningKey

from .hashing import sha256
from ..exceptions import InvalidKeyError, KeyLoadError

logger = logging.getLogger(__name__)

PUBKEY_SIZE = 32
KEYPAIR_FILE_SIZE = 64
MAX_SEED_LENGTH = 32
PDA_MARKER = b"ProgramDerivedAddress"

# Edwards25519 field prime and curve constant d
_P = 2 ** 255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


@dataclass(frozen=True)
class Pubkey:
    """A 32-byte Solana public key."""

    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)):
            raise TypeError("Pubkey expects bytes")
        if len(self.raw) != PUBKEY_SIZE:
            raise InvalidKeyError(f"Pubkey must be {PUBKEY_SIZE} bytes, got {len(self.raw)}")
        object.__setattr__(self, "raw", bytes(self.raw))

    @classmethod
    def from_string(cls, value: str) -> "Pubkey":
        try:
            return cls(base58.b58decode(value))
        except ValueError as e:
            raise InvalidKeyError(f"Invalid base58 pubkey {value!r}: {e}") from e

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return base58.b58encode(self.raw).decode("ascii")

    def __repr__(self) -> str:
        return f"Pubkey({self})"


def to_pubkey(value: Union[Pubkey, str, bytes]) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, str):
        return Pubkey.from_string(value)
    return Pubkey(value)


class Keypair:
    """
    Ed25519 keypair in Solana CLI layout (32-byte seed || 32-byte pubkey).

    The signing key is kept private; callers sign through :meth:`sign`.
    """

    __slots__ = ("_signing_key", "_pubkey")

    def __init__(self, signing_key: SigningKey):
        self._signing_key = signing_key
        self._pubkey = Pubkey(bytes(signing_key.verify_key))

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(SigningKey.generate())

    @classmethod
    def from_bytes(cls, data: Sequence[int]) -> "Keypair":
        """Builds a keypair from the 64-byte Solana CLI representation."""
        data = bytes(data)
        if len(data) != KEYPAIR_FILE_SIZE:
            raise InvalidKeyError(f"Keypair must be {KEYPAIR_FILE_SIZE} bytes, got {len(data)}")
        keypair = cls(SigningKey(data[:32]))
        if keypair.pubkey.raw != data[32:]:
            raise InvalidKeyError("Keypair public half does not match its secret seed")
        return keypair

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def to_json(self) -> str:
        return json.dumps(list(bytes(self._signing_key) + self._pubkey.raw))

    def __repr__(self) -> str:
        return f"Keypair({self._pubkey})"


def load_keypair_file(path: Union[str, Path]) -> Keypair:
    """
    Load one Solana CLI JSON keypair file.

    Raises:
        KeyLoadError: unreadable file or malformed key material
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return Keypair.from_bytes(data)
    except (OSError, ValueError, TypeError, InvalidKeyError) as e:
        raise KeyLoadError(f"Failed to read keypair from {path}: {e}") from e


def read_keys(key_folder: Union[str, Path]) -> List[Keypair]:
    """
    Load every keypair file in *key_folder*, sorted by file name.

    Raises:
        KeyLoadError: missing folder, empty folder, or any bad file
    """
    folder = Path(key_folder)
    if not folder.is_dir():
        raise KeyLoadError(f"Key folder does not exist: {folder}")

    keypairs = [
        load_keypair_file(path)
        for path in sorted(folder.iterdir())
        if path.is_file() and not path.name.startswith(".")
    ]
    if not keypairs:
        raise KeyLoadError(f"No keypairs found in {folder}")

    logger.info("%d keys loaded from %s", len(keypairs), folder)
    return keypairs


def write_keypair_file(keypair: Keypair, path: Union[str, Path]) -> None:
    """Write a keypair in Solana CLI JSON format, readable by the owner only."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(keypair.to_json())


# ==================================================================================
# Program-derived addresses
# ==================================================================================

def is_on_curve(point: bytes) -> bool:
    """True if *point* decompresses to an Edwards25519 curve point."""
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    if y >= _P:
        return False
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    # Euler's criterion: x2 must be zero or a quadratic residue
    return x2 == 0 or pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    for seed in seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed longer than {MAX_SEED_LENGTH} bytes")
    digest = sha256(b"".join(seeds) + program_id.raw + PDA_MARKER)
    if is_on_curve(digest):
        raise ValueError("Derived address lies on the ed25519 curve")
    return Pubkey(digest)


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """Returns the first off-curve address, trying bump seeds from 255 down."""
    for bump in range(255, -1, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except ValueError:
            continue
    raise ValueError("Unable to find a viable program address bump seed")
