"""
Mining data types shared by the search engines, bundle builder and
orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from ..constants import DIGEST_SIZE, NONCE_SIZE, PREIMAGE_SIZE
from ..crypto.keys import Pubkey
from ..program.state import Bus


def leading_zero_bits(value: bytes) -> int:
    bits = 0
    for byte in value:
        if byte == 0:
            bits += 8
            continue
        return bits + (8 - byte.bit_length())
    return bits


@dataclass(frozen=True)
class Challenge:
    """
    A mining challenge read from the chain.

    Every authority mines against the hash kept in its own proof account.
    Authorities missing from ``proof_hashes`` are not registered and cannot
    mine this challenge.
    """
    threshold: bytes
    cutoff_time: float
    proof_hashes: Dict[Pubkey, bytes] = field(default_factory=dict, compare=False)
    min_difficulty: int = 0
    buses: Tuple[Bus, ...] = ()
    reward_rate: int = 0

    def __post_init__(self):
        if len(self.threshold) != DIGEST_SIZE:
            raise ValueError("Challenge threshold must be 32 bytes")
        for authority, proof_hash in self.proof_hashes.items():
            if len(proof_hash) != DIGEST_SIZE:
                raise ValueError(f"Proof hash of {authority} must be 32 bytes")
        if not self.min_difficulty:
            object.__setattr__(self, "min_difficulty", leading_zero_bits(self.threshold))

    def is_registered(self, authority: Pubkey) -> bool:
        return authority in self.proof_hashes

    def hash_for(self, authority: Pubkey) -> bytes:
        try:
            return self.proof_hashes[authority]
        except KeyError:
            raise ValueError(f"{authority} has no proof account") from None

    def expired(self, now: float) -> bool:
        return now >= self.cutoff_time

    def time_left(self, now: float) -> float:
        return max(0.0, self.cutoff_time - now)

    def best_bus(self) -> Optional[Bus]:
        """The bus holding the most rewards, if any bus was fetched."""
        if not self.buses:
            return None
        return max(self.buses, key=lambda bus: bus.rewards)


@dataclass(frozen=True)
class SearchTask:
    """One wallet's search for one cycle."""
    preimage: bytes
    threshold: bytes
    wallet: Pubkey

    def __post_init__(self):
        if len(self.preimage) != PREIMAGE_SIZE:
            raise ValueError(f"Preimage must be {PREIMAGE_SIZE} bytes, got {len(self.preimage)}")
        if len(self.threshold) != DIGEST_SIZE:
            raise ValueError(f"Threshold must be {DIGEST_SIZE} bytes, got {len(self.threshold)}")

    @classmethod
    def for_wallet(cls, challenge: Challenge, wallet: Pubkey) -> "SearchTask":
        return cls(
            preimage=challenge.hash_for(wallet) + wallet.raw,
            threshold=challenge.threshold,
            wallet=wallet,
        )


@dataclass(frozen=True)
class SearchResult:
    nonce: bytes
    digest: bytes
    wallet: Pubkey

    def __post_init__(self):
        if len(self.nonce) != NONCE_SIZE or len(self.digest) != DIGEST_SIZE:
            raise ValueError("SearchResult needs an 8-byte nonce and a 32-byte digest")

    @property
    def nonce_value(self) -> int:
        return int.from_bytes(self.nonce, "little")


class MinerState(Enum):
    """Orchestrator states."""
    IDLE = "idle"
    FETCH_CHALLENGE = "fetch_challenge"
    SEARCHING = "searching"
    BUILDING = "building"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
