"""
ORE program account layouts.

Accounts are fixed-size little-endian structs behind an 8-byte
discriminator. The clock sysvar is bincode without a discriminator.
"""

import struct
from dataclasses import dataclass

from ..crypto.keys import Pubkey

DISCRIMINATOR_SIZE = 8

_TREASURY = struct.Struct("<Q32s32sqQQ")
_PROOF = struct.Struct("<32sQ32sQQ")
_BUS = struct.Struct("<QQ")
_CLOCK = struct.Struct("<QqQQq")


def _body(data: bytes, layout: struct.Struct, name: str) -> bytes:
    end = DISCRIMINATOR_SIZE + layout.size
    if len(data) < end:
        raise ValueError(f"{name} account is {len(data)} bytes, expected at least {end}")
    return data[DISCRIMINATOR_SIZE:end]


@dataclass(frozen=True)
class Treasury:
    bump: int
    admin: Pubkey
    difficulty: bytes
    last_reset_at: int
    reward_rate: int
    total_claimed_rewards: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "Treasury":
        bump, admin, difficulty, last_reset_at, reward_rate, claimed = _TREASURY.unpack(
            _body(data, _TREASURY, "treasury")
        )
        return cls(bump, Pubkey(admin), difficulty, last_reset_at, reward_rate, claimed)


@dataclass(frozen=True)
class Proof:
    authority: Pubkey
    claimable_rewards: int
    hash: bytes
    total_hashes: int
    total_rewards: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "Proof":
        authority, claimable, challenge, total_hashes, total_rewards = _PROOF.unpack(
            _body(data, _PROOF, "proof")
        )
        return cls(Pubkey(authority), claimable, challenge, total_hashes, total_rewards)


@dataclass(frozen=True)
class Bus:
    id: int
    rewards: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "Bus":
        return cls(*_BUS.unpack(_body(data, _BUS, "bus")))


@dataclass(frozen=True)
class Clock:
    slot: int
    epoch_start_timestamp: int
    epoch: int
    leader_schedule_epoch: int
    unix_timestamp: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "Clock":
        if len(data) < _CLOCK.size:
            raise ValueError(f"clock sysvar is {len(data)} bytes, expected {_CLOCK.size}")
        return cls(*_CLOCK.unpack(data[:_CLOCK.size]))
