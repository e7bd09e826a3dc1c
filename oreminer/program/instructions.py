"""
ORE program addresses and instruction encoding.
"""

import struct
from functools import lru_cache
from typing import List, Tuple

from ..constants import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    NONCE_SIZE,
    ORE_BUS_COUNT,
    ORE_BUS_SEED,
    ORE_MINT_ID,
    ORE_PROGRAM_ID,
    ORE_PROOF_SEED,
    ORE_TREASURY_SEED,
    SYSVAR_CLOCK_ID,
    SYSVAR_SLOT_HASHES_ID,
    TOKEN_PROGRAM_ID,
)
from ..crypto.keys import Pubkey, find_program_address
from ..transactions.system import SYSTEM_PROGRAM
from ..transactions.transaction import AccountMeta, Instruction

ORE_PROGRAM = Pubkey.from_string(ORE_PROGRAM_ID)
SYSVAR_CLOCK = Pubkey.from_string(SYSVAR_CLOCK_ID)
SYSVAR_SLOT_HASHES = Pubkey.from_string(SYSVAR_SLOT_HASHES_ID)
ORE_MINT = Pubkey.from_string(ORE_MINT_ID)
TOKEN_PROGRAM = Pubkey.from_string(TOKEN_PROGRAM_ID)
ASSOCIATED_TOKEN_PROGRAM = Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ID)

REGISTER_INSTRUCTION = 1
MINE_INSTRUCTION = 2
CLAIM_INSTRUCTION = 3
CREATE_TOKEN_ACCOUNT_INSTRUCTION = 0


@lru_cache(maxsize=None)
def treasury_address() -> Pubkey:
    return find_program_address([ORE_TREASURY_SEED], ORE_PROGRAM)[0]


@lru_cache(maxsize=None)
def bus_address(bus_id: int) -> Pubkey:
    if not 0 <= bus_id < ORE_BUS_COUNT:
        raise ValueError(f"Bus id {bus_id} out of range")
    return find_program_address([ORE_BUS_SEED, bytes([bus_id])], ORE_PROGRAM)[0]


def bus_addresses() -> List[Pubkey]:
    return [bus_address(i) for i in range(ORE_BUS_COUNT)]


@lru_cache(maxsize=4096)
def proof_pda(authority: Pubkey) -> Tuple[Pubkey, int]:
    """Proof account of *authority* and its bump seed."""
    return find_program_address([ORE_PROOF_SEED, authority.raw], ORE_PROGRAM)


def proof_address(authority: Pubkey) -> Pubkey:
    return proof_pda(authority)[0]


def associated_token_address(owner: Pubkey, mint: Pubkey = ORE_MINT) -> Pubkey:
    """The associated token account holding *owner*'s tokens of *mint*."""
    return find_program_address([owner.raw, TOKEN_PROGRAM.raw, mint.raw], ASSOCIATED_TOKEN_PROGRAM)[0]


@lru_cache(maxsize=None)
def treasury_token_address() -> Pubkey:
    return associated_token_address(treasury_address())


def build_register_instruction(signer: Pubkey) -> Instruction:
    """Create the proof account of *signer*; required once before mining."""
    proof, bump = proof_pda(signer)
    return Instruction(
        program_id=ORE_PROGRAM,
        accounts=(
            AccountMeta(signer, is_signer=True, is_writable=True),
            AccountMeta(proof, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
        ),
        data=bytes([REGISTER_INSTRUCTION, bump]),
    )


def build_claim_instruction(signer: Pubkey, beneficiary: Pubkey, amount: int) -> Instruction:
    """
    Move *amount* of *signer*'s claimable rewards to a token account.

    Args:
        signer: the proof authority
        beneficiary: token account receiving the rewards (not its owner)
        amount: base units, 10^9 per ORE
    """
    if amount < 0:
        raise ValueError("Claim amount must be >= 0")
    return Instruction(
        program_id=ORE_PROGRAM,
        accounts=(
            AccountMeta(signer, is_signer=True, is_writable=True),
            AccountMeta(beneficiary, is_signer=False, is_writable=True),
            AccountMeta(ORE_MINT, is_signer=False, is_writable=False),
            AccountMeta(proof_address(signer), is_signer=False, is_writable=True),
            AccountMeta(treasury_address(), is_signer=False, is_writable=True),
            AccountMeta(treasury_token_address(), is_signer=False, is_writable=True),
            AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        ),
        data=struct.pack("<BQ", CLAIM_INSTRUCTION, amount),
    )


def build_create_token_account_instruction(payer: Pubkey, owner: Pubkey, mint: Pubkey = ORE_MINT) -> Instruction:
    return Instruction(
        program_id=ASSOCIATED_TOKEN_PROGRAM,
        accounts=(
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(associated_token_address(owner, mint), is_signer=False, is_writable=True),
            AccountMeta(owner, is_signer=False, is_writable=False),
            AccountMeta(mint, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM, is_signer=False, is_writable=False),
            AccountMeta(TOKEN_PROGRAM, is_signer=False, is_writable=False),
        ),
        data=bytes([CREATE_TOKEN_ACCOUNT_INSTRUCTION]),
    )


def build_mine_instruction(signer: Pubkey, digest: bytes, nonce: bytes, bus_id: int = 0) -> Instruction:
    """
    Encode a ``mine`` instruction claiming a reward for *signer*.

    Args:
        signer: the authority whose proof the nonce was found for
        digest: the 32-byte keccak digest
        nonce: the 8-byte little-endian nonce
        bus_id: reward bus to draw from
    """
    if len(digest) != 32 or len(nonce) != NONCE_SIZE:
        raise ValueError("mine expects a 32-byte digest and an 8-byte nonce")
    return Instruction(
        program_id=ORE_PROGRAM,
        accounts=(
            AccountMeta(signer, is_signer=True, is_writable=True),
            AccountMeta(bus_address(bus_id), is_signer=False, is_writable=True),
            AccountMeta(proof_address(signer), is_signer=False, is_writable=True),
            AccountMeta(treasury_address(), is_signer=False, is_writable=False),
            AccountMeta(SYSVAR_SLOT_HASHES, is_signer=False, is_writable=False),
        ),
        data=struct.pack("<B32s8s", MINE_INSTRUCTION, bytes(digest), bytes(nonce)),
    )
