"""
ORE program encoding: account layouts, addresses and the register, mine
and claim instructions.
"""

from .instructions import (
    ORE_MINT,
    ORE_PROGRAM,
    SYSVAR_CLOCK,
    associated_token_address,
    build_claim_instruction,
    build_create_token_account_instruction,
    build_mine_instruction,
    build_register_instruction,
    bus_address,
    bus_addresses,
    proof_address,
    proof_pda,
    treasury_address,
)
from .state import Bus, Clock, Proof, Treasury

__all__ = [
    "ORE_MINT",
    "ORE_PROGRAM",
    "SYSVAR_CLOCK",
    "associated_token_address",
    "build_claim_instruction",
    "build_create_token_account_instruction",
    "build_mine_instruction",
    "build_register_instruction",
    "bus_address",
    "bus_addresses",
    "proof_address",
    "proof_pda",
    "treasury_address",
    "Bus",
    "Clock",
    "Proof",
    "Treasury",
]
