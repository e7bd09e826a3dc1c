"""
Solana transactions: legacy message compilation, signing and the system
program instructions the miner needs.
"""

from .transaction import (
    AccountMeta,
    Instruction,
    Message,
    Transaction,
    encode_length,
)
from .system import transfer, build_tip_instruction, pick_tip_account

__all__ = [
    "AccountMeta",
    "Instruction",
    "Message",
    "Transaction",
    "encode_length",
    "transfer",
    "build_tip_instruction",
    "pick_tip_account",
]
