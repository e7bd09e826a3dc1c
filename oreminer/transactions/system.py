"""System program instructions."""

import random
import struct
from typing import Optional

from .transaction import AccountMeta, Instruction
from ..constants import JITO_TIP_ACCOUNTS, SYSTEM_PROGRAM_ID
from ..crypto.keys import Pubkey

SYSTEM_PROGRAM = Pubkey.from_string(SYSTEM_PROGRAM_ID)
TRANSFER_INSTRUCTION = 2


def transfer(source: Pubkey, destination: Pubkey, lamports: int) -> Instruction:
    if lamports < 0:
        raise ValueError("Transfer amount must be >= 0")
    return Instruction(
        program_id=SYSTEM_PROGRAM,
        accounts=(
            AccountMeta(source, is_signer=True, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
        ),
        data=struct.pack("<IQ", TRANSFER_INSTRUCTION, lamports),
    )


def pick_tip_account(rng: Optional[random.Random] = None) -> Pubkey:
    """One of the relay's tip accounts, chosen at random to spread write locks."""
    rng = rng or random
    return Pubkey.from_string(rng.choice(JITO_TIP_ACCOUNTS))


def build_tip_instruction(payer: Pubkey, lamports: int, recipient: Optional[Pubkey] = None) -> Instruction:
    return transfer(payer, recipient or pick_tip_account(), lamports)
