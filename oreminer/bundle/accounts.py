"""
Proof registration and reward claims for the whole wallet pool.
"""

import logging
from typing import List, Sequence, Tuple

from .lander import BundleLander, InstructionGroup, Landing
from ..constants import ACCOUNT_INSTRUCTIONS_PER_TX, ORE_TOKEN_DECIMALS
from ..crypto.keys import Pubkey
from ..program.instructions import build_claim_instruction, build_register_instruction

logger = logging.getLogger(__name__)

ORE_UNIT = 10 ** ORE_TOKEN_DECIMALS


def format_ore(amount: int) -> str:
    return f"{amount / ORE_UNIT:.{ORE_TOKEN_DECIMALS}f} ORE"


def ore_amount(ui_amount: float) -> int:
    """Base units of *ui_amount* ORE, truncated."""
    if ui_amount < 0:
        raise ValueError("ORE amount must be >= 0")
    return int(ui_amount * ORE_UNIT)


def _chunks(items: Sequence, size: int) -> List[Sequence]:
    if size < 1:
        raise ValueError("Chunk size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


# --- registration -----------------------------------------------------------

def unregistered(chain, authorities: Sequence[Pubkey]) -> List[Pubkey]:
    """Authorities without a proof account, in input order."""
    proofs = chain.get_proofs(list(authorities))
    return [a for a in authorities if proofs.get(a) is None]


def register_groups(
    authorities: Sequence[Pubkey],
    per_transaction: int = ACCOUNT_INSTRUCTIONS_PER_TX,
) -> List[InstructionGroup]:
    return [
        InstructionGroup(
            instructions=tuple(build_register_instruction(a) for a in chunk),
            signers=tuple(chunk),
        )
        for chunk in _chunks(list(authorities), per_transaction)
    ]


def register_all(chain, lander: BundleLander, authorities: Sequence[Pubkey]) -> List[Landing]:
    """Create the missing proof accounts of *authorities*."""
    pending = unregistered(chain, authorities)
    logger.info("Registering %d of %d accounts", len(pending), len(authorities))
    if not pending:
        return []

    landings = []
    remaining = len(pending)
    for landing in lander.land_all(register_groups(pending)):
        remaining -= landing.accounts
        if landing.landed:
            logger.info("Registered %d accounts, %d remaining", landing.accounts, remaining)
        else:
            logger.error("Failed to register %d accounts (%s), %d remaining", landing.accounts, landing.reason, remaining)
        landings.append(landing)
    return landings


# --- claims -----------------------------------------------------------------

def claimable_rewards(chain, authorities: Sequence[Pubkey]) -> List[Tuple[Pubkey, int]]:
    """Registered authorities with rewards to claim, largest first."""
    proofs = chain.get_proofs(list(authorities))
    rewards = [
        (authority, proof.claimable_rewards)
        for authority, proof in proofs.items()
        if proof is not None and proof.claimable_rewards > 0
    ]
    rewards.sort(key=lambda item: item[1], reverse=True)
    return rewards


def claim_groups(
    rewards: Sequence[Tuple[Pubkey, int]],
    beneficiary_tokens: Pubkey,
    per_transaction: int = ACCOUNT_INSTRUCTIONS_PER_TX,
) -> List[InstructionGroup]:
    """
    One claim transaction per *per_transaction* authorities.

    Args:
        rewards: ``(authority, amount)`` pairs, claimed in order
        beneficiary_tokens: token account receiving every claim
    """
    return [
        InstructionGroup(
            instructions=tuple(build_claim_instruction(a, beneficiary_tokens, amount) for a, amount in chunk),
            signers=tuple(a for a, _ in chunk),
            value=sum(amount for _, amount in chunk),
        )
        for chunk in _chunks(list(rewards), per_transaction)
    ]


def claim_all(
    chain,
    lander: BundleLander,
    authorities: Sequence[Pubkey],
    beneficiary_tokens: Pubkey,
    threshold: int = 0,
) -> List[Landing]:
    """
    Claim every authority's rewards into *beneficiary_tokens*.

    Bundles are sent richest first; claiming stops at the first bundle
    whose rewards are below *threshold* base units.
    """
    rewards = claimable_rewards(chain, authorities)
    total = sum(amount for _, amount in rewards)
    logger.info("Total rewards %s in %d claimable accounts", format_ore(total), len(rewards))
    if not rewards:
        return []

    landings = []
    for landing in lander.land_all(claim_groups(rewards, beneficiary_tokens), min_value=threshold):
        if landing.landed:
            total -= landing.value
            logger.info(
                "Claimed %s from %d accounts, %s remaining",
                format_ore(landing.value), landing.accounts, format_ore(total),
            )
        else:
            logger.error("Failed to claim %s (%s)", format_ore(landing.value), landing.reason)
        landings.append(landing)
    return landings
