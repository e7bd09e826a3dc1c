"""
Bundle assembly.

A bundle holds one mining transaction per solved wallet followed by one
tip transaction to a relay tip account. Every transaction references the
same freshly fetched blockhash, so one stale hash invalidates the whole
bundle and the submitter rebuilds it.
"""

import logging
import random
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .wallets import WalletPool
from ..constants import FEE_PER_SIGNER, MAX_BUNDLE_SIZE
from ..crypto.keys import Pubkey
from ..exceptions import InsufficientBalance
from ..miner.types import SearchResult
from ..program.instructions import build_mine_instruction
from ..transactions.system import build_tip_instruction, pick_tip_account
from ..transactions.transaction import Instruction, Transaction

logger = logging.getLogger(__name__)

MineInstructionFn = Callable[[Pubkey, bytes, bytes, int], Instruction]


@dataclass
class Bundle:
    """Signed transactions of one cycle, mining transactions first."""
    transactions: List[Transaction]
    blockhash: bytes
    tip: int
    tip_payer: Pubkey
    results: Tuple[SearchResult, ...] = ()
    debits: Dict[Pubkey, int] = field(default_factory=dict)

    @property
    def mining_transactions(self) -> List[Transaction]:
        return self.transactions[:-1]

    @property
    def tip_transaction(self) -> Transaction:
        return self.transactions[-1]

    @property
    def signatures(self) -> List[str]:
        return [tx.signature for tx in self.transactions]

    def encode(self) -> List[str]:
        """Base58 wire form expected by ``sendBundle``."""
        return [tx.to_base58() for tx in self.transactions]

    def __len__(self) -> int:
        return len(self.transactions)


class BundleBuilder:
    """
    Turns search results into a signed bundle.

    Args:
        chain: client providing ``get_recent_blockhash()``
        pool: wallet pool selecting payers and signing
        fee_per_signer: base fee charged per signature
        mine_instruction: builder of the program's mine instruction
        rng: random source for the tip account choice
    """

    def __init__(
        self,
        chain,
        pool: WalletPool,
        fee_per_signer: int = FEE_PER_SIGNER,
        mine_instruction: MineInstructionFn = build_mine_instruction,
        rng: Optional[random.Random] = None,
    ):
        self.chain = chain
        self.pool = pool
        self.fee_per_signer = fee_per_signer
        self.mine_instruction = mine_instruction
        self.rng = rng

    def build(self, results: Sequence[SearchResult], tip: int, bus_id: int = 0) -> Bundle:
        """
        Build the bundle for *results* paying *tip* lamports to the relay.

        Results whose transaction nobody can pay for are skipped.

        Raises:
            InsufficientBalance: no mining transaction or no tip payer left
            ValueError: more results than a bundle can carry
        """
        if len(results) > MAX_BUNDLE_SIZE - 1:
            raise ValueError(
                f"At most {MAX_BUNDLE_SIZE - 1} results fit in one bundle, got {len(results)}"
            )

        blockhash = self.chain.get_recent_blockhash().hash
        debits: Dict[Pubkey, int] = defaultdict(int)
        used: List[Pubkey] = []
        transactions: List[Transaction] = []
        included: List[SearchResult] = []

        for result in results:
            # a foreign payer adds a second signature
            estimate = 2 * self.fee_per_signer
            try:
                payer = self.pool.select_fee_payer(estimate, excluding=used, pending=debits)
            except InsufficientBalance as e:
                logger.warning("Skipping %s: %s", result.wallet, e)
                continue

            instruction = self.mine_instruction(result.wallet, result.digest, result.nonce, bus_id)
            tx = Transaction.new_signed([instruction], payer.pubkey, blockhash, self.pool.sign)
            debits[payer.pubkey] += self.fee_per_signer * len(tx.signers)
            used.append(payer.pubkey)
            transactions.append(tx)
            included.append(result)

        if not transactions:
            raise InsufficientBalance(2 * self.fee_per_signer, self.pool.min_reserve_lamports)

        tip_cost = tip + self.fee_per_signer
        tip_payer = self.pool.select_tip_payer(tip_cost, excluding=used, pending=debits)
        tip_ix = build_tip_instruction(tip_payer.pubkey, tip, pick_tip_account(self.rng))
        transactions.append(Transaction.new_signed([tip_ix], tip_payer.pubkey, blockhash, self.pool.sign))
        debits[tip_payer.pubkey] += tip_cost

        logger.debug(
            "Built bundle with %d mining transactions, tip %d lamports from %s",
            len(included), tip, tip_payer.pubkey,
        )
        return Bundle(
            transactions=transactions,
            blockhash=blockhash,
            tip=tip,
            tip_payer=tip_payer.pubkey,
            results=tuple(included),
            debits=dict(debits),
        )
