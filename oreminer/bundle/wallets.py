"""
Wallet pool.

Tracks the mining wallets and their last known SOL balances and chooses fee
and tip payers so that drawdown is spread evenly: the richest wallet that
can pay while keeping its reserve wins. Secret keys stay inside the pool;
callers hand in a message and get a signature back.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from ..crypto.keys import Keypair, Pubkey
from ..exceptions import InsufficientBalance, InvalidKeyError

logger = logging.getLogger(__name__)


@dataclass
class Wallet:
    """Public view of a pool wallet. The keypair is never attached."""
    pubkey: Pubkey
    balance_lamports: int = 0
    last_used_at: float = 0.0

    def can_pay(self, amount: int, reserve: int) -> bool:
        return self.balance_lamports - amount >= reserve


class WalletPool:
    """
    Set of wallets loaded once at startup.

    Args:
        keypairs: signing keys, one per wallet
        min_reserve_lamports: balance a payer must keep after a debit
        balances: optional initial balances by pubkey
    """

    def __init__(
        self,
        keypairs: Sequence[Keypair],
        min_reserve_lamports: int = 0,
        balances: Optional[Mapping[Pubkey, int]] = None,
    ):
        if min_reserve_lamports < 0:
            raise ValueError("Reserve must be >= 0 lamports")
        self.min_reserve_lamports = min_reserve_lamports
        self._keys: Dict[Pubkey, Keypair] = {}
        self._wallets: Dict[Pubkey, Wallet] = {}
        self._lock = threading.RLock()

        balances = balances or {}
        for keypair in keypairs:
            pubkey = keypair.pubkey
            if pubkey in self._keys:
                logger.warning("Duplicate keypair %s ignored", pubkey)
                continue
            self._keys[pubkey] = keypair
            self._wallets[pubkey] = Wallet(pubkey, balances.get(pubkey, 0))

    def __len__(self) -> int:
        return len(self._wallets)

    def __iter__(self) -> Iterator[Wallet]:
        with self._lock:
            return iter(list(self._wallets.values()))

    def __contains__(self, pubkey: Pubkey) -> bool:
        return pubkey in self._wallets

    @property
    def pubkeys(self) -> List[Pubkey]:
        return list(self._wallets)

    def get(self, pubkey: Pubkey) -> Wallet:
        try:
            return self._wallets[pubkey]
        except KeyError:
            raise InvalidKeyError(f"Wallet {pubkey} is not in the pool") from None

    def batches(self, size: int) -> List[List[Pubkey]]:
        """Wallets split into consecutive batches of at most *size*."""
        if size < 1:
            raise ValueError("Batch size must be >= 1")
        keys = self.pubkeys
        return [keys[i:i + size] for i in range(0, len(keys), size)]

    # --- selection --------------------------------------------------------

    def _select(
        self,
        amount: int,
        excluding: Iterable[Pubkey],
        pending: Optional[Mapping[Pubkey, int]],
    ) -> Wallet:
        excluded = set(excluding)
        pending = pending or {}
        with self._lock:
            eligible = [
                w for w in self._wallets.values()
                if w.can_pay(amount + pending.get(w.pubkey, 0), self.min_reserve_lamports)
            ]
            if not eligible:
                raise InsufficientBalance(amount, self.min_reserve_lamports)

            preferred = [w for w in eligible if w.pubkey not in excluded] or eligible
            # richest first; among equals the least recently used
            return max(
                preferred,
                key=lambda w: (w.balance_lamports - pending.get(w.pubkey, 0), -w.last_used_at),
            )

    def select_fee_payer(
        self,
        amount: int,
        excluding: Iterable[Pubkey] = (),
        pending: Optional[Mapping[Pubkey, int]] = None,
    ) -> Wallet:
        """
        Richest wallet able to pay *amount* of transaction fees.

        Wallets in *excluding* are only chosen when nobody else qualifies.
        *pending* holds debits already planned for the bundle being built.

        Raises:
            InsufficientBalance: no wallet keeps its reserve after the debit
        """
        return self._select(amount, excluding, pending)

    def select_tip_payer(
        self,
        amount: int,
        excluding: Iterable[Pubkey] = (),
        pending: Optional[Mapping[Pubkey, int]] = None,
    ) -> Wallet:
        """Richest wallet able to pay a relay tip of *amount*."""
        return self._select(amount, excluding, pending)

    # --- accounting -------------------------------------------------------

    def apply_debit(self, pubkey: Pubkey, amount: int) -> None:
        """Optimistic debit; reconciled by the next ``refresh_balances``."""
        with self._lock:
            wallet = self.get(pubkey)
            wallet.balance_lamports = max(0, wallet.balance_lamports - amount)
            wallet.last_used_at = time.time()

    def set_balance(self, pubkey: Pubkey, lamports: int) -> None:
        with self._lock:
            self.get(pubkey).balance_lamports = lamports

    def refresh_balances(self, chain) -> Dict[Pubkey, int]:
        """Replace every known balance with the chain's view."""
        balances = chain.get_balances(self.pubkeys)
        with self._lock:
            for pubkey, lamports in balances.items():
                wallet = self._wallets.get(pubkey)
                if wallet is None:
                    continue
                if wallet.balance_lamports != lamports:
                    logger.debug(
                        "Balance of %s reconciled: %d -> %d lamports",
                        pubkey, wallet.balance_lamports, lamports,
                    )
                wallet.balance_lamports = lamports
        return balances

    def total_balance(self) -> int:
        with self._lock:
            return sum(w.balance_lamports for w in self._wallets.values())

    # --- signing ----------------------------------------------------------

    def sign(self, pubkey: Pubkey, message: bytes) -> bytes:
        keypair = self._keys.get(pubkey)
        if keypair is None:
            raise InvalidKeyError(f"No signing key for {pubkey}")
        return keypair.sign(message)
