"""
Landing of account management bundles.

Registering proofs and claiming rewards touch many wallets at once. The
instructions of every few wallets form one transaction signed by those
wallets, up to five transactions go out as one Jito bundle, and the first
transaction carries the tip. A bundle is simulated before it is sent and
watched until its first transaction lands or its blockhash expires; a
dropped bundle is rebuilt and resent.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from .submitter import Accepted
from .wallets import WalletPool
from ..constants import CONFIRMED_STATUSES, FEE_PER_SIGNER, MAX_BUNDLE_SIZE, SLOT_EXPIRATION
from ..crypto.keys import Pubkey
from ..exceptions import RpcError, TransientNetworkError
from ..transactions.system import build_tip_instruction, pick_tip_account
from ..transactions.transaction import Instruction, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstructionGroup:
    """
    Instructions sent as one transaction.

    ``value`` is what the group moves (claimed base units), used for
    thresholds and reporting.
    """
    instructions: Tuple[Instruction, ...]
    signers: Tuple[Pubkey, ...]
    value: int = 0

    def __post_init__(self):
        if not self.instructions or not self.signers:
            raise ValueError("An instruction group needs instructions and at least one signer")


class LandingStatus(Enum):
    LANDED = "landed"
    DROPPED = "dropped"
    SIMULATION_FAILED = "simulation_failed"
    REJECTED = "rejected"


@dataclass
class Landing:
    status: LandingStatus
    groups: Tuple[InstructionGroup, ...]
    bundle_id: Optional[str] = None
    signature: Optional[str] = None
    reason: str = ""
    attempts: int = 0

    @property
    def landed(self) -> bool:
        return self.status is LandingStatus.LANDED

    @property
    def accounts(self) -> int:
        return sum(len(group.signers) for group in self.groups)

    @property
    def value(self) -> int:
        return sum(group.value for group in self.groups)


class BundleLander:
    """
    Sends instruction groups as tipped bundles and waits for them to land.

    Args:
        chain: client with ``get_recent_blockhash``, ``simulate_transaction``
            and ``get_signature_statuses``
        relay: block engine with ``submit_bundle``
        pool: wallets signing the groups; the richest signer of a group pays its fee
        tip: lamports paid to a relay tip account once per bundle
        slot_expiration: slots after sending before a bundle counts as dropped
        poll_interval: seconds between signature status checks
        max_attempts: sends of one bundle before giving up on it
        max_status_checks: status checks per send, bounding an unreachable node
    """

    def __init__(
        self,
        chain,
        relay,
        pool: WalletPool,
        tip: int,
        fee_per_signer: int = FEE_PER_SIGNER,
        slot_expiration: int = SLOT_EXPIRATION,
        poll_interval: float = 2.0,
        max_attempts: int = 3,
        max_status_checks: int = 120,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if tip < 0:
            raise ValueError("Tip must be >= 0 lamports")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.chain = chain
        self.relay = relay
        self.pool = pool
        self.tip = tip
        self.fee_per_signer = fee_per_signer
        self.slot_expiration = slot_expiration
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.max_status_checks = max_status_checks
        self.rng = rng
        self.sleep = sleep

    @staticmethod
    def pack(groups: Sequence[InstructionGroup]) -> List[List[InstructionGroup]]:
        """Groups split into bundles of at most five transactions."""
        return [list(groups[i:i + MAX_BUNDLE_SIZE]) for i in range(0, len(groups), MAX_BUNDLE_SIZE)]

    def fee_payer(self, group: InstructionGroup) -> Pubkey:
        return max(group.signers, key=lambda key: self.pool.get(key).balance_lamports)

    def build(self, groups: Sequence[InstructionGroup]) -> Tuple[List[Transaction], int]:
        """
        Sign one transaction per group against a fresh blockhash.

        Returns:
            The transactions and the slot the blockhash was read at
        """
        if not 0 < len(groups) <= MAX_BUNDLE_SIZE:
            raise ValueError(f"A bundle holds 1 to {MAX_BUNDLE_SIZE} transactions, got {len(groups)}")
        blockhash = self.chain.get_recent_blockhash()
        transactions = []
        for index, group in enumerate(groups):
            payer = self.fee_payer(group)
            instructions = list(group.instructions)
            if index == 0:
                instructions.append(build_tip_instruction(payer, self.tip, pick_tip_account(self.rng)))
            transactions.append(Transaction.new_signed(instructions, payer, blockhash.hash, self.pool.sign))
        return transactions, blockhash.slot

    def simulate(self, transactions: Sequence[Transaction]) -> Optional[str]:
        """Reason the first failing transaction gives, None when all succeed."""
        for tx in transactions:
            try:
                err = self.chain.simulate_transaction(tx)
            except (TransientNetworkError, RpcError) as e:
                return f"simulation of {tx.signature} failed: {e}"
            if err is not None:
                return f"simulation of {tx.signature} returned {err}"
        return None

    def wait_landed(self, signature: str, sent_slot: int) -> bool:
        """
        Poll *signature* until it lands or the chain passes the expiry slot.

        A transaction that landed with an error counts as not landed.
        """
        latest_slot = sent_slot
        checks = 0
        while latest_slot < sent_slot + self.slot_expiration and checks < self.max_status_checks:
            self.sleep(self.poll_interval)
            checks += 1
            try:
                statuses, latest_slot = self.chain.get_signature_statuses([signature])
            except (TransientNetworkError, RpcError) as e:
                logger.error("Failed to get status of %s (sent at slot %d): %s", signature, sent_slot, e)
                continue
            status = statuses[0] if statuses else None
            if not status:
                continue
            if status.get("err") is not None:
                logger.error("Transaction %s failed: %s", signature, status["err"])
                return False
            if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                return True
        return False

    def _debit(self, transactions: Sequence[Transaction]) -> None:
        for index, tx in enumerate(transactions):
            amount = self.fee_per_signer * len(tx.signers)
            if index == 0:
                amount += self.tip
            self.pool.apply_debit(tx.fee_payer, amount)

    def land(self, groups: Sequence[InstructionGroup]) -> Landing:
        """
        Build, simulate, send and watch one bundle, resending it when dropped.

        A failed simulation drops the bundle without sending it.
        """
        landing = Landing(LandingStatus.DROPPED, tuple(groups))
        while landing.attempts < self.max_attempts:
            landing.attempts += 1
            try:
                transactions, sent_slot = self.build(groups)
            except (TransientNetworkError, RpcError) as e:
                logger.error("Failed to get latest blockhash: %s", e)
                landing.reason = str(e)
                self.sleep(self.poll_interval)
                continue

            reason = self.simulate(transactions)
            if reason is not None:
                logger.error("Dropping bundle of %d accounts: %s", landing.accounts, reason)
                landing.status = LandingStatus.SIMULATION_FAILED
                landing.reason = reason
                return landing

            try:
                outcome = self.relay.submit_bundle([tx.to_base58() for tx in transactions])
            except TransientNetworkError as e:
                logger.error("Failed to send bundle: %s", e)
                landing.reason = str(e)
                self.sleep(self.poll_interval)
                continue
            if not isinstance(outcome, Accepted):
                logger.error("Bundle rejected: %s", outcome.reason)
                landing.status = LandingStatus.REJECTED
                landing.reason = outcome.reason
                return landing

            landing.bundle_id = outcome.bundle_id
            landing.signature = transactions[0].signature
            logger.info(
                "Bundle %s sent at slot %d with %d accounts (first transaction %s)",
                outcome.bundle_id, sent_slot, landing.accounts, landing.signature,
            )
            if self.wait_landed(landing.signature, sent_slot):
                self._debit(transactions)
                landing.status = LandingStatus.LANDED
                landing.reason = ""
                return landing
            landing.reason = f"not landed within {self.slot_expiration} slots"
            logger.error("Bundle %s dropped, retrying", outcome.bundle_id)
        return landing

    def land_all(self, groups: Sequence[InstructionGroup], min_value: int = 0) -> List[Landing]:
        """
        Land *groups* bundle by bundle, in order.

        Stops at the first bundle whose total ``value`` is below *min_value*;
        groups are expected in descending value order.
        """
        landings = []
        for bundle_groups in self.pack(groups):
            value = sum(group.value for group in bundle_groups)
            if value < min_value:
                logger.info(
                    "Bundle of %d groups moves %d, below the threshold of %d; stopping",
                    len(bundle_groups), value, min_value,
                )
                break
            landings.append(self.land(bundle_groups))
        return landings
