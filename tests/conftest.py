"""
Shared fixtures and fakes for the ORE miner test suite.

The fakes stand in for the Solana RPC node, the Jito block engine and the
search backends so that the bundle and orchestration logic can be tested
without a network or a GPU.
"""

import dataclasses
from typing import Dict, List, Optional

import pytest

from oreminer.bundle import Accepted, TipOracle, WalletPool
from oreminer.crypto.keys import Keypair, Pubkey
from oreminer.exceptions import TransientNetworkError
from oreminer.miner.search import SearchEngine
from oreminer.miner.types import Challenge, SearchResult
from oreminer.program.state import Proof
from oreminer.rpc.client import AccountInfo, Blockhash
from oreminer.transactions.transaction import Transaction

ONE_SOL = 1_000_000_000


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeChain:
    """
    In-memory chain: a fixed challenge, counting blockhashes, static balances.

    ``proofs`` maps registered authorities to their proof hash; a fetched
    challenge only carries the proofs of the authorities asked for.
    ``rewards`` holds claimable rewards of registered authorities. The slot
    advances by ``slot_step`` on every signature status check.
    """

    def __init__(
        self,
        challenge: Optional[Challenge] = None,
        balances: Optional[Dict[Pubkey, int]] = None,
        proofs: Optional[Dict[Pubkey, bytes]] = None,
    ):
        self.challenge = challenge
        self.challenges: List[Challenge] = []
        self.balances = dict(balances or {})
        self.proofs = dict(proofs or {})
        self.challenge_failures = 0
        self.balance_failures = 0
        self.balance_calls = 0
        self.challenge_calls = 0
        self.blockhash_calls = 0
        self.statuses: Optional[List[Optional[dict]]] = None
        self.rewards: Dict[Pubkey, int] = {}
        self.accounts: Dict[Pubkey, AccountInfo] = {}
        self.simulation_errors: List = []
        self.simulated: List[Transaction] = []
        self.sent: List[Transaction] = []
        self.slot = 1000
        self.slot_step = 0

    def get_challenge(self, authorities=()):
        self.challenge_calls += 1
        if self.challenge_failures:
            self.challenge_failures -= 1
            raise TransientNetworkError("connection refused")
        challenge = self.challenges.pop(0) if self.challenges else self.challenge
        if challenge is None:
            return None
        return dataclasses.replace(
            challenge,
            proof_hashes={a: self.proofs[a] for a in authorities if a in self.proofs},
        )

    def get_recent_blockhash(self) -> Blockhash:
        self.blockhash_calls += 1
        return Blockhash(bytes([self.blockhash_calls]) * 32, self.slot)

    def get_balances(self, pubkeys) -> Dict[Pubkey, int]:
        self.balance_calls += 1
        if self.balance_failures:
            self.balance_failures -= 1
            raise TransientNetworkError("connection reset")
        return {key: self.balances.get(key, 0) for key in pubkeys}

    def get_signature_statuses(self, signatures):
        self.slot += self.slot_step
        if self.statuses is not None:
            return self.statuses, self.slot
        return [{"confirmationStatus": "confirmed", "err": None} for _ in signatures], self.slot

    def get_proofs(self, authorities) -> Dict[Pubkey, Optional[Proof]]:
        return {
            a: Proof(a, self.rewards.get(a, 0), self.proofs[a], 0, 0) if a in self.proofs else None
            for a in authorities
        }

    def get_account(self, pubkey: Pubkey) -> Optional[AccountInfo]:
        return self.accounts.get(pubkey)

    def simulate_transaction(self, tx: Transaction):
        self.simulated.append(tx)
        if self.simulation_errors:
            error = self.simulation_errors.pop(0)
            if isinstance(error, Exception):
                raise error
            return error
        return None

    def send_transaction(self, tx: Transaction) -> str:
        self.sent.append(tx)
        return tx.signature

    def wait_for_signature(self, signature, timeout=60.0, poll_interval=2.0) -> bool:
        statuses, _slot = self.get_signature_statuses([signature])
        return bool(statuses and statuses[0])


class FakeRelay:
    """Replays queued outcomes, accepting once the queue runs dry."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.submitted: List[List[str]] = []

    def submit_bundle(self, encoded_txs):
        self.submitted.append(list(encoded_txs))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return Accepted(f"bundle-{len(self.submitted)}")


class ScriptedEngine(SearchEngine):
    """
    Search engine returning canned results.

    ``script`` maps a wallet to a callable run instead of a search; the
    callable returns the result (or None) and may raise.
    """

    name = "scripted"

    def __init__(self, script=None):
        self.script = script or {}
        self.calls: List[Pubkey] = []
        self.budgets: List[float] = []

    def search(self, task, worker_count=None, time_budget=None, cancel=None):
        self.calls.append(task.wallet)
        self.budgets.append(time_budget)
        action = self.script.get(task.wallet)
        if action is not None:
            return action(task)
        return make_result(task.wallet)


def make_result(wallet: Pubkey, nonce: int = 7) -> SearchResult:
    return SearchResult(nonce=nonce.to_bytes(8, "little"), digest=bytes(32), wallet=wallet)


def make_challenge(clock: FakeClock, seconds: float = 60.0, threshold: bytes = b"\xff" * 32) -> Challenge:
    return Challenge(threshold=threshold, cutoff_time=clock() + seconds)


def proofs_for(keypairs) -> Dict[Pubkey, bytes]:
    return {kp.pubkey: bytes([0x11 + i]) * 32 for i, kp in enumerate(keypairs)}


@pytest.fixture
def keypairs() -> List[Keypair]:
    return [Keypair.generate() for _ in range(4)]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def funded_chain(keypairs) -> FakeChain:
    return FakeChain(balances={kp.pubkey: ONE_SOL for kp in keypairs}, proofs=proofs_for(keypairs))


@pytest.fixture
def pool(keypairs) -> WalletPool:
    return WalletPool(
        keypairs,
        min_reserve_lamports=1_000_000,
        balances={kp.pubkey: ONE_SOL * (i + 1) for i, kp in enumerate(keypairs)},
    )


@pytest.fixture
def oracle() -> TipOracle:
    return TipOracle(window=8)
