"""
ORE Miner Orchestrator

Drives the mining cycle:

    IDLE -> FETCH_CHALLENGE -> SEARCHING -> BUILDING -> SUBMITTING
         -> {CONFIRMED, FAILED, EXPIRED} -> FETCH_CHALLENGE ...

Every cycle mines one batch of wallets against one challenge and submits
at most one bundle. Recoverable errors end the cycle, never the loop; only
device initialization and key loading failures (raised before the loop
starts) are fatal.
"""

import threading
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from .search import SearchEngine
from .types import Challenge, MinerState, SearchResult, SearchTask
from ..bundle.builder import Bundle, BundleBuilder
from ..bundle.submitter import Accepted, BundleSubmitter
from ..bundle.tips import TipOracle
from ..bundle.wallets import WalletPool
from ..constants import CONFIRMED_STATUSES
from ..crypto.keys import Pubkey
from ..exceptions import (
    DeviceLaunchError,
    InsufficientBalance,
    RpcError,
    StaleChallengeError,
    TransientNetworkError,
)
from ..logger import get_logger

logger = get_logger(__name__)

TERMINAL_STATES = (MinerState.CONFIRMED, MinerState.FAILED, MinerState.EXPIRED)


@dataclass
class CycleOutcome:
    """Result of one cycle. ``results`` is empty unless the bundle was accepted."""
    state: MinerState
    results: Tuple[SearchResult, ...] = ()
    bundle_id: Optional[str] = None
    reason: str = ""
    challenge: Optional[Challenge] = None


class MinerOrchestrator:
    """
    Mining loop over a wallet pool.

    Args:
        chain: chain client (``get_challenge``, ``get_recent_blockhash``,
            ``get_balances``, ``get_signature_statuses``)
        pool: wallets to mine for
        engine: digest search backend
        builder: bundle builder
        submitter: bundle submitter
        oracle: tip oracle
        priority_fee: flat tip when adaptive tips are off
        max_adaptive_tip: cap on the adaptive tip, 0 disables adaptation
        batch_size: wallets per cycle and bundle
        worker_count: search workers per task, engine default when None
        launch_retries: retries of a task after a failed kernel launch
        balance_refresh_cycles: refresh balances every N cycles, and on any
            cycle after a failed refresh
        confirm_bundles: watch the bundle's signatures after acceptance
        confirm_timeout: seconds to wait for a landed signature
        fetch_retries: challenge fetch retries per cycle on network failure
        fetch_backoff: first challenge fetch retry delay, doubled per retry
        tip_max_age: age in seconds after which the newest tip sample is stale
        clock: wall clock, replaced in tests
        sleep: sleep function, replaced in tests
    """

    def __init__(
        self,
        chain,
        pool: WalletPool,
        engine: SearchEngine,
        builder: BundleBuilder,
        submitter: BundleSubmitter,
        oracle: TipOracle,
        priority_fee: int = 0,
        max_adaptive_tip: int = 0,
        batch_size: int = 4,
        worker_count: Optional[int] = None,
        launch_retries: int = 2,
        balance_refresh_cycles: int = 10,
        confirm_bundles: bool = False,
        confirm_timeout: float = 60.0,
        confirm_poll_interval: float = 2.0,
        fetch_retries: int = 5,
        fetch_backoff: float = 1.0,
        fetch_backoff_max: float = 30.0,
        idle_delay: float = 1.0,
        tip_max_age: float = 60.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if balance_refresh_cycles < 1:
            raise ValueError("balance_refresh_cycles must be >= 1")
        self.chain = chain
        self.pool = pool
        self.engine = engine
        self.builder = builder
        self.submitter = submitter
        self.oracle = oracle
        self.priority_fee = priority_fee
        self.max_adaptive_tip = max_adaptive_tip
        self.batch_size = batch_size
        self.worker_count = worker_count
        self.launch_retries = launch_retries
        self.balance_refresh_cycles = balance_refresh_cycles
        self.confirm_bundles = confirm_bundles
        self.confirm_timeout = confirm_timeout
        self.confirm_poll_interval = confirm_poll_interval
        self.fetch_retries = fetch_retries
        self.fetch_backoff = fetch_backoff
        self.fetch_backoff_max = fetch_backoff_max
        self.idle_delay = idle_delay
        self.tip_max_age = tip_max_age
        self.clock = clock
        self.sleep = sleep

        self.state = MinerState.IDLE
        self.history: List[MinerState] = [MinerState.IDLE]
        self.cycle = 0
        self.stats: Counter = Counter()
        self.cancel = threading.Event()
        self._batch_index = 0
        self._balances_synced = False

    # --- state ------------------------------------------------------------

    def _transition(self, state: MinerState) -> None:
        logger.debug("Cycle %d: %s -> %s", self.cycle, self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _finish(
        self,
        state: MinerState,
        reason: str = "",
        challenge: Optional[Challenge] = None,
        results: Tuple[SearchResult, ...] = (),
        bundle_id: Optional[str] = None,
    ) -> CycleOutcome:
        self._transition(state)
        self.stats[state] += 1
        if state is MinerState.CONFIRMED:
            logger.info("Cycle %d confirmed: bundle %s with %d solution(s)", self.cycle, bundle_id, len(results))
        else:
            logger.warning("Cycle %d %s: %s", self.cycle, state.value, reason)
        return CycleOutcome(state, results, bundle_id, reason, challenge)

    def next_batch(self) -> List[Pubkey]:
        """The next batch of wallets, rotating through the pool."""
        batches = self.pool.batches(self.batch_size)
        if not batches:
            return []
        batch = batches[self._batch_index % len(batches)]
        self._batch_index += 1
        return batch

    def stop(self) -> None:
        """Cancel the running search and end ``run`` after the current cycle."""
        self.cancel.set()

    # --- phases -----------------------------------------------------------

    def fetch_challenge(self, authorities: List[Pubkey]) -> Challenge:
        """Fetch the challenge, retrying network failures with backoff."""
        attempt = 0
        while True:
            try:
                return self.chain.get_challenge(authorities)
            except TransientNetworkError as e:
                attempt += 1
                if attempt > self.fetch_retries or self.cancel.is_set():
                    raise
                delay = min(self.fetch_backoff * (2 ** (attempt - 1)), self.fetch_backoff_max)
                logger.warning("Challenge fetch failed (%s), retrying in %.1fs", e, delay)
                self.sleep(delay)

    def refresh_balances(self) -> bool:
        """Reload pool balances; a failure is retried on the next cycle."""
        try:
            self.pool.refresh_balances(self.chain)
        except (TransientNetworkError, RpcError) as e:
            logger.warning("Balance refresh failed: %s", e)
            self._balances_synced = False
            return False
        self._balances_synced = True
        logger.info("Refreshed balances of %d wallets, %d lamports total", len(self.pool), self.pool.total_balance())
        return True

    def search(self, challenge: Challenge, wallet: Pubkey) -> Optional[SearchResult]:
        """
        Search one wallet's task within the challenge's remaining time.

        A failed kernel launch retries the same task.

        Raises:
            DeviceLaunchError: every launch attempt failed
        """
        task = SearchTask.for_wallet(challenge, wallet)
        for attempt in range(self.launch_retries + 1):
            budget = challenge.time_left(self.clock())
            if budget <= 0:
                return None
            try:
                return self.engine.search(
                    task,
                    worker_count=self.worker_count,
                    time_budget=budget,
                    cancel=self.cancel,
                )
            except DeviceLaunchError as e:
                if attempt >= self.launch_retries:
                    raise
                logger.warning("Search launch for %s failed (%s), retrying", wallet, e)
        return None

    def search_batch(self, challenge: Challenge, batch: List[Pubkey]) -> List[SearchResult]:
        """
        Search every wallet of *batch* in turn.

        Raises:
            StaleChallengeError: the cutoff passed before the batch finished
        """
        results: List[SearchResult] = []
        for wallet in batch:
            if not challenge.is_registered(wallet):
                logger.warning("Skipping %s: no proof account", wallet)
                continue
            if challenge.expired(self.clock()):
                raise StaleChallengeError(f"cutoff passed with {len(results)} of {len(batch)} solved")

            started = self.clock()
            result = self.search(challenge, wallet)

            if challenge.expired(self.clock()):
                raise StaleChallengeError(f"cutoff passed with {len(results)} of {len(batch)} solved")
            if result is None:
                if self.cancel.is_set():
                    break
                logger.warning("No solution for %s", wallet)
                continue
            logger.info(
                "Solved %s: nonce %d in %.2fs",
                wallet, result.nonce_value, self.clock() - started,
            )
            results.append(result)
        return results

    def confirm(self, bundle: Bundle) -> bool:
        """Wait until a mining transaction of *bundle* lands or the timeout runs out."""
        signatures = [tx.signature for tx in bundle.mining_transactions]
        deadline = self.clock() + self.confirm_timeout
        while self.clock() < deadline and not self.cancel.is_set():
            try:
                statuses, _slot = self.chain.get_signature_statuses(signatures)
            except (TransientNetworkError, RpcError) as e:
                logger.debug("Signature status check failed: %s", e)
            else:
                for signature, status in zip(signatures, statuses):
                    if not status:
                        continue
                    if status.get("err") is not None:
                        logger.warning("Transaction %s failed: %s", signature, status["err"])
                        return False
                    if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                        logger.info("Transaction %s landed", signature)
                        return True
            self.sleep(self.confirm_poll_interval)
        return False

    # --- cycle ------------------------------------------------------------

    def run_cycle(self) -> CycleOutcome:
        """Run one full cycle and return its terminal outcome."""
        self.cycle += 1
        self._transition(MinerState.FETCH_CHALLENGE)

        if not self._balances_synced or (self.cycle - 1) % self.balance_refresh_cycles == 0:
            self.refresh_balances()

        batch = self.next_batch()
        if not batch:
            return self._finish(MinerState.FAILED, "wallet pool is empty")

        try:
            challenge = self.fetch_challenge(batch)
        except (TransientNetworkError, RpcError) as e:
            return self._finish(MinerState.FAILED, f"challenge fetch failed: {e}")
        if challenge.expired(self.clock()):
            return self._finish(MinerState.EXPIRED, "challenge cutoff already passed", challenge)
        if not any(challenge.is_registered(wallet) for wallet in batch):
            return self._finish(
                MinerState.FAILED, "no wallet in batch has a proof account (run `ore-miner register`)", challenge,
            )

        self._transition(MinerState.SEARCHING)
        try:
            results = self.search_batch(challenge, batch)
        except StaleChallengeError as e:
            # every result of the cycle is dropped, solved or not
            return self._finish(MinerState.EXPIRED, str(e), challenge)
        except DeviceLaunchError as e:
            return self._finish(MinerState.FAILED, f"search launch failed: {e}", challenge)
        if self.cancel.is_set():
            return self._finish(MinerState.FAILED, "cancelled", challenge)
        if not results:
            return self._finish(MinerState.FAILED, "no solutions found", challenge)

        self._transition(MinerState.BUILDING)
        best_bus = challenge.best_bus()
        bus_id = best_bus.id if best_bus is not None else 0

        def build() -> Bundle:
            if self.max_adaptive_tip and self.oracle.stale(self.tip_max_age, self.clock()):
                logger.warning("Tip samples are older than %.0fs, tipping from a stale window", self.tip_max_age)
            tip = self.oracle.current_tip(self.priority_fee, self.max_adaptive_tip)
            return self.builder.build(results, tip, bus_id=bus_id)

        try:
            try:
                bundle = build()
            except InsufficientBalance as e:
                # cached balances may lag deposits
                if not self.refresh_balances():
                    raise
                logger.info("Retrying bundle build after balance refresh (%s)", e)
                bundle = build()
        except (InsufficientBalance, TransientNetworkError, RpcError) as e:
            return self._finish(MinerState.FAILED, f"bundle build failed: {e}", challenge)
        if challenge.expired(self.clock()):
            return self._finish(MinerState.EXPIRED, "cutoff passed before submission", challenge)

        self._transition(MinerState.SUBMITTING)
        outcome = self.submitter.submit(bundle, rebuild=build)
        if not isinstance(outcome, Accepted):
            return self._finish(MinerState.FAILED, f"bundle rejected: {outcome.reason}", challenge)

        submitted = outcome.bundle or bundle
        for payer, amount in submitted.debits.items():
            self.pool.apply_debit(payer, amount)

        if self.confirm_bundles and not self.confirm(submitted):
            return self._finish(MinerState.FAILED, "bundle dropped", challenge, bundle_id=outcome.bundle_id)
        return self._finish(
            MinerState.CONFIRMED,
            challenge=challenge,
            results=submitted.results,
            bundle_id=outcome.bundle_id,
        )

    def run(self, max_cycles: Optional[int] = None) -> Counter:
        """
        Loop over cycles until *max_cycles* ran or ``stop`` was called.

        Returns:
            Count of terminal states reached
        """
        logger.info(
            "Mining with %d wallets in batches of %d on the %s engine",
            len(self.pool), self.batch_size, self.engine.name,
        )
        while not self.cancel.is_set() and (max_cycles is None or self.cycle < max_cycles):
            outcome = self.run_cycle()
            if outcome.state is MinerState.EXPIRED and not self.cancel.is_set():
                self.sleep(self.idle_delay)
        return self.stats
