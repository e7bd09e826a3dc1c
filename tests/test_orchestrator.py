"""
ORE Miner Orchestrator Test Suite

Tests for the mining cycle state machine:
- Happy path: FETCH_CHALLENGE -> SEARCHING -> BUILDING -> SUBMITTING -> CONFIRMED
- Cutoff mid-search: every result discarded (scenario C)
- Contained failures: network, launch, balance, relay rejections

Run with:
    pytest tests/test_orchestrator.py -v
"""

import logging

import pytest

from oreminer.bundle import BundleBuilder, BundleSubmitter, Rejected, TipSample, WalletPool
from oreminer.exceptions import DeviceLaunchError
from oreminer.miner.orchestrator import CycleOutcome, MinerOrchestrator
from oreminer.miner.types import Challenge, MinerState
from oreminer.program.state import Bus

from conftest import ONE_SOL, FakeChain, FakeRelay, ScriptedEngine, make_challenge, make_result, proofs_for

S = MinerState


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def engine():
    return ScriptedEngine()


def make_orchestrator(chain, pool, engine, relay, oracle, clock, **kwargs):
    kwargs.setdefault("batch_size", 3)
    kwargs.setdefault("priority_fee", 25_000)
    return MinerOrchestrator(
        chain=chain,
        pool=pool,
        engine=engine,
        builder=BundleBuilder(chain, pool),
        submitter=BundleSubmitter(relay, sleep=lambda s: None),
        oracle=oracle,
        clock=clock,
        sleep=lambda s: None,
        **kwargs,
    )


@pytest.fixture
def setup(funded_chain, keypairs, engine, relay, oracle, clock):
    funded_chain.challenge = make_challenge(clock)
    pool = WalletPool(keypairs, min_reserve_lamports=1_000_000, balances=funded_chain.balances)
    orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock)
    return orchestrator, funded_chain, pool


# ============================================================================
# Happy path
# ============================================================================


class TestCycle:

    def test_starts_idle(self, setup):
        orchestrator, _, _ = setup
        assert orchestrator.state is S.IDLE
        assert orchestrator.history == [S.IDLE]

    def test_confirmed_cycle(self, setup, relay, keypairs):
        orchestrator, _, _ = setup
        outcome = orchestrator.run_cycle()

        assert isinstance(outcome, CycleOutcome)
        assert outcome.state is S.CONFIRMED
        assert outcome.bundle_id == "bundle-1"
        assert [r.wallet for r in outcome.results] == [kp.pubkey for kp in keypairs[:3]]
        assert orchestrator.history == [
            S.IDLE, S.FETCH_CHALLENGE, S.SEARCHING, S.BUILDING, S.SUBMITTING, S.CONFIRMED,
        ]
        assert len(relay.submitted) == 1
        assert len(relay.submitted[0]) == 4

    def test_debits_applied_after_acceptance(self, setup):
        orchestrator, _, pool = setup
        before = pool.total_balance()
        orchestrator.run_cycle()
        assert pool.total_balance() < before
        assert before - pool.total_balance() >= 25_000

    def test_balances_refreshed_on_schedule(self, setup):
        orchestrator, chain, pool = setup
        orchestrator.balance_refresh_cycles = 2
        chain.balances = {k: 5_000_000_000 for k in chain.balances}

        orchestrator.run_cycle()
        refreshed = pool.total_balance()
        orchestrator.run_cycle()
        # cycle 2 is not a refresh cycle: only debits move the balance
        assert pool.total_balance() < refreshed
        orchestrator.run_cycle()
        assert pool.total_balance() == 5_000_000_000 * len(pool) - sum(
            orchestrator.submitter.attempts[-1].bundle.debits.values()
        )

    def test_batches_rotate(self, setup, engine, keypairs):
        orchestrator, _, _ = setup
        orchestrator.run_cycle()
        orchestrator.run_cycle()
        assert engine.calls == [kp.pubkey for kp in keypairs[:3]] + [keypairs[3].pubkey]

    def test_time_budget_is_time_to_cutoff(self, setup, engine, clock):
        orchestrator, chain, _ = setup
        chain.challenge = make_challenge(clock, seconds=42)
        orchestrator.run_cycle()
        assert engine.budgets[0] == pytest.approx(42)

    def test_best_bus_selected(self, setup, relay, clock):
        from oreminer.program.instructions import bus_address

        orchestrator, chain, _ = setup
        chain.challenge = Challenge(
            threshold=b"\xff" * 32,
            cutoff_time=clock() + 60,
            buses=(Bus(0, 10), Bus(6, 900), Bus(3, 50)),
        )
        orchestrator.run_cycle()
        bundle = orchestrator.submitter.attempts[-1].bundle
        assert bus_address(6) in bundle.transactions[0].message.account_keys


# ============================================================================
# Cutoff (scenario C)
# ============================================================================


class TestExpiry:

    def test_scenario_c_cutoff_mid_search_discards_all(self, funded_chain, keypairs, relay, oracle, clock):
        funded_chain.challenge = make_challenge(clock, seconds=30)
        third = keypairs[2].pubkey

        def runs_past_cutoff(task):
            clock.advance(31)
            return None

        engine = ScriptedEngine({third: runs_past_cutoff})
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock)

        outcome = orchestrator.run_cycle()

        assert engine.calls == [kp.pubkey for kp in keypairs[:3]]
        assert outcome.state is S.EXPIRED
        assert outcome.results == ()
        assert relay.submitted == []
        assert orchestrator.history[-2:] == [S.SEARCHING, S.EXPIRED]

        funded_chain.challenge = make_challenge(clock, seconds=30)
        engine.script.clear()
        next_outcome = orchestrator.run_cycle()

        assert orchestrator.history[orchestrator.history.index(S.EXPIRED) + 1] is S.FETCH_CHALLENGE
        assert next_outcome.state is S.CONFIRMED

    def test_solution_returned_after_cutoff_is_dropped(self, funded_chain, keypairs, relay, oracle, clock):
        funded_chain.challenge = make_challenge(clock, seconds=10)
        first = keypairs[0].pubkey

        def late(task):
            clock.advance(11)
            return make_result(task.wallet)

        engine = ScriptedEngine({first: late})
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock)

        outcome = orchestrator.run_cycle()
        assert outcome.state is S.EXPIRED
        assert engine.calls == [first]
        assert relay.submitted == []

    def test_already_expired_challenge(self, setup, engine, clock):
        orchestrator, chain, _ = setup
        chain.challenge = make_challenge(clock, seconds=0)
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.EXPIRED
        assert engine.calls == []

    def test_run_loops_back_to_fetch(self, setup, clock):
        orchestrator, chain, _ = setup
        chain.challenges = [make_challenge(clock, seconds=0)]
        chain.challenge = make_challenge(clock, seconds=60)

        stats = orchestrator.run(max_cycles=2)

        assert stats[S.EXPIRED] == 1
        assert stats[S.CONFIRMED] == 1
        assert orchestrator.history.count(S.FETCH_CHALLENGE) == 2


# ============================================================================
# Contained failures
# ============================================================================


class TestFailures:

    def test_challenge_fetch_retried(self, setup):
        orchestrator, chain, _ = setup
        chain.challenge_failures = 2
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.CONFIRMED
        assert chain.challenge_calls == 3

    def test_challenge_fetch_exhausted_fails_cycle(self, setup):
        orchestrator, chain, _ = setup
        orchestrator.fetch_retries = 1
        chain.challenge_failures = 5
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert "challenge fetch failed" in outcome.reason

    def test_launch_failure_retries_same_task(self, funded_chain, keypairs, relay, oracle, clock):
        funded_chain.challenge = make_challenge(clock)
        first = keypairs[0].pubkey
        failures = [DeviceLaunchError("launch timed out")]

        def flaky(task):
            if failures:
                raise failures.pop()
            return make_result(task.wallet)

        engine = ScriptedEngine({first: flaky})
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock)

        outcome = orchestrator.run_cycle()
        assert outcome.state is S.CONFIRMED
        assert engine.calls[:2] == [first, first]

    def test_persistent_launch_failure_fails_cycle(self, funded_chain, keypairs, relay, oracle, clock):
        funded_chain.challenge = make_challenge(clock)

        def broken(task):
            raise DeviceLaunchError("unspecified launch failure")

        engine = ScriptedEngine({keypairs[0].pubkey: broken})
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock, launch_retries=1)

        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert len(engine.calls) == 2

    def test_unsolved_wallet_skipped(self, funded_chain, keypairs, relay, oracle, clock):
        funded_chain.challenge = make_challenge(clock)
        engine = ScriptedEngine({keypairs[1].pubkey: lambda task: None})
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock)

        outcome = orchestrator.run_cycle()
        assert outcome.state is S.CONFIRMED
        assert len(outcome.results) == 2

    def test_unregistered_wallet_skipped(self, setup, engine, keypairs):
        orchestrator, chain, _ = setup
        chain.proofs = {keypairs[0].pubkey: b"\x01" * 32}
        outcome = orchestrator.run_cycle()
        assert engine.calls == [keypairs[0].pubkey]
        assert len(outcome.results) == 1

    def test_search_uses_each_wallets_proof_hash(self, setup, engine, keypairs):
        orchestrator, chain, _ = setup
        seen = {}

        def record(task):
            seen[task.wallet] = task.preimage[:32]
            return make_result(task.wallet)

        engine.script = {kp.pubkey: record for kp in keypairs[:3]}
        orchestrator.run_cycle()
        assert seen == {kp.pubkey: chain.proofs[kp.pubkey] for kp in keypairs[:3]}

    def test_all_unregistered_batch_is_not_mined(self, setup, engine, relay):
        orchestrator, chain, _ = setup
        chain.proofs = {}
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert "proof account" in outcome.reason
        assert engine.calls == []
        assert relay.submitted == []
        assert chain.blockhash_calls == 0

    def test_insufficient_balance_fails_cycle(self, keypairs, engine, relay, oracle, clock):
        chain = FakeChain(challenge=make_challenge(clock), proofs=proofs_for(keypairs))
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(chain, pool, engine, relay, oracle, clock)

        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert "bundle build failed" in outcome.reason
        assert relay.submitted == []

    def test_deposit_seen_by_refresh_before_build(self, keypairs, engine, relay, oracle, clock):
        chain = FakeChain(challenge=make_challenge(clock), proofs=proofs_for(keypairs))
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(chain, pool, engine, relay, oracle, clock)

        def funded_during_search(task):
            chain.balances = {kp.pubkey: ONE_SOL for kp in keypairs}
            return make_result(task.wallet)

        engine.script = {keypairs[0].pubkey: funded_during_search}
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.CONFIRMED
        assert chain.balance_calls == 2

    def test_rejected_bundle_fails_cycle(self, funded_chain, keypairs, engine, oracle, clock):
        funded_chain.challenge = make_challenge(clock)
        relay = FakeRelay([Rejected("already claimed")])
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000, balances=funded_chain.balances)
        orchestrator = make_orchestrator(funded_chain, pool, engine, relay, oracle, clock)

        balances = {w.pubkey: w.balance_lamports for w in pool}
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert "already claimed" in outcome.reason
        assert {w.pubkey: w.balance_lamports for w in pool} == balances

    def test_dropped_bundle(self, setup):
        orchestrator, chain, _ = setup
        orchestrator.confirm_bundles = True
        orchestrator.confirm_timeout = 0
        chain.statuses = [None, None, None]
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert outcome.reason == "bundle dropped"

    def test_confirmation_observed(self, setup, clock):
        orchestrator, _, _ = setup
        orchestrator.confirm_bundles = True
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.CONFIRMED

    def test_failed_transaction_not_confirmed(self, setup):
        orchestrator, chain, _ = setup
        orchestrator.confirm_bundles = True
        chain.statuses = [{"confirmationStatus": "processed", "err": {"InstructionError": [0, "Custom"]}}]
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED

    def test_empty_pool(self, funded_chain, engine, relay, oracle, clock):
        orchestrator = make_orchestrator(funded_chain, WalletPool([]), engine, relay, oracle, clock)
        assert orchestrator.run_cycle().state is S.FAILED

    def test_cancel_during_search_submits_nothing(self, setup, engine, relay, keypairs):
        orchestrator, _, _ = setup

        def interrupted(task):
            orchestrator.stop()
            return None

        engine.script = {keypairs[1].pubkey: interrupted}
        outcome = orchestrator.run_cycle()
        assert outcome.state is S.FAILED
        assert outcome.reason == "cancelled"
        assert engine.calls == [kp.pubkey for kp in keypairs[:2]]
        assert relay.submitted == []
        assert S.BUILDING not in orchestrator.history

    def test_stop_ends_run(self, setup):
        orchestrator, _, _ = setup
        orchestrator.stop()
        stats = orchestrator.run()
        assert orchestrator.cycle == 0
        assert not stats


# ============================================================================
# Balance refresh and tip freshness
# ============================================================================


class TestRefresh:

    def test_failed_first_refresh_retried_next_cycle(self, keypairs, engine, relay, oracle, clock):
        chain = FakeChain(
            challenge=make_challenge(clock),
            balances={kp.pubkey: ONE_SOL for kp in keypairs},
            proofs=proofs_for(keypairs),
        )
        chain.balance_failures = 2
        pool = WalletPool(keypairs, min_reserve_lamports=1_000_000)
        orchestrator = make_orchestrator(chain, pool, engine, relay, oracle, clock)

        first = orchestrator.run_cycle()
        assert first.state is S.FAILED
        assert relay.submitted == []

        # cycle 2 is off schedule but the pool was never synced
        second = orchestrator.run_cycle()
        assert second.state is S.CONFIRMED
        assert chain.balance_calls == 3

    def test_synced_pool_not_refreshed_off_schedule(self, setup):
        orchestrator, chain, _ = setup
        orchestrator.run_cycle()
        orchestrator.run_cycle()
        assert chain.balance_calls == 1

    def test_refresh_cycles_must_be_positive(self, funded_chain, pool, engine, relay, oracle, clock):
        with pytest.raises(ValueError):
            make_orchestrator(funded_chain, pool, engine, relay, oracle, clock, balance_refresh_cycles=0)


class TestTipFreshness:

    def test_stale_window_logged(self, setup, oracle, clock, caplog):
        orchestrator, _, _ = setup
        orchestrator.max_adaptive_tip = 100_000
        oracle.observe(TipSample(40_000, observed_at=clock() - 600))
        with caplog.at_level(logging.WARNING, logger="oreminer.miner.orchestrator"):
            outcome = orchestrator.run_cycle()
        assert outcome.state is S.CONFIRMED
        assert "Tip samples are older than 60s" in caplog.text

    def test_fresh_window_not_logged(self, setup, oracle, clock, caplog):
        orchestrator, _, _ = setup
        orchestrator.max_adaptive_tip = 100_000
        oracle.observe(TipSample(40_000, observed_at=clock() - 5))
        with caplog.at_level(logging.WARNING, logger="oreminer.miner.orchestrator"):
            orchestrator.run_cycle()
        assert "Tip samples" not in caplog.text

    def test_flat_tip_ignores_window_age(self, setup, caplog):
        orchestrator, _, _ = setup
        with caplog.at_level(logging.WARNING, logger="oreminer.miner.orchestrator"):
            orchestrator.run_cycle()
        assert "Tip samples" not in caplog.text
