"""
ORE Miner Wallet Pool and Tip Oracle Test Suite

Run with:
    pytest tests/test_wallets.py -v
"""

import random

import pytest

from oreminer.bundle import TipOracle, TipSample, WalletPool
from oreminer.crypto.keys import Keypair
from oreminer.exceptions import InsufficientBalance, InvalidKeyError

from conftest import FakeChain


def pool_with(balances, reserve=0):
    keypairs = [Keypair.generate() for _ in balances]
    pool = WalletPool(
        keypairs,
        min_reserve_lamports=reserve,
        balances={kp.pubkey: b for kp, b in zip(keypairs, balances)},
    )
    return pool, [kp.pubkey for kp in keypairs]


# ============================================================================
# Payer selection
# ============================================================================


class TestPayerSelection:

    def test_richest_wallet_first(self):
        pool, keys = pool_with([10_000, 50_000, 5_000])
        assert pool.select_fee_payer(1_000).pubkey == keys[1]
        assert pool.select_tip_payer(1_000).pubkey == keys[1]

    def test_never_breaks_reserve(self):
        pool, keys = pool_with([10_000, 50_000, 5_000], reserve=45_000)
        assert pool.select_fee_payer(5_000).pubkey == keys[1]
        with pytest.raises(InsufficientBalance) as exc_info:
            pool.select_fee_payer(5_001)
        assert exc_info.value.required == 5_001
        assert exc_info.value.reserve == 45_000

    def test_reserve_property_over_random_pools(self):
        rng = random.Random(7)
        for _ in range(50):
            balances = [rng.randrange(0, 100_000) for _ in range(rng.randrange(1, 8))]
            reserve = rng.randrange(0, 50_000)
            amount = rng.randrange(0, 50_000)
            pool, _ = pool_with(balances, reserve=reserve)
            try:
                wallet = pool.select_fee_payer(amount)
            except InsufficientBalance:
                assert all(b - amount < reserve for b in balances)
            else:
                assert wallet.balance_lamports - amount >= reserve
                assert wallet.balance_lamports == max(b for b in balances if b - amount >= reserve)

    def test_excluded_wallets_avoided_when_possible(self):
        pool, keys = pool_with([10_000, 50_000, 5_000])
        assert pool.select_fee_payer(1_000, excluding=[keys[1]]).pubkey == keys[0]
        assert pool.select_fee_payer(1_000, excluding=keys[:2]).pubkey == keys[2]

    def test_excluded_wallet_used_as_last_resort(self):
        pool, keys = pool_with([10_000, 50_000, 5_000], reserve=20_000)
        assert pool.select_fee_payer(1_000, excluding=[keys[1]]).pubkey == keys[1]

    def test_pending_debits_count_against_reserve(self):
        pool, keys = pool_with([30_000, 25_000], reserve=10_000)
        pending = {keys[0]: 15_000}
        assert pool.select_fee_payer(5_000, pending=pending).pubkey == keys[1]
        with pytest.raises(InsufficientBalance):
            pool.select_fee_payer(10_000, pending={keys[0]: 15_000, keys[1]: 10_000})

    def test_empty_pool_raises(self):
        with pytest.raises(InsufficientBalance):
            WalletPool([]).select_fee_payer(0)


# ============================================================================
# Accounting and signing
# ============================================================================


class TestAccounting:

    def test_apply_debit(self):
        pool, keys = pool_with([10_000, 50_000])
        pool.apply_debit(keys[1], 45_000)
        assert pool.get(keys[1]).balance_lamports == 5_000
        assert pool.get(keys[1]).last_used_at > 0
        assert pool.select_fee_payer(0).pubkey == keys[0]

    def test_debit_never_goes_negative(self):
        pool, keys = pool_with([1_000])
        pool.apply_debit(keys[0], 5_000)
        assert pool.get(keys[0]).balance_lamports == 0

    def test_refresh_reconciles_with_chain(self):
        pool, keys = pool_with([10_000, 50_000])
        pool.apply_debit(keys[1], 20_000)
        chain = FakeChain(balances={keys[0]: 70_000, keys[1]: 49_000})
        pool.refresh_balances(chain)
        assert pool.get(keys[0]).balance_lamports == 70_000
        assert pool.get(keys[1]).balance_lamports == 49_000

    def test_missing_accounts_refresh_to_zero(self):
        pool, keys = pool_with([10_000])
        pool.refresh_balances(FakeChain())
        assert pool.get(keys[0]).balance_lamports == 0

    def test_batches(self):
        pool, keys = pool_with([1] * 5)
        assert pool.batches(2) == [keys[0:2], keys[2:4], keys[4:5]]
        with pytest.raises(ValueError):
            pool.batches(0)

    def test_sign_uses_wallet_key(self):
        from nacl.signing import VerifyKey

        pool, keys = pool_with([1])
        signature = pool.sign(keys[0], b"message")
        VerifyKey(keys[0].raw).verify(b"message", signature)

    def test_unknown_wallet(self):
        pool, _ = pool_with([1])
        stranger = Keypair.generate().pubkey
        with pytest.raises(InvalidKeyError):
            pool.sign(stranger, b"x")
        with pytest.raises(InvalidKeyError):
            pool.get(stranger)

    def test_wallet_view_has_no_secret(self):
        pool, _ = pool_with([1])
        wallet = next(iter(pool))
        assert not any(isinstance(v, Keypair) for v in vars(wallet).values())


# ============================================================================
# Tip oracle
# ============================================================================


class TestTipOracle:

    def test_flat_fee_without_cap(self):
        oracle = TipOracle(window=4)
        assert oracle.current_tip(50_000, 0) == 50_000
        oracle.observe(TipSample(1_000_000))
        assert oracle.current_tip(50_000, 0) == 50_000

    def test_adaptive_tip_follows_latest_p50(self):
        oracle = TipOracle(window=4)
        oracle.observe(TipSample(20_000))
        oracle.observe(TipSample(30_000))
        assert oracle.window_p50() == 30_000
        assert oracle.current_tip(50_000, 100_000) == 30_000

    def test_adaptive_tip_capped(self):
        oracle = TipOracle(window=4)
        oracle.observe(TipSample(500_000))
        assert oracle.current_tip(50_000, 100_000) == 100_000

    def test_empty_window_with_cap(self):
        oracle = TipOracle(window=4)
        assert oracle.window_p50() is None
        assert oracle.current_tip(50_000, 100_000) == 50_000
        assert oracle.current_tip(500_000, 100_000) == 100_000

    def test_cap_holds_for_any_sample_sequence(self):
        rng = random.Random(3)
        for _ in range(20):
            oracle = TipOracle(window=rng.randrange(1, 10))
            cap = rng.randrange(1, 1_000_000)
            fee = rng.randrange(0, 1_000_000)
            for _ in range(rng.randrange(0, 30)):
                oracle.observe(TipSample(rng.randrange(0, 5_000_000)))
                assert oracle.current_tip(fee, cap) <= cap
                assert oracle.current_tip(fee, 0) == fee

    def test_window_evicts_oldest(self):
        oracle = TipOracle(window=3)
        for p50 in (1, 2, 3, 4, 5):
            oracle.observe(TipSample(p50))
        assert len(oracle) == 3
        assert [s.p50_lamports for s in oracle.samples] == [3, 4, 5]

    def test_staleness(self):
        oracle = TipOracle()
        assert oracle.stale(10, now=100.0)
        oracle.observe(TipSample(1, observed_at=95.0))
        assert not oracle.stale(10, now=100.0)
        assert oracle.stale(10, now=200.0)

    def test_rejects_bad_input(self):
        with pytest.raises(ValueError):
            TipOracle(window=0)
        with pytest.raises(ValueError):
            TipSample(-1)
