"""
ORE Miner GPU Search Test Suite

Needs PyCUDA and a CUDA device; skipped otherwise.

Run with:
    pytest tests/test_gpu.py -v
"""

import threading

import pytest

pytest.importorskip("pycuda")

from oreminer.crypto.keys import Keypair
from oreminer.exceptions import DeviceInitError
from oreminer.miner.gpu import DeviceBuffer, DeviceContext, GpuSearchEngine, balance_occupancy
from oreminer.miner.search import meets_threshold, verify
from oreminer.miner.types import SearchTask

pytestmark = pytest.mark.gpu


@pytest.fixture(scope="module")
def device():
    try:
        ctx = DeviceContext.create(0)
    except DeviceInitError as e:
        pytest.skip(f"No CUDA device: {e}")
    yield ctx
    ctx.release()


@pytest.fixture(scope="module")
def engine(device):
    gpu = GpuSearchEngine(device)
    yield gpu
    gpu.close()


class TestOccupancy:

    @pytest.mark.parametrize("per_mp, per_block, expected", [
        (2048, 1024, (1024, 2)),
        (1536, 1024, (512, 3)),
        (1024, 1024, (1024, 1)),
        (2048, 768, (256, 8)),
    ])
    def test_gcd_balancing(self, per_mp, per_block, expected):
        assert balance_occupancy(per_mp, per_block) == expected

    def test_rejects_zero(self):
        with pytest.raises(ValueError):
            balance_occupancy(0, 1024)


class TestDevice:

    def test_context_geometry(self, device):
        threads, blocks_per_mp = balance_occupancy(
            device.max_threads_per_multiprocessor, device.max_threads_per_block,
        )
        assert device.threads_per_block == threads
        assert device.blocks == blocks_per_mp * device.multiprocessor_count
        assert device.batch_size == device.blocks * device.threads_per_block
        assert device.arch.startswith("sm_")

    def test_buffer_rejects_wrong_size(self, device):
        buffer = DeviceBuffer(8)
        try:
            buffer.write(b"\x01" * 8)
            assert buffer.read() == b"\x01" * 8
            with pytest.raises(ValueError):
                buffer.write(b"\x01" * 9)
        finally:
            buffer.free()


class TestGpuSearch:

    def test_finds_valid_nonce(self, engine):
        wallet = Keypair.generate().pubkey
        task = SearchTask(preimage=b"\x21" * 32 + wallet.raw, threshold=b"\x00\x40" + b"\xff" * 30, wallet=wallet)
        result = engine.search(task, time_budget=30)
        assert result is not None
        assert verify(task, result)
        assert meets_threshold(result.digest, task.threshold)

    def test_engine_reused_across_tasks(self, engine):
        for _ in range(3):
            wallet = Keypair.generate().pubkey
            task = SearchTask(preimage=bytes(32) + wallet.raw, threshold=b"\x01" + b"\xff" * 31, wallet=wallet)
            assert verify(task, engine.search(task, time_budget=30))

    def test_time_budget(self, engine):
        wallet = Keypair.generate().pubkey
        task = SearchTask(preimage=bytes(32) + wallet.raw, threshold=bytes(31) + b"\xff", wallet=wallet)
        assert engine.search(task, time_budget=0.3) is None

    def test_cancel(self, engine):
        wallet = Keypair.generate().pubkey
        task = SearchTask(preimage=bytes(32) + wallet.raw, threshold=bytes(32), wallet=wallet)
        cancel = threading.Event()
        cancel.set()
        assert engine.search(task, cancel=cancel) is None
