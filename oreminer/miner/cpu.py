"""
Multi-process CPU search engine.

Each worker process scans its interleaved stride of the nonce space in
bounded batches and checks the shared ``found`` flag between batches. The
first winner claims the flag under its lock before writing nonce and
digest, so a second winner in the same batch can never overwrite a
half-written result.
"""

import logging
import multiprocessing as mp
import threading
import time
from typing import Optional

from .search import (
    SearchEngine,
    encode_nonce,
    meets_threshold,
    next_offset,
    verify,
    worker_nonces,
)
from .types import SearchResult, SearchTask
from ..constants import CPU_BATCH_SIZE, DIGEST_SIZE, NONCE_SIZE
from ..crypto.hashing import keccak256

logger = logging.getLogger(__name__)

RESULT_SIZE = NONCE_SIZE + DIGEST_SIZE


def scan_batch(preimage: bytes, threshold: bytes, nonces):
    """Returns ``(nonce, digest)`` for the first winning nonce, or None."""
    for nonce in nonces:
        nonce_bytes = encode_nonce(nonce)
        digest = keccak256(preimage + nonce_bytes)
        if meets_threshold(digest, threshold):
            return nonce_bytes, digest
    return None


def run_worker(
    worker_id: int,
    worker_count: int,
    start_offset: int,
    batch_size: int,
    preimage: bytes,
    threshold: bytes,
    found,
    result,
    stop,
) -> None:
    """
    The search loop executed by each worker process.
    """
    base = start_offset
    while not stop.is_set() and not found.value:
        nonces = worker_nonces(worker_id, worker_count, base, batch_size)
        hit = scan_batch(preimage, threshold, nonces)
        if hit is not None:
            nonce_bytes, digest = hit
            with found.get_lock():
                if found.value:
                    return
                result[:NONCE_SIZE] = nonce_bytes
                result[NONCE_SIZE:RESULT_SIZE] = digest
                found.value = 1
            stop.set()
            return
        base = next_offset(base, worker_count, batch_size)


def worker_process(*args) -> None:
    """A wrapper for the search loop to report failures from a child process."""
    try:
        run_worker(*args)
    except Exception as e:
        logger.error("Critical error in CPU worker %s: %s", args[0], e)
        args[-1].set()


class CpuSearchEngine(SearchEngine):
    """
    Fixed-size process pool searching one task at a time.

    Args:
        workers: default number of worker processes
        batch_size: nonces per worker between found-flag checks
        start_offset: global nonce offset of the first batch
        poll_interval: seconds between parent checks of flag, deadline and cancel
        mp_context: multiprocessing context, spawn by default since the miner
            runs a tip feed thread next to the search
    """

    name = "cpu"

    def __init__(
        self,
        workers: int = 1,
        batch_size: int = CPU_BATCH_SIZE,
        start_offset: int = 0,
        poll_interval: float = 0.01,
        mp_context: Optional[mp.context.BaseContext] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.workers = workers
        self.batch_size = batch_size
        self.start_offset = start_offset
        self.poll_interval = poll_interval
        self._ctx = mp_context or mp.get_context("spawn")

    def search(
        self,
        task: SearchTask,
        worker_count: Optional[int] = None,
        time_budget: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[SearchResult]:
        worker_count = worker_count or self.workers
        deadline = None if time_budget is None else time.monotonic() + time_budget

        found = self._ctx.Value("b", 0)
        result = self._ctx.RawArray("B", RESULT_SIZE)
        stop = self._ctx.Event()

        processes = []
        for i in range(worker_count):
            p = self._ctx.Process(
                target=worker_process,
                daemon=True,
                args=(i, worker_count, self.start_offset, self.batch_size,
                      task.preimage, task.threshold, found, result, stop),
            )
            p.start()
            processes.append(p)

        try:
            while not stop.is_set():
                if cancel is not None and cancel.is_set():
                    logger.debug("Search for %s cancelled", task.wallet)
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.debug("Search for %s ran out of time", task.wallet)
                    break
                if not any(p.is_alive() for p in processes):
                    break
                stop.wait(self.poll_interval)
        finally:
            stop.set()
            for p in processes:
                p.join(timeout=1.0)
                if p.is_alive():
                    p.terminate()
                    p.join()

        with found.get_lock():
            if not found.value:
                return None
            raw = bytes(result)

        search_result = SearchResult(
            nonce=raw[:NONCE_SIZE],
            digest=raw[NONCE_SIZE:RESULT_SIZE],
            wallet=task.wallet,
        )
        if not verify(task, search_result):
            logger.error("CPU worker returned an invalid nonce for %s", task.wallet)
            return None
        return search_result
