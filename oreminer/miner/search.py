"""
Search primitives shared by the CPU and GPU engines.

Every engine scans the 64-bit nonce space with the same interleaved
schedule: worker ``i`` of ``W`` starting at ``base`` tries
``base + i, base + i + W, base + i + 2W, ...``. A message is the 64-byte
preimage followed by the little-endian nonce, and a candidate wins when
its keccak-256 digest is strictly below the threshold byte by byte.
"""

import threading
from abc import ABC, abstractmethod
from typing import Iterator, Optional

from .types import SearchResult, SearchTask
from ..constants import DIGEST_SIZE, MESSAGE_SIZE, NONCE_SIZE, NONCE_SPACE, PREIMAGE_SIZE
from ..crypto.hashing import keccak256


def meets_threshold(digest: bytes, threshold: bytes) -> bool:
    """
    Byte-lexicographic ``digest < threshold``.

    The first differing byte decides; equal bytes continue; full equality
    fails.
    """
    for d, t in zip(digest, threshold):
        if d > t:
            return False
        if d < t:
            return True
    return False


def encode_nonce(nonce: int) -> bytes:
    return (nonce % NONCE_SPACE).to_bytes(NONCE_SIZE, "little")


def encode_message(preimage: bytes, nonce: int) -> bytes:
    """Builds the 72-byte hash input, rejecting preimages of any other size."""
    if len(preimage) != PREIMAGE_SIZE:
        raise ValueError(f"Preimage must be {PREIMAGE_SIZE} bytes, got {len(preimage)}")
    message = bytes(preimage) + encode_nonce(nonce)
    if len(message) != MESSAGE_SIZE:
        raise ValueError(f"Message must be {MESSAGE_SIZE} bytes, got {len(message)}")
    return message


def digest_for(preimage: bytes, nonce: int) -> bytes:
    return keccak256(encode_message(preimage, nonce))


def worker_nonces(worker_id: int, worker_count: int, base: int, per_worker: int) -> Iterator[int]:
    """Nonces scanned by one worker in one batch of ``per_worker`` candidates."""
    if not 0 <= worker_id < worker_count:
        raise ValueError(f"worker_id {worker_id} out of range for {worker_count} workers")
    start = base + worker_id
    for k in range(per_worker):
        yield (start + k * worker_count) % NONCE_SPACE


def next_offset(base: int, worker_count: int, per_worker: int = 1) -> int:
    """Offset of the batch following the one that started at ``base``."""
    return (base + worker_count * per_worker) % NONCE_SPACE


def verify(task: SearchTask, result: SearchResult) -> bool:
    """Recomputes the digest of a result and checks it against the task."""
    digest = keccak256(task.preimage + result.nonce)
    return (
        len(result.digest) == DIGEST_SIZE
        and digest == result.digest
        and meets_threshold(digest, task.threshold)
    )


class SearchEngine(ABC):
    """A brute-force digest search backend."""

    name = "engine"

    @abstractmethod
    def search(
        self,
        task: SearchTask,
        worker_count: Optional[int] = None,
        time_budget: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[SearchResult]:
        """
        Find a nonce for *task*.

        Returns None when the time budget runs out or *cancel* is set.
        """

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
