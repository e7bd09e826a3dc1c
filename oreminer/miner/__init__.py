"""
Proof-of-work search and the mining loop.

The GPU engine is imported from ``oreminer.miner.gpu`` on demand, since it
needs PyCUDA and a CUDA toolkit.
"""

from .types import Challenge, MinerState, SearchResult, SearchTask
from .search import SearchEngine, meets_threshold, encode_message, worker_nonces, next_offset
from .cpu import CpuSearchEngine

__all__ = [
    "Challenge",
    "MinerState",
    "SearchResult",
    "SearchTask",
    "SearchEngine",
    "meets_threshold",
    "encode_message",
    "worker_nonces",
    "next_offset",
    "CpuSearchEngine",
]
