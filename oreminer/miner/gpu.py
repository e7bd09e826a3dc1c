"""
CUDA search engine (PyCUDA JIT).

Overview:
--------
- ``DeviceContext`` is created once at startup from the device attributes
  and passed to the engine; it owns the CUDA context and the launch
  geometry.
- Launch geometry balances ``MAX_THREADS_PER_MULTIPROCESSOR`` against
  ``MAX_THREADS_PER_BLOCK``: threads per block is their gcd, and each
  multiprocessor gets as many blocks as fit.
- Each launch is one batch of ``blocks * threads`` nonces; thread ``t``
  hashes ``offset + t``. The host polls a CUDA event after each launch,
  honouring cancellation and the deadline, then reads a device-resident
  ``found`` flag. Winners claim the flag with ``atomicCAS`` before writing
  nonce and digest.
- Preimage, threshold, flag, nonce and digest buffers are allocated once
  per engine and reused for every task.

Environment
-----------
If the compiler or runtime cannot find CUDA, set:
    export PATH=/usr/local/cuda/bin:${PATH}
    export LD_LIBRARY_PATH=/usr/local/cuda/lib64:${LD_LIBRARY_PATH}
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

import numpy as np
import pycuda.driver as cuda
from pycuda.compiler import SourceModule

from .search import SearchEngine, next_offset, verify
from .types import SearchResult, SearchTask
from ..constants import DIGEST_SIZE, GPU_POLL_INTERVAL, NONCE_SIZE, PREIMAGE_SIZE
from ..exceptions import DeviceInitError, DeviceLaunchError

logger = logging.getLogger(__name__)


# --- CUDA kernel (PyCUDA SourceModule wraps it in extern "C") ---
KECCAK_SOURCE = r"""
typedef unsigned long long u64;

__constant__ u64 KECCAK_RC[24] = {
    0x0000000000000001ULL, 0x0000000000008082ULL, 0x800000000000808aULL,
    0x8000000080008000ULL, 0x000000000000808bULL, 0x0000000080000001ULL,
    0x8000000080008081ULL, 0x8000000000008009ULL, 0x000000000000008aULL,
    0x0000000000000088ULL, 0x0000000080008009ULL, 0x000000008000000aULL,
    0x000000008000808bULL, 0x800000000000008bULL, 0x8000000000008089ULL,
    0x8000000000008003ULL, 0x8000000000008002ULL, 0x8000000000000080ULL,
    0x000000000000800aULL, 0x800000008000000aULL, 0x8000000080008081ULL,
    0x8000000000008080ULL, 0x0000000080000001ULL, 0x8000000080008008ULL
};

__constant__ int KECCAK_ROTC[24] = {
    1,  3,  6,  10, 15, 21, 28, 36, 45, 55, 2,  14,
    27, 41, 56, 8,  25, 43, 62, 18, 39, 61, 20, 44
};

__constant__ int KECCAK_PILN[24] = {
    10, 7,  11, 17, 18, 3, 5,  16, 8,  21, 24, 4,
    15, 23, 19, 13, 12, 2, 20, 14, 22, 9,  6,  1
};

__device__ __forceinline__ u64 rotl64(u64 x, int n)
{
    return (x << n) | (x >> (64 - n));
}

__device__ void keccak_f1600(u64 st[25])
{
    u64 t, bc[5];

    for (int round = 0; round < 24; ++round) {
        // theta
        #pragma unroll
        for (int i = 0; i < 5; ++i)
            bc[i] = st[i] ^ st[i + 5] ^ st[i + 10] ^ st[i + 15] ^ st[i + 20];
        #pragma unroll
        for (int i = 0; i < 5; ++i) {
            t = bc[(i + 4) % 5] ^ rotl64(bc[(i + 1) % 5], 1);
            #pragma unroll
            for (int j = 0; j < 25; j += 5)
                st[j + i] ^= t;
        }

        // rho and pi
        t = st[1];
        #pragma unroll
        for (int i = 0; i < 24; ++i) {
            int j = KECCAK_PILN[i];
            bc[0] = st[j];
            st[j] = rotl64(t, KECCAK_ROTC[i]);
            t = bc[0];
        }

        // chi
        #pragma unroll
        for (int j = 0; j < 25; j += 5) {
            #pragma unroll
            for (int i = 0; i < 5; ++i)
                bc[i] = st[j + i];
            #pragma unroll
            for (int i = 0; i < 5; ++i)
                st[j + i] ^= (~bc[(i + 1) % 5]) & bc[(i + 2) % 5];
        }

        // iota
        st[0] ^= KECCAK_RC[round];
    }
}

// One nonce per thread: nonce = start_offset + global thread id.
// Message = preimage (64 bytes) || nonce (8 bytes LE), a single 136-byte
// keccak-256 block after padding.
__global__ void search_kernel(
    const unsigned char* __restrict__ preimage,
    const unsigned char* __restrict__ threshold,
    u64 start_offset,
    unsigned int* found,
    u64* out_nonce,
    unsigned char* out_digest
) {
    if (*(volatile unsigned int*)found) return;

    u64 nonce = start_offset + (u64)blockIdx.x * blockDim.x + threadIdx.x;

    u64 st[25];
    #pragma unroll
    for (int i = 0; i < 8; ++i) {
        u64 lane = 0;
        #pragma unroll
        for (int b = 0; b < 8; ++b)
            lane |= ((u64)preimage[i * 8 + b]) << (8 * b);
        st[i] = lane;
    }
    st[8] = nonce;
    st[9] = 0x01ULL;
    #pragma unroll
    for (int i = 10; i < 25; ++i) st[i] = 0;
    st[16] ^= 0x8000000000000000ULL;

    keccak_f1600(st);

    unsigned char digest[32];
    #pragma unroll
    for (int i = 0; i < 32; ++i)
        digest[i] = (unsigned char)(st[i >> 3] >> (8 * (i & 7)));

    for (int i = 0; i < 32; ++i) {
        if (digest[i] > threshold[i]) return;
        if (digest[i] < threshold[i]) {
            if (atomicCAS(found, 0u, 1u) == 0u) {
                *out_nonce = nonce;
                for (int k = 0; k < 32; ++k) out_digest[k] = digest[k];
            }
            return;
        }
    }
}
"""


def balance_occupancy(max_threads_per_mp: int, max_threads_per_block: int) -> Tuple[int, int]:
    """
    Returns ``(threads_per_block, blocks_per_multiprocessor)``.

    Threads per block is the gcd of both limits, so a whole number of
    blocks fills each multiprocessor.
    """
    if max_threads_per_mp <= 0 or max_threads_per_block <= 0:
        raise ValueError("Thread limits must be positive")
    threads = math.gcd(max_threads_per_mp, max_threads_per_block)
    return threads, max_threads_per_mp // threads


@dataclass
class DeviceContext:
    """Device properties, launch geometry and the CUDA context of one GPU."""

    device_index: int
    name: str
    compute_capability: Tuple[int, int]
    multiprocessor_count: int
    max_threads_per_multiprocessor: int
    max_threads_per_block: int
    clock_rate_khz: int
    total_memory: int
    threads_per_block: int
    blocks: int
    context: Any = field(default=None, repr=False, compare=False)

    @property
    def batch_size(self) -> int:
        """Nonces hashed per kernel launch."""
        return self.blocks * self.threads_per_block

    @property
    def arch(self) -> str:
        return "sm_%d%d" % self.compute_capability

    @classmethod
    def create(cls, device_index: int = 0) -> "DeviceContext":
        """
        Query the device and make its context current.

        Raises:
            DeviceInitError: no driver, no such device, or unreadable properties
        """
        try:
            cuda.init()
            device = cuda.Device(device_index)
            attrs = device.get_attributes()
            per_mp = attrs[cuda.device_attribute.MAX_THREADS_PER_MULTIPROCESSOR]
            per_block = attrs[cuda.device_attribute.MAX_THREADS_PER_BLOCK]
            mp_count = attrs[cuda.device_attribute.MULTIPROCESSOR_COUNT]
            threads, blocks_per_mp = balance_occupancy(per_mp, per_block)
            context = device.make_context()
        except (cuda.Error, KeyError, ValueError) as e:
            raise DeviceInitError(f"Cannot initialize CUDA device {device_index}: {e}") from e

        ctx = cls(
            device_index=device_index,
            name=device.name(),
            compute_capability=device.compute_capability(),
            multiprocessor_count=mp_count,
            max_threads_per_multiprocessor=per_mp,
            max_threads_per_block=per_block,
            clock_rate_khz=attrs.get(cuda.device_attribute.CLOCK_RATE, 0),
            total_memory=device.total_memory(),
            threads_per_block=threads,
            blocks=blocks_per_mp * mp_count,
            context=context,
        )
        logger.info(
            "GPU %d %s (%s): %d SMs, %d threads x %d blocks per launch",
            device_index, ctx.name, ctx.arch, mp_count, threads, ctx.blocks,
        )
        return ctx

    def release(self) -> None:
        if self.context is not None:
            self.context.pop()
            self.context.detach()
            self.context = None


class DeviceBuffer:
    """A fixed-capacity device allocation that only accepts exact-size writes."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.allocation = cuda.mem_alloc(capacity)

    def write(self, data: bytes) -> None:
        if len(data) != self.capacity:
            raise ValueError(f"Buffer holds {self.capacity} bytes, got {len(data)}")
        cuda.memcpy_htod(self.allocation, np.frombuffer(bytes(data), dtype=np.uint8))

    def read(self) -> bytes:
        host = np.empty(self.capacity, dtype=np.uint8)
        cuda.memcpy_dtoh(host, self.allocation)
        return host.tobytes()

    def free(self) -> None:
        self.allocation.free()


class GpuSearchEngine(SearchEngine):
    """
    Single-stream CUDA search. Tasks are serialized on the device.

    Args:
        device: the DeviceContext created at startup
        arch: nvcc --gpu-architecture value; defaults to the device's own
        start_offset: global nonce offset of the first launch
        poll_interval: seconds between kernel completion queries
    """

    name = "gpu"

    def __init__(
        self,
        device: DeviceContext,
        arch: Optional[str] = None,
        start_offset: int = 0,
        poll_interval: float = GPU_POLL_INTERVAL,
    ):
        self.device = device
        self.start_offset = start_offset
        self.poll_interval = poll_interval

        options = ["-O3", f"--gpu-architecture={arch or device.arch}"]
        try:
            module = SourceModule(KECCAK_SOURCE, options=options)
            self._kernel = module.get_function("search_kernel")
            self._stream = cuda.Stream()
            self._done = cuda.Event()
            self._preimage = DeviceBuffer(PREIMAGE_SIZE)
            self._threshold = DeviceBuffer(DIGEST_SIZE)
            self._found = DeviceBuffer(4)
            self._nonce = DeviceBuffer(NONCE_SIZE)
            self._digest = DeviceBuffer(DIGEST_SIZE)
        except cuda.Error as e:
            raise DeviceInitError(f"Cannot compile search kernel: {e}") from e

    def _launch(self, offset: int) -> None:
        self._kernel(
            self._preimage.allocation,
            self._threshold.allocation,
            np.uint64(offset),
            self._found.allocation,
            self._nonce.allocation,
            self._digest.allocation,
            block=(self.device.threads_per_block, 1, 1),
            grid=(self.device.blocks, 1),
            stream=self._stream,
        )
        self._done.record(self._stream)

    def _wait(self, deadline: Optional[float], cancel: Optional[threading.Event]) -> bool:
        """Polls the launch event; False if the search should be abandoned."""
        while not self._done.query():
            if cancel is not None and cancel.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
        return True

    def search(
        self,
        task: SearchTask,
        worker_count: Optional[int] = None,
        time_budget: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[SearchResult]:
        # The grid is fixed by the device; worker_count does not apply here.
        deadline = None if time_budget is None else time.monotonic() + time_budget
        stride = self.device.batch_size
        offset = self.start_offset

        try:
            self._preimage.write(task.preimage)
            self._threshold.write(task.threshold)
            self._found.write(bytes(4))

            while True:
                if cancel is not None and cancel.is_set():
                    return None
                if deadline is not None and time.monotonic() >= deadline:
                    return None

                self._launch(offset)
                if not self._wait(deadline, cancel):
                    # The abandoned launch drains on the stream before the next task's copies.
                    return None

                if int.from_bytes(self._found.read(), "little"):
                    nonce = self._nonce.read()
                    digest = self._digest.read()
                    break

                offset = next_offset(offset, stride)
        except cuda.Error as e:
            raise DeviceLaunchError(f"Kernel launch failed for {task.wallet}: {e}") from e

        result = SearchResult(nonce=nonce, digest=digest, wallet=task.wallet)
        if not verify(task, result):
            raise DeviceLaunchError(f"GPU returned an invalid nonce for {task.wallet}")
        return result

    def close(self) -> None:
        for buffer in (self._preimage, self._threshold, self._found, self._nonce, self._digest):
            buffer.free()
