"""
Adaptive Jito tip oracle.

Keeps a bounded window of tip floor samples reported by the relay. The
window aggregate is the most recent 50th percentile, so the tip follows
the current market and not historical extremes.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = 32


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TipSample:
    """A landed-tip percentile observed at a point in time."""
    p50_lamports: int
    observed_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.p50_lamports < 0:
            raise ValueError("Tip sample must be >= 0 lamports")


# ---------------------------------------------------------------------------
# Oracle
# ---------------------------------------------------------------------------

class TipOracle:
    """
    Sliding window of tip samples.

    ``observe`` is called from the tip feed thread while the orchestrator
    reads ``current_tip``; both go through one lock.
    """

    def __init__(self, window: int = DEFAULT_WINDOW):
        if window < 1:
            raise ValueError("Tip window must hold at least one sample")
        self.window = window
        self._samples: Deque[TipSample] = deque(maxlen=window)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    @property
    def samples(self) -> List[TipSample]:
        with self._lock:
            return list(self._samples)

    def observe(self, sample: TipSample) -> None:
        with self._lock:
            self._samples.append(sample)
        logger.debug("Tip sample %d lamports", sample.p50_lamports)

    def window_p50(self) -> Optional[int]:
        """Most recent p50 in the window, or None before the first sample."""
        with self._lock:
            if not self._samples:
                return None
            return self._samples[-1].p50_lamports

    def current_tip(self, configured_fee: int, max_adaptive_tip: int = 0) -> int:
        """
        Tip to pay this cycle.

        Args:
            configured_fee: flat tip used when no adaptive cap is set
            max_adaptive_tip: cap on the adaptive tip; 0 disables adaptation

        Returns:
            Lamports, never above ``max_adaptive_tip`` when a cap is set
        """
        if max_adaptive_tip <= 0:
            return configured_fee

        p50 = self.window_p50()
        if p50 is None:
            return min(configured_fee, max_adaptive_tip)
        return min(p50, max_adaptive_tip)

    def stale(self, max_age: float, now: Optional[float] = None) -> bool:
        """True when the newest sample is older than *max_age* seconds."""
        now = now if now is not None else time.time()
        with self._lock:
            if not self._samples:
                return True
            return now - self._samples[-1].observed_at > max_age
