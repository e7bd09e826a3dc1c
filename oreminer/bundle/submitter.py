"""
Bundle submission with a bounded retry policy.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union

from .builder import Bundle
from ..exceptions import OreMinerException, TransientNetworkError

logger = logging.getLogger(__name__)

STALE_BLOCKHASH = "stale_blockhash"
TIP_TOO_LOW = "tip_too_low"
NETWORK = "network"


@dataclass(frozen=True)
class Accepted:
    bundle_id: str
    bundle: Optional[Bundle] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class Rejected:
    reason: str


Outcome = Union[Accepted, Rejected]


@dataclass
class SubmissionAttempt:
    bundle: Bundle
    outcome: Outcome
    submitted_at: float


def classify_rejection(reason: str) -> Optional[str]:
    """Retry class of a relay rejection, None when it is final."""
    text = reason.lower()
    if "blockhash" in text:
        return STALE_BLOCKHASH
    if "tip" in text and any(word in text for word in ("low", "minimum", "insufficient", "below")):
        return TIP_TOO_LOW
    return None


class BundleSubmitter:
    """
    Sends bundles to the relay.

    Stale blockhash and low tip rejections call ``rebuild`` for a fresh
    bundle; transient network errors resend the same bundle. Other
    rejections are returned at once. Nothing is raised once retries run
    out; the last rejection is returned instead.

    Args:
        relay: object with ``submit_bundle(encoded_txs) -> Accepted | Rejected``
        max_retries: resubmissions after the first attempt
        backoff_base: delay before the first retry, doubled on every retry
        backoff_max: upper bound of a single delay
        sleep: sleep function, replaced in tests
    """

    def __init__(
        self,
        relay,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.relay = relay
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep
        self.attempts: List[SubmissionAttempt] = []

    def backoff(self, retry: int) -> float:
        return min(self.backoff_base * (2 ** retry), self.backoff_max)

    def _send(self, bundle: Bundle) -> Tuple[Outcome, bool]:
        """Returns the outcome and whether it was a transient network failure."""
        transient = False
        try:
            outcome = self.relay.submit_bundle(bundle.encode())
        except TransientNetworkError as e:
            outcome = Rejected(f"{NETWORK}: {e}")
            transient = True
        self.attempts.append(SubmissionAttempt(bundle, outcome, time.time()))
        return outcome, transient

    def submit(self, bundle: Bundle, rebuild: Optional[Callable[[], Bundle]] = None) -> Outcome:
        """
        Submit *bundle*, retrying under the policy.

        ``attempts`` is reset on every call and lists each submission made.
        """
        self.attempts = []
        current = bundle
        outcome: Outcome = Rejected("not submitted")

        for retry in range(self.max_retries + 1):
            if retry:
                delay = self.backoff(retry - 1)
                logger.info("Resubmitting bundle in %.2fs (retry %d/%d)", delay, retry, self.max_retries)
                self.sleep(delay)

            outcome, transient = self._send(current)
            if isinstance(outcome, Accepted):
                logger.info("Bundle %s accepted after %d attempt(s)", outcome.bundle_id, len(self.attempts))
                return Accepted(outcome.bundle_id, current)

            if transient:
                logger.warning("Relay unreachable: %s", outcome.reason)
                continue

            kind = classify_rejection(outcome.reason)
            if kind is None:
                logger.warning("Bundle rejected: %s", outcome.reason)
                return outcome
            if rebuild is None:
                logger.warning("Bundle rejected (%s) and cannot be rebuilt", outcome.reason)
                return outcome

            logger.info("Bundle rejected (%s), rebuilding", outcome.reason)
            try:
                current = rebuild()
            except OreMinerException as e:
                return Rejected(f"rebuild failed: {e}")

        logger.warning("Bundle dropped after %d attempts: %s", len(self.attempts), outcome.reason)
        return outcome
