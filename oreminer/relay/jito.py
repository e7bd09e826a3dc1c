"""
Jito block engine client and tip floor feed.
"""

import threading
import time
from typing import Iterator, Optional, Sequence

import requests

from ..bundle.submitter import Accepted, Rejected
from ..bundle.tips import TipOracle, TipSample
from ..constants import JITO_BLOCK_ENGINE_URL, JITO_TIP_FLOOR_URL, LAMPORTS_PER_SOL, MAX_BUNDLE_SIZE
from ..exceptions import BundleRejected, TransientNetworkError
from ..logger import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _request(session: requests.Session, method: str, url: str, timeout: float, **kwargs) -> requests.Response:
    try:
        resp = session.request(method, url, timeout=timeout, **kwargs)
    except requests.exceptions.RequestException as e:
        raise TransientNetworkError(f"{url} unreachable: {e}") from e
    if resp.status_code in RETRYABLE_STATUS:
        raise TransientNetworkError(f"{url} answered HTTP {resp.status_code}")
    return resp


class JitoRelay:
    """
    ``sendBundle`` over the block engine JSON-RPC endpoint.

    Args:
        url: bundles endpoint of the block engine
        timeout: request timeout in seconds
    """

    def __init__(
        self,
        url: str = JITO_BLOCK_ENGINE_URL,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._request_id = 0

    def send_bundle(self, encoded_txs: Sequence[str]) -> str:
        """
        Send base58 encoded transactions as one bundle.

        Returns:
            The bundle id assigned by the block engine

        Raises:
            BundleRejected: the engine refused the bundle
            TransientNetworkError: the engine could not be reached
        """
        if not 0 < len(encoded_txs) <= MAX_BUNDLE_SIZE:
            raise BundleRejected(f"bundle must hold 1 to {MAX_BUNDLE_SIZE} transactions")

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": "sendBundle",
            "params": [list(encoded_txs)],
        }
        resp = _request(self.session, "POST", self.url, self.timeout, json=payload)
        try:
            data = resp.json()
        except ValueError:
            raise BundleRejected(f"HTTP {resp.status_code}: {resp.text[:200]}") from None

        error = data.get("error")
        if error:
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise BundleRejected(message)
        if resp.status_code != 200 or not data.get("result"):
            raise BundleRejected(f"HTTP {resp.status_code}: no bundle id")
        return data["result"]

    def submit_bundle(self, encoded_txs: Sequence[str]):
        """``send_bundle`` with rejections returned as values."""
        try:
            return Accepted(self.send_bundle(encoded_txs))
        except BundleRejected as e:
            return Rejected(e.reason)


def parse_tip_floor(payload, observed_at: Optional[float] = None) -> TipSample:
    """
    Build a sample from a ``tip_floor`` response.

    The endpoint returns a one-element list whose percentiles are in SOL.
    """
    entry = payload[0] if isinstance(payload, list) else payload
    if not isinstance(entry, dict) or "landed_tips_50th_percentile" not in entry:
        raise ValueError(f"Unexpected tip floor payload: {payload!r}")
    p50 = int(round(float(entry["landed_tips_50th_percentile"]) * LAMPORTS_PER_SOL))
    return TipSample(p50_lamports=p50, observed_at=observed_at if observed_at is not None else time.time())


class TipFeed:
    """
    Polls the tip floor endpoint from a daemon thread and feeds the oracle.

    Consumption is best-effort: failed polls are logged and the window
    simply gets no sample for that interval.
    """

    def __init__(
        self,
        oracle: TipOracle,
        url: str = JITO_TIP_FLOOR_URL,
        interval: float = 10.0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.oracle = oracle
        self.url = url
        self.interval = interval
        self.timeout = timeout
        self.session = session or requests.Session()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def fetch_sample(self) -> TipSample:
        resp = _request(self.session, "GET", self.url, self.timeout)
        if resp.status_code != 200:
            raise ValueError(f"Tip floor answered HTTP {resp.status_code}")
        return parse_tip_floor(resp.json())

    def poll_once(self) -> Optional[TipSample]:
        try:
            sample = self.fetch_sample()
        except (TransientNetworkError, ValueError) as e:
            logger.warning("Tip floor poll failed: %s", e)
            return None
        self.oracle.observe(sample)
        return sample

    def _run(self) -> None:
        while not self._stop.is_set():
            self.poll_once()
            self._stop.wait(self.interval)

    def start(self) -> "TipFeed":
        if self._thread is None or not self._thread.is_alive():
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="tip-feed", daemon=True)
            self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def stream(self) -> Iterator[TipSample]:
        """Poll in the calling thread, yielding each sample until stopped."""
        while not self._stop.is_set():
            sample = self.poll_once()
            if sample is not None:
                yield sample
            self._stop.wait(self.interval)
