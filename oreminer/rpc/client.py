"""
Solana JSON-RPC client.

Contains the chain-facing calls the miner needs: challenge discovery
(treasury, clock, buses and proof accounts), recent blockhash, balances,
signature statuses, and the simulation and sending of account management
transactions.
"""

import base64
import time
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import base58
import requests

from ..constants import CONFIRMED_STATUSES, DEFAULT_RPC_URL, ORE_EPOCH_DURATION
from ..crypto.keys import Pubkey
from ..exceptions import RpcError, TransientNetworkError
from ..logger import get_logger
from ..miner.types import Challenge
from ..program.instructions import SYSVAR_CLOCK, bus_addresses, proof_address, treasury_address
from ..program.state import Bus, Clock, Proof, Treasury
from ..transactions.transaction import Transaction

logger = get_logger(__name__)

FETCH_ACCOUNT_LIMIT = 100
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class Blockhash(NamedTuple):
    hash: bytes
    slot: int


class AccountInfo(NamedTuple):
    lamports: int
    data: bytes


class ChainClient:
    """
    Blocking JSON-RPC client over a pooled ``requests`` session.

    Args:
        url: RPC endpoint
        timeout: per-request timeout in seconds
        max_retries: attempts for network failures before TransientNetworkError
        retry_delay: first retry delay; doubles on every attempt
        commitment: commitment used for reads
    """

    def __init__(
        self,
        url: str = DEFAULT_RPC_URL,
        timeout: float = 10.0,
        max_retries: int = 5,
        retry_delay: float = 0.5,
        commitment: str = "confirmed",
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.commitment = commitment
        self.session = session or requests.Session()
        self._request_id = 0

    # --- transport --------------------------------------------------------

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """
        Execute one JSON-RPC call and return ``result``.

        Network failures and throttling are retried with a doubling delay.

        Raises:
            TransientNetworkError: node unreachable after every attempt
            RpcError: the node answered with an error object or a bad status
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}

        last_error = None
        for attempt in range(self.max_retries):
            if attempt:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.info(
                    "[RPC] %s attempt %d/%d failed (%s), retrying in %.1fs",
                    method, attempt, self.max_retries, last_error, delay,
                )
                time.sleep(delay)

            try:
                resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as req_exc:
                last_error = req_exc
                continue
            except requests.exceptions.RequestException as req_exc:
                raise RpcError(f"{method} failed: {req_exc}") from req_exc

            if resp.status_code in RETRYABLE_STATUS:
                last_error = f"HTTP {resp.status_code}"
                continue
            if resp.status_code != 200:
                raise RpcError(f"{method} failed: HTTP {resp.status_code}: {resp.text[:200]}")

            try:
                data = resp.json()
            except ValueError as e:
                raise RpcError(f"{method} returned invalid JSON: {e}") from e

            if data.get("error"):
                raise RpcError(f"{method} error: {data['error']}")
            return data.get("result")

        raise TransientNetworkError(
            f"{method}: RPC node unreachable after {self.max_retries} attempts: {last_error}"
        )

    # --- accounts ---------------------------------------------------------

    def get_multiple_accounts(
        self,
        pubkeys: Sequence[Pubkey],
        commitment: str = "processed",
    ) -> List[Optional[AccountInfo]]:
        accounts: List[Optional[AccountInfo]] = []
        for start in range(0, len(pubkeys), FETCH_ACCOUNT_LIMIT):
            chunk = pubkeys[start:start + FETCH_ACCOUNT_LIMIT]
            result = self.call(
                "getMultipleAccounts",
                [[str(k) for k in chunk], {"encoding": "base64", "commitment": commitment}],
            )
            for value in result["value"]:
                if value is None:
                    accounts.append(None)
                else:
                    accounts.append(AccountInfo(value["lamports"], base64.b64decode(value["data"][0])))
        return accounts

    def get_account(self, pubkey: Pubkey) -> Optional[AccountInfo]:
        return self.get_multiple_accounts([pubkey], commitment=self.commitment)[0]

    def get_proofs(self, authorities: Sequence[Pubkey]) -> Dict[Pubkey, Optional[Proof]]:
        """Proof account of every authority; None when it is not registered."""
        infos = self.get_multiple_accounts([proof_address(a) for a in authorities], commitment=self.commitment)
        proofs: Dict[Pubkey, Optional[Proof]] = {}
        for authority, info in zip(authorities, infos):
            if info is None:
                proofs[authority] = None
                continue
            try:
                proofs[authority] = Proof.from_bytes(info.data)
            except ValueError as e:
                raise RpcError(f"failed to decode proof of {authority}: {e}") from e
        return proofs

    def get_balance(self, pubkey: Pubkey) -> int:
        result = self.call("getBalance", [str(pubkey), {"commitment": self.commitment}])
        return int(result["value"])

    def get_balances(self, pubkeys: Sequence[Pubkey]) -> Dict[Pubkey, int]:
        """Lamports per key; keys without an account report 0."""
        accounts = self.get_multiple_accounts(list(pubkeys), commitment=self.commitment)
        return {key: (info.lamports if info else 0) for key, info in zip(pubkeys, accounts)}

    # --- blocks and signatures -------------------------------------------

    def get_recent_blockhash(self) -> Blockhash:
        result = self.call("getLatestBlockhash", [{"commitment": self.commitment}])
        return Blockhash(base58.b58decode(result["value"]["blockhash"]), int(result["context"]["slot"]))

    def get_signature_statuses(self, signatures: Iterable[str]) -> Tuple[List[Optional[dict]], int]:
        result = self.call("getSignatureStatuses", [list(signatures)])
        return result["value"], int(result["context"]["slot"])

    # --- transactions -----------------------------------------------------

    def simulate_transaction(self, tx: Transaction) -> Optional[Any]:
        """
        Simulate *tx* against the latest bank.

        Signatures are not verified and the blockhash is replaced, so a
        bundle can be checked before it is sent.

        Returns:
            The simulation error, None when the transaction would succeed
        """
        encoded = base64.b64encode(tx.serialize()).decode("ascii")
        result = self.call("simulateTransaction", [encoded, {
            "encoding": "base64",
            "sigVerify": False,
            "replaceRecentBlockhash": True,
            "commitment": "processed",
        }])
        value = result["value"]
        if value.get("err") is not None:
            for line in value.get("logs") or ():
                logger.debug("[simulation] %s", line)
        return value.get("err")

    def send_transaction(self, tx: Transaction) -> str:
        encoded = base64.b64encode(tx.serialize()).decode("ascii")
        return self.call("sendTransaction", [encoded, {
            "encoding": "base64",
            "preflightCommitment": self.commitment,
        }])

    def wait_for_signature(
        self,
        signature: str,
        timeout: float = 60.0,
        poll_interval: float = 2.0,
    ) -> bool:
        """
        Poll until *signature* is confirmed.

        Raises:
            RpcError: the transaction landed with an error
        """
        deadline = time.time() + timeout
        while time.time() < deadline:
            statuses, _slot = self.get_signature_statuses([signature])
            status = statuses[0] if statuses else None
            if status:
                if status.get("err") is not None:
                    raise RpcError(f"transaction {signature} failed: {status['err']}")
                if status.get("confirmationStatus") in CONFIRMED_STATUSES:
                    return True
            time.sleep(poll_interval)
        return False

    # --- challenge --------------------------------------------------------

    def get_challenge(self, authorities: Sequence[Pubkey] = ()) -> Challenge:
        """
        Read the treasury, clock, buses and the proofs of *authorities*.

        Authorities without a proof account (not registered) are left out
        of ``proof_hashes``.
        """
        system = [treasury_address(), SYSVAR_CLOCK, *bus_addresses()]
        proofs = [proof_address(a) for a in authorities]
        accounts = self.get_multiple_accounts(system + proofs)

        treasury_info, clock_info, *rest = accounts
        bus_infos = rest[:len(system) - 2]
        proof_infos = rest[len(system) - 2:]
        if treasury_info is None:
            raise RpcError("treasury account doesn't exist")
        if clock_info is None:
            raise RpcError("clock account doesn't exist")

        try:
            treasury = Treasury.from_bytes(treasury_info.data)
            clock = Clock.from_bytes(clock_info.data)
            buses = tuple(Bus.from_bytes(info.data) for info in bus_infos if info is not None)
        except ValueError as e:
            raise RpcError(f"failed to decode system accounts: {e}") from e

        proof_hashes: Dict[Pubkey, bytes] = {}
        for authority, info in zip(authorities, proof_infos):
            if info is None:
                logger.warning("Proof account of %s is not registered", authority)
                continue
            try:
                proof_hashes[authority] = Proof.from_bytes(info.data).hash
            except ValueError as e:
                logger.warning("Failed to decode proof of %s: %s", authority, e)

        # The chain clock and ours differ; only the remaining span is trusted.
        time_to_next_epoch = treasury.last_reset_at + ORE_EPOCH_DURATION - clock.unix_timestamp
        cutoff_time = time.time() + max(0, time_to_next_epoch)

        return Challenge(
            threshold=treasury.difficulty,
            cutoff_time=cutoff_time,
            proof_hashes=proof_hashes,
            buses=buses,
            reward_rate=treasury.reward_rate,
        )
