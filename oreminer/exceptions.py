"""
ORE Miner Exceptions

Custom exception classes for the ORE bundle miner.
"""


class OreMinerException(Exception):
    """Base exception for the miner."""
    pass


class TransientNetworkError(OreMinerException):
    """RPC node or relay unreachable; safe to retry."""
    pass


class RpcError(OreMinerException):
    """The RPC node answered with a JSON-RPC error."""
    pass


class StaleChallengeError(OreMinerException):
    """Challenge was superseded or its cutoff passed."""
    pass


class BundleRejected(OreMinerException):
    """Relay refused a bundle."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Bundle rejected: {reason}")


class InsufficientBalance(OreMinerException):
    """No wallet can pay the requested amount without breaking its reserve."""

    def __init__(self, required: int, reserve: int):
        self.required = required
        self.reserve = reserve
        super().__init__(
            f"No wallet can pay {required} lamports while keeping a reserve of {reserve} lamports"
        )


class DeviceInitError(OreMinerException):
    """GPU device could not be initialized. Fatal."""
    pass


class DeviceLaunchError(OreMinerException):
    """A kernel launch failed mid-search; no partial result is trusted."""
    pass


class KeyLoadError(OreMinerException):
    """Keypairs could not be loaded. Fatal."""
    pass


class InvalidKeyError(OreMinerException):
    """Invalid key material or public key."""
    pass


class ConfigurationError(OreMinerException):
    """Configuration error."""
    pass
