"""
ORE Miner Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    RpcConfig,
    RelayConfig,
    MiningConfig,
    GpuConfig,
    WalletConfig,
    MinerConfig,
    load_config,
)

__all__ = [
    "RpcConfig",
    "RelayConfig",
    "MiningConfig",
    "GpuConfig",
    "WalletConfig",
    "MinerConfig",
    "load_config",
]
