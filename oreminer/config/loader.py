"""
ORE Miner TOML Configuration Loader

Loads all sections of config.toml at startup with environment variable overrides.
Each section is a dataclass with ``from_dict`` and ``apply_env``.

Environment variable mapping:
    [rpc] url                   → ORE_RPC_URL
    [mining] priority_fee       → ORE_PRIORITY_FEE
    [mining] max_adaptive_tip   → ORE_MAX_ADAPTIVE_TIP
    [wallets] key_folder        → ORE_KEY_FOLDER
    [gpu] device                → ORE_GPU_DEVICE
    ...

Keypairs are never read from TOML; only the folder that holds them.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..constants import (
    DEFAULT_RPC_URL,
    JITO_BLOCK_ENGINE_URL,
    JITO_TIP_FLOOR_URL,
    MAX_BUNDLE_SIZE,
)
from ..crypto.keys import Pubkey
from ..exceptions import ConfigurationError, InvalidKeyError

logger = logging.getLogger(__name__)


@dataclass
class RpcConfig:
    """[rpc] section."""
    url: str = DEFAULT_RPC_URL
    timeout: float = 10.0
    max_retries: int = 5
    retry_delay: float = 0.5

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RpcConfig":
        return cls(
            url=data.get("url", DEFAULT_RPC_URL),
            timeout=data.get("timeout", 10.0),
            max_retries=data.get("max_retries", 5),
            retry_delay=data.get("retry_delay", 0.5),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("ORE_RPC_URL"):
            self.url = v


@dataclass
class RelayConfig:
    """[relay] section."""
    url: str = JITO_BLOCK_ENGINE_URL
    tip_floor_url: str = JITO_TIP_FLOOR_URL
    tip_poll_interval: float = 5.0
    tip_window: int = 32
    tip_max_age: float = 60.0
    timeout: float = 10.0
    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayConfig":
        return cls(
            url=data.get("url", JITO_BLOCK_ENGINE_URL),
            tip_floor_url=data.get("tip_floor_url", JITO_TIP_FLOOR_URL),
            tip_poll_interval=data.get("tip_poll_interval", 5.0),
            tip_window=data.get("tip_window", 32),
            tip_max_age=data.get("tip_max_age", 60.0),
            timeout=data.get("timeout", 10.0),
            max_retries=data.get("max_retries", 3),
            backoff_base=data.get("backoff_base", 0.5),
            backoff_max=data.get("backoff_max", 8.0),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("ORE_RELAY_URL"):
            self.url = v


@dataclass
class MiningConfig:
    """[mining] section."""
    backend: str = "auto"
    cpu_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    batch_size: int = MAX_BUNDLE_SIZE - 1
    priority_fee: int = 50_000
    max_adaptive_tip: int = 0
    launch_retries: int = 2
    balance_refresh_cycles: int = 10
    confirm_bundles: bool = True
    confirm_timeout: float = 60.0
    beneficiary: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MiningConfig":
        return cls(
            backend=data.get("backend", "auto"),
            cpu_workers=data.get("cpu_workers", os.cpu_count() or 1),
            batch_size=data.get("batch_size", MAX_BUNDLE_SIZE - 1),
            priority_fee=data.get("priority_fee", 50_000),
            max_adaptive_tip=data.get("max_adaptive_tip", 0),
            launch_retries=data.get("launch_retries", 2),
            balance_refresh_cycles=data.get("balance_refresh_cycles", 10),
            confirm_bundles=data.get("confirm_bundles", True),
            confirm_timeout=data.get("confirm_timeout", 60.0),
            beneficiary=data.get("beneficiary"),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("ORE_BACKEND"):
            self.backend = v
        if v := os.environ.get("ORE_CPU_WORKERS"):
            self.cpu_workers = int(v)
        if v := os.environ.get("ORE_PRIORITY_FEE"):
            self.priority_fee = int(v)
        if v := os.environ.get("ORE_MAX_ADAPTIVE_TIP"):
            self.max_adaptive_tip = int(v)
        if v := os.environ.get("ORE_BENEFICIARY"):
            self.beneficiary = v


@dataclass
class GpuConfig:
    """[gpu] section."""
    device: int = 0
    arch: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GpuConfig":
        return cls(
            device=data.get("device", 0),
            arch=data.get("arch"),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("ORE_GPU_DEVICE"):
            self.device = int(v)
        if v := os.environ.get("ORE_GPU_ARCH"):
            self.arch = v


@dataclass
class WalletConfig:
    """[wallets] section."""
    key_folder: str = "./keys"
    min_reserve_lamports: int = 1_000_000

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletConfig":
        return cls(
            key_folder=data.get("key_folder", "./keys"),
            min_reserve_lamports=data.get("min_reserve_lamports", 1_000_000),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("ORE_KEY_FOLDER"):
            self.key_folder = v
        if v := os.environ.get("ORE_MIN_RESERVE"):
            self.min_reserve_lamports = int(v)


@dataclass
class MinerConfig:
    """Top-level miner configuration aggregating every section."""

    rpc: RpcConfig = field(default_factory=RpcConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    mining: MiningConfig = field(default_factory=MiningConfig)
    gpu: GpuConfig = field(default_factory=GpuConfig)
    wallets: WalletConfig = field(default_factory=WalletConfig)
    log_level: str = "INFO"

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MinerConfig":
        """Create MinerConfig from a parsed TOML dict."""
        return cls(
            rpc=RpcConfig.from_dict(data.get("rpc", {})),
            relay=RelayConfig.from_dict(data.get("relay", {})),
            mining=MiningConfig.from_dict(data.get("mining", {})),
            gpu=GpuConfig.from_dict(data.get("gpu", {})),
            wallets=WalletConfig.from_dict(data.get("wallets", {})),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "MinerConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: defaults plus environment overrides
        are used instead.

        Args:
            config_path: Path to config.toml

        Returns:
            MinerConfig instance
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.rpc.apply_env()
        self.relay.apply_env()
        self.mining.apply_env()
        self.gpu.apply_env()
        self.wallets.apply_env()
        if v := os.environ.get("ORE_LOG_LEVEL"):
            self.log_level = v

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Returns:
            True if all valid

        Raises:
            ConfigurationError: on invalid config
        """
        if self.mining.backend not in ("auto", "cpu", "gpu"):
            raise ConfigurationError(f"Invalid backend: {self.mining.backend}")
        if self.mining.cpu_workers < 1:
            raise ConfigurationError("cpu_workers must be >= 1")
        if not 1 <= self.mining.batch_size <= MAX_BUNDLE_SIZE - 1:
            raise ConfigurationError(
                f"batch_size must be between 1 and {MAX_BUNDLE_SIZE - 1} "
                f"(a bundle holds at most {MAX_BUNDLE_SIZE} transactions including the tip)"
            )
        if self.mining.priority_fee < 0 or self.mining.max_adaptive_tip < 0:
            raise ConfigurationError("priority_fee and max_adaptive_tip must be >= 0")
        if self.wallets.min_reserve_lamports < 0:
            raise ConfigurationError("min_reserve_lamports must be >= 0")
        if self.relay.max_retries < 0:
            raise ConfigurationError("relay max_retries must be >= 0")
        if self.relay.tip_window < 1:
            raise ConfigurationError("tip_window must be >= 1")
        if self.relay.tip_max_age <= 0:
            raise ConfigurationError("tip_max_age must be > 0")
        if self.mining.balance_refresh_cycles < 1:
            raise ConfigurationError("balance_refresh_cycles must be >= 1")
        if self.mining.beneficiary:
            try:
                Pubkey.from_string(self.mining.beneficiary)
            except InvalidKeyError as e:
                raise ConfigurationError(f"Invalid beneficiary: {e}") from e
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log_level: {self.log_level}")
        return True


def load_config(path: Optional[str] = None) -> MinerConfig:
    """
    Load miner configuration.

    Resolution order:
        1. Explicit *path* argument
        2. ORE_MINER_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("ORE_MINER_CONFIG", "config.toml")

    return MinerConfig.from_file(path)
