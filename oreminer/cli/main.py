#!/usr/bin/env python3
"""
ORE Miner CLI

Command-line interface of the ORE bundle miner.

Usage:
    ore-miner mine [--config FILE] [--keys DIR] [--backend BACKEND] ...
    ore-miner register [--keys DIR] [--tip LAMPORTS]
    ore-miner claim [--beneficiary OWNER] [--threshold ORE] [--auto]
    ore-miner init-claim --keypair FILE
    ore-miner tip-stream [--count N]
    ore-miner generate-wallet [--count N] [--output DIR]
    ore-miner device-info [--device N]
"""

import importlib.util
import logging
import time
from pathlib import Path
from typing import Optional, Tuple

import click

from ..bundle import (
    BundleBuilder,
    BundleLander,
    BundleSubmitter,
    TipOracle,
    WalletPool,
    claim_all,
    format_ore,
    ore_amount,
    register_all,
)
from ..config import MinerConfig, load_config
from ..constants import CLAIM_RECHECK_INTERVAL, LAMPORTS_PER_SOL
from ..crypto.keys import Keypair, load_keypair_file, read_keys, to_pubkey, write_keypair_file
from ..exceptions import (
    ConfigurationError,
    DeviceInitError,
    InvalidKeyError,
    KeyLoadError,
    RpcError,
    TransientNetworkError,
)
from ..logger import configure_logging
from ..miner.cpu import CpuSearchEngine
from ..miner.orchestrator import MinerOrchestrator
from ..miner.search import SearchEngine
from ..program.instructions import associated_token_address, build_create_token_account_instruction
from ..relay import JitoRelay, TipFeed
from ..rpc import ChainClient
from ..transactions.transaction import Transaction

logger = logging.getLogger(__name__)


def format_sol(lamports: int) -> str:
    return f"{lamports / LAMPORTS_PER_SOL:.9f} SOL"


def chain_client(config: MinerConfig) -> ChainClient:
    return ChainClient(
        url=config.rpc.url,
        timeout=config.rpc.timeout,
        max_retries=config.rpc.max_retries,
        retry_delay=config.rpc.retry_delay,
    )


def build_engine(config: MinerConfig) -> Tuple[SearchEngine, Optional[object]]:
    """
    Create the search engine for the configured backend.

    ``auto`` uses the GPU when PyCUDA is installed and the device opens,
    the CPU otherwise.

    Returns:
        The engine and the DeviceContext to release, None for the CPU

    Raises:
        DeviceInitError: the gpu backend was requested and cannot start
    """
    backend = config.mining.backend
    if backend in ("gpu", "auto"):
        if importlib.util.find_spec("pycuda") is None:
            if backend == "gpu":
                raise DeviceInitError("The gpu backend needs PyCUDA: pip install ore-bundle-miner[gpu]")
            logger.info("PyCUDA not installed, mining on the CPU")
        else:
            from ..miner.gpu import DeviceContext, GpuSearchEngine
            try:
                device = DeviceContext.create(config.gpu.device)
            except DeviceInitError as e:
                if backend == "gpu":
                    raise
                logger.warning("%s, mining on the CPU", e)
            else:
                return GpuSearchEngine(device, arch=config.gpu.arch), device

    return CpuSearchEngine(workers=config.mining.cpu_workers), None


@click.group()
@click.version_option(version="0.1.0", prog_name="ore-miner")
def cli():
    """ORE Miner Command Line Interface

    Mine ORE for many wallets and land the solutions as Jito bundles.
    """
    pass


@cli.command("mine")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--rpc", help="RPC endpoint URL")
@click.option("--keys", "key_folder", type=click.Path(), help="Folder of Solana JSON keypairs")
@click.option(
    "--backend", "-b",
    type=click.Choice(["auto", "cpu", "gpu"]),
    help="Search backend",
)
@click.option("--workers", "-w", type=int, help="CPU worker processes")
@click.option("--gpu-device", type=int, help="CUDA device index")
@click.option("--priority-fee", type=int, help="Flat tip in lamports")
@click.option("--max-adaptive-tip", type=int, help="Cap of the adaptive tip in lamports, 0 disables it")
@click.option("--batch-size", type=int, help="Wallets per bundle")
@click.option("--max-cycles", type=int, default=None, help="Stop after N cycles")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def mine_cmd(
    config_path: Optional[str],
    rpc: Optional[str],
    key_folder: Optional[str],
    backend: Optional[str],
    workers: Optional[int],
    gpu_device: Optional[int],
    priority_fee: Optional[int],
    max_adaptive_tip: Optional[int],
    batch_size: Optional[int],
    max_cycles: Optional[int],
    log_level: Optional[str],
):
    """Run the mining loop.

    Examples:

        ore-miner mine --keys ./keys --backend gpu

        ore-miner mine --max-adaptive-tip 100000 --batch-size 4
    """
    try:
        config = load_config(config_path)
        if rpc:
            config.rpc.url = rpc
        if key_folder:
            config.wallets.key_folder = key_folder
        if backend:
            config.mining.backend = backend
        if workers is not None:
            config.mining.cpu_workers = workers
        if gpu_device is not None:
            config.gpu.device = gpu_device
        if priority_fee is not None:
            config.mining.priority_fee = priority_fee
        if max_adaptive_tip is not None:
            config.mining.max_adaptive_tip = max_adaptive_tip
        if batch_size is not None:
            config.mining.batch_size = batch_size
        if log_level:
            config.log_level = log_level.upper()
        config.validate()
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    configure_logging(log_level=config.log_level)

    try:
        keypairs = read_keys(config.wallets.key_folder)
    except KeyLoadError as e:
        raise click.ClickException(f"Failed to load keys: {e}")

    try:
        engine, device = build_engine(config)
    except DeviceInitError as e:
        raise click.ClickException(str(e))

    chain = chain_client(config)
    relay = JitoRelay(url=config.relay.url, timeout=config.relay.timeout)
    oracle = TipOracle(window=config.relay.tip_window)
    pool = WalletPool(keypairs, min_reserve_lamports=config.wallets.min_reserve_lamports)

    orchestrator = MinerOrchestrator(
        chain=chain,
        pool=pool,
        engine=engine,
        builder=BundleBuilder(chain, pool),
        submitter=BundleSubmitter(
            relay,
            max_retries=config.relay.max_retries,
            backoff_base=config.relay.backoff_base,
            backoff_max=config.relay.backoff_max,
        ),
        oracle=oracle,
        priority_fee=config.mining.priority_fee,
        max_adaptive_tip=config.mining.max_adaptive_tip,
        batch_size=config.mining.batch_size,
        launch_retries=config.mining.launch_retries,
        balance_refresh_cycles=config.mining.balance_refresh_cycles,
        tip_max_age=config.relay.tip_max_age,
        confirm_bundles=config.mining.confirm_bundles,
        confirm_timeout=config.mining.confirm_timeout,
    )

    feed = None
    if config.mining.max_adaptive_tip > 0:
        feed = TipFeed(
            oracle,
            url=config.relay.tip_floor_url,
            interval=config.relay.tip_poll_interval,
            timeout=config.relay.timeout,
        ).start()

    click.echo(f"Mining with {len(pool)} wallets on the {engine.name} engine (RPC {config.rpc.url})")
    try:
        stats = orchestrator.run(max_cycles=max_cycles)
    except KeyboardInterrupt:
        orchestrator.stop()
        click.echo("Stopping...")
        stats = orchestrator.stats
    finally:
        if feed is not None:
            feed.stop(timeout=1.0)
        engine.close()
        if device is not None:
            device.release()

    summary = ", ".join(f"{state.value}={count}" for state, count in stats.items()) or "no cycles"
    click.echo(f"Finished after {orchestrator.cycle} cycles: {summary}")


@cli.command("tip-stream")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--count", "-n", type=int, default=None, help="Stop after N samples")
@click.option("--interval", type=float, default=None, help="Seconds between polls")
def tip_stream_cmd(config_path: Optional[str], count: Optional[int], interval: Optional[float]):
    """Print Jito tip floor samples as they arrive."""
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    oracle = TipOracle(window=config.relay.tip_window)
    feed = TipFeed(
        oracle,
        url=config.relay.tip_floor_url,
        interval=interval if interval is not None else config.relay.tip_poll_interval,
        timeout=config.relay.timeout,
    )

    seen = 0
    try:
        for sample in feed.stream():
            tip = oracle.current_tip(config.mining.priority_fee, config.mining.max_adaptive_tip)
            click.echo(
                f"p50 {sample.p50_lamports:>12} lamports ({format_sol(sample.p50_lamports)})"
                f"  next tip {tip} lamports"
            )
            seen += 1
            if count is not None and seen >= count:
                break
    except KeyboardInterrupt:
        pass


def account_config(
    config_path: Optional[str],
    rpc: Optional[str] = None,
    key_folder: Optional[str] = None,
    log_level: Optional[str] = None,
) -> MinerConfig:
    """Load and validate the config for the account commands."""
    try:
        config = load_config(config_path)
        if rpc:
            config.rpc.url = rpc
        if key_folder:
            config.wallets.key_folder = key_folder
        if log_level:
            config.log_level = log_level.upper()
        config.validate()
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    configure_logging(log_level=config.log_level)
    return config


def account_lander(config: MinerConfig, chain: ChainClient, pool: WalletPool, tip: Optional[int]) -> BundleLander:
    tip = config.mining.priority_fee if tip is None else tip
    if tip < 0:
        raise click.ClickException("tip must be >= 0")
    relay = JitoRelay(url=config.relay.url, timeout=config.relay.timeout)
    return BundleLander(chain, relay, pool, tip=tip, max_attempts=config.relay.max_retries + 1)


def load_pool(config: MinerConfig, chain: ChainClient) -> WalletPool:
    try:
        keypairs = read_keys(config.wallets.key_folder)
    except KeyLoadError as e:
        raise click.ClickException(f"Failed to load keys: {e}")
    pool = WalletPool(keypairs)
    try:
        pool.refresh_balances(chain)
    except (TransientNetworkError, RpcError) as e:
        raise click.ClickException(f"Failed to fetch balances: {e}")
    return pool


@cli.command("register")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--rpc", help="RPC endpoint URL")
@click.option("--keys", "key_folder", type=click.Path(), help="Folder of Solana JSON keypairs")
@click.option("--tip", type=int, help="Jito tip per bundle in lamports (default: priority_fee)")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def register_cmd(
    config_path: Optional[str],
    rpc: Optional[str],
    key_folder: Optional[str],
    tip: Optional[int],
    log_level: Optional[str],
):
    """Create the proof account of every wallet that has none.

    A wallet needs a proof account before it can mine.

    Examples:

        ore-miner register --keys ./keys --tip 100000
    """
    config = account_config(config_path, rpc, key_folder, log_level)
    chain = chain_client(config)
    pool = load_pool(config, chain)
    lander = account_lander(config, chain, pool, tip)

    try:
        landings = register_all(chain, lander, pool.pubkeys)
    except (TransientNetworkError, RpcError) as e:
        raise click.ClickException(f"Registration failed: {e}")

    if not landings:
        click.echo(f"All {len(pool)} wallets are registered")
        return
    registered = sum(landing.accounts for landing in landings if landing.landed)
    failed = sum(landing.accounts for landing in landings if not landing.landed)
    click.echo(click.style(f"✓ {registered} wallet(s) registered", fg="green"))
    if failed:
        raise click.ClickException(f"{failed} wallet(s) could not be registered")


@cli.command("claim")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--rpc", help="RPC endpoint URL")
@click.option("--keys", "key_folder", type=click.Path(), help="Folder of Solana JSON keypairs")
@click.option("--beneficiary", help="Owner of the ORE token account receiving the rewards (default: mining.beneficiary)")
@click.option("--threshold", type=float, default=0.0, show_default=True, help="Skip bundles claiming less ORE than this")
@click.option("--auto", is_flag=True, help="Claim again every --interval seconds")
@click.option("--interval", type=float, default=CLAIM_RECHECK_INTERVAL, show_default=True, help="Seconds between claims with --auto")
@click.option("--tip", type=int, help="Jito tip per bundle in lamports (default: priority_fee)")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def claim_cmd(
    config_path: Optional[str],
    rpc: Optional[str],
    key_folder: Optional[str],
    beneficiary: Optional[str],
    threshold: float,
    auto: bool,
    interval: float,
    tip: Optional[int],
    log_level: Optional[str],
):
    """Claim the rewards of every wallet into one token account.

    Wallets are claimed richest first, five per transaction.

    Examples:

        ore-miner claim --beneficiary <OWNER> --threshold 0.5

        ore-miner claim --auto --interval 600
    """
    config = account_config(config_path, rpc, key_folder, log_level)

    owner = beneficiary or config.mining.beneficiary
    if not owner:
        raise click.ClickException("No beneficiary: pass --beneficiary or set mining.beneficiary")
    try:
        owner = to_pubkey(owner)
        min_value = ore_amount(threshold)
    except (InvalidKeyError, ValueError) as e:
        raise click.ClickException(str(e))

    chain = chain_client(config)
    tokens = associated_token_address(owner)
    try:
        exists = chain.get_account(tokens) is not None
    except (TransientNetworkError, RpcError) as e:
        raise click.ClickException(f"Failed to read token account {tokens}: {e}")
    if not exists:
        raise click.ClickException(
            f"Token account {tokens} of {owner} does not exist; create it with `ore-miner init-claim`"
        )
    logger.info("Claiming into token account %s of %s", tokens, owner)

    pool = load_pool(config, chain)
    lander = account_lander(config, chain, pool, tip)
    try:
        while True:
            try:
                landings = claim_all(chain, lander, pool.pubkeys, tokens, threshold=min_value)
            except (TransientNetworkError, RpcError) as e:
                if not auto:
                    raise click.ClickException(f"Claim failed: {e}")
                logger.error("Claim failed: %s", e)
                landings = []
            claimed = sum(landing.value for landing in landings if landing.landed)
            click.echo(f"Claimed {format_ore(claimed)}")
            if not auto:
                break
            click.echo(f"Checking rewards again in {interval:.0f}s")
            time.sleep(interval)
            try:
                pool.refresh_balances(chain)
            except (TransientNetworkError, RpcError) as e:
                logger.warning("Balance refresh failed: %s", e)
    except KeyboardInterrupt:
        click.echo("Stopping...")


@cli.command("init-claim")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config.toml")
@click.option("--rpc", help="RPC endpoint URL")
@click.option(
    "--keypair", "keypair_path",
    type=click.Path(exists=True, dir_okay=False),
    required=True,
    help="Keypair owning and paying for the new ORE token account",
)
def init_claim_cmd(config_path: Optional[str], rpc: Optional[str], keypair_path: str):
    """Create the ORE token account that claims are paid into.

    Examples:

        ore-miner init-claim --keypair ~/.config/solana/id.json
    """
    config = account_config(config_path, rpc)
    try:
        keypair = load_keypair_file(keypair_path)
    except KeyLoadError as e:
        raise click.ClickException(str(e))

    chain = chain_client(config)
    owner = keypair.pubkey
    tokens = associated_token_address(owner)
    try:
        if chain.get_account(tokens) is not None:
            click.echo(f"Token account {tokens} already exists")
            return
        blockhash = chain.get_recent_blockhash()
        tx = Transaction.new_signed(
            [build_create_token_account_instruction(owner, owner)],
            owner,
            blockhash.hash,
            lambda key, message: keypair.sign(message),
        )
        click.echo(f"Creating token account {tokens} for {owner}...")
        signature = chain.send_transaction(tx)
        confirmed = chain.wait_for_signature(signature)
    except (TransientNetworkError, RpcError) as e:
        raise click.ClickException(f"Transaction failed: {e}")

    if not confirmed:
        raise click.ClickException(f"Transaction {signature} was not confirmed")
    click.echo(click.style(f"✓ Created token account {tokens} for {owner}", fg="green"))


@cli.command("generate-wallet")
@click.option("--count", "-n", type=int, default=1, show_default=True, help="Number of keypairs")
@click.option(
    "--output", "-o",
    type=click.Path(file_okay=False),
    default="./keys",
    show_default=True,
    help="Folder receiving <pubkey>.json files",
)
def generate_wallet_cmd(count: int, output: str):
    """Generate Solana JSON keypairs.

    Examples:

        ore-miner generate-wallet --count 8 --output ./keys
    """
    if count < 1:
        raise click.ClickException("count must be >= 1")

    folder = Path(output)
    folder.mkdir(parents=True, exist_ok=True)
    for _ in range(count):
        keypair = Keypair.generate()
        path = folder / f"{keypair.pubkey}.json"
        try:
            write_keypair_file(keypair, path)
        except OSError as e:
            raise click.ClickException(f"Failed to save keypair: {e}")
        click.echo(f"{keypair.pubkey}  {path}")

    click.echo(click.style(f"✓ {count} keypair(s) written to {folder}", fg="green"))
    click.echo(click.style("IMPORTANT: Back up the key files; they are not encrypted!", fg="yellow"))


@cli.command("device-info")
@click.option("--device", "-d", "device_index", type=int, default=0, show_default=True, help="CUDA device index")
def device_info_cmd(device_index: int):
    """Show the CUDA device and the launch geometry used for mining."""
    if importlib.util.find_spec("pycuda") is None:
        raise click.ClickException("PyCUDA is not installed: pip install ore-bundle-miner[gpu]")

    from ..miner.gpu import DeviceContext
    try:
        device = DeviceContext.create(device_index)
    except DeviceInitError as e:
        raise click.ClickException(str(e))

    try:
        click.echo(f"Device:             {device.device_index} {device.name}")
        click.echo(f"Architecture:       {device.arch}")
        click.echo(f"Multiprocessors:    {device.multiprocessor_count}")
        click.echo(f"Threads per SM:     {device.max_threads_per_multiprocessor}")
        click.echo(f"Threads per block:  {device.threads_per_block} (max {device.max_threads_per_block})")
        click.echo(f"Blocks per launch:  {device.blocks}")
        click.echo(f"Nonces per launch:  {device.batch_size}")
        click.echo(f"Memory:             {device.total_memory // (1024 * 1024)} MiB")
    finally:
        device.release()


if __name__ == "__main__":
    cli()
