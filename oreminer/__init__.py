"""
ORE Bundle Miner Package

Core imports are lazily loaded so that the GPU stack is only touched when
it is used. For direct module access, import from submodules:

    from oreminer.miner import CpuSearchEngine, SearchTask
    from oreminer.bundle import WalletPool, TipOracle
    from oreminer.exceptions import InsufficientBalance
"""

__version__ = "0.1.0"


# Lazy imports to avoid loading everything at package import
def __getattr__(name):
    """Lazy module loading."""
    if name == 'MinerOrchestrator':
        from .miner.orchestrator import MinerOrchestrator
        return MinerOrchestrator
    elif name == 'cli':
        from .cli.main import cli
        return cli
    elif name == 'OreMinerException':
        from .exceptions import OreMinerException
        return OreMinerException
    raise AttributeError(f"module 'oreminer' has no attribute {name!r}")

__all__ = ['MinerOrchestrator', 'cli', 'OreMinerException']
