"""
Solana RPC access.
"""

from .client import AccountInfo, Blockhash, ChainClient

__all__ = ["AccountInfo", "Blockhash", "ChainClient"]
