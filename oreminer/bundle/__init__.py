"""
Bundle orchestration: wallet payers, adaptive tips, assembly, submission,
and the landing of registration and claim bundles.
"""

from .wallets import Wallet, WalletPool
from .tips import TipOracle, TipSample
from .builder import Bundle, BundleBuilder
from .submitter import Accepted, BundleSubmitter, Rejected, classify_rejection
from .lander import BundleLander, InstructionGroup, Landing, LandingStatus
from .accounts import claim_all, claimable_rewards, format_ore, ore_amount, register_all, unregistered

__all__ = [
    "Wallet",
    "WalletPool",
    "TipOracle",
    "TipSample",
    "Bundle",
    "BundleBuilder",
    "Accepted",
    "BundleSubmitter",
    "Rejected",
    "classify_rejection",
    "BundleLander",
    "InstructionGroup",
    "Landing",
    "LandingStatus",
    "claim_all",
    "claimable_rewards",
    "format_ore",
    "ore_amount",
    "register_all",
    "unregistered",
]
