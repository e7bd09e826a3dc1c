"""
Block engine relay access.
"""

from .jito import JitoRelay, TipFeed, parse_tip_floor

__all__ = ["JitoRelay", "TipFeed", "parse_tip_floor"]
