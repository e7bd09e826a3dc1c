"""
Command-line entry points.
"""

from .main import cli

__all__ = ["cli"]
