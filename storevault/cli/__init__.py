"""
Command-line interface for storevault.
"""

from storevault.cli.main import main

__all__ = ["main"]
