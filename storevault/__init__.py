"""
storevault - backup, restore and legacy migration for the grocery inventory database.

Wraps pg_dump and psql in safe, bounded operations with retention and
verified restores, and migrates the legacy JSON inventory file into the
relational schema idempotently.
"""

__version__ = "0.1.0"
__author__ = "storevault maintainers"

from storevault.core.exceptions import StoreVaultError
from storevault.models.config import VaultConfig

__all__ = ["__version__", "StoreVaultError", "VaultConfig"]
