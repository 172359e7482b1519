"""
Data models for storevault.

This module contains the Pydantic models used for configuration,
backup artifacts, restore operations and migration results.
"""

from storevault.models.config import VaultConfig
from storevault.models.backup import (
    BackupArtifact,
    BackupReason,
    PhaseTransition,
    RestoreOperation,
    RestorePhase,
)
from storevault.models.migration import (
    LegacyCategory,
    LegacyPrice,
    LegacyProduct,
    LegacyStore,
    MigrationLedgerEntry,
    MigrationSummary,
    MigrationVerificationReport,
    SkippedRecord,
)

__all__ = [
    # Configuration
    "VaultConfig",
    # Backup and restore
    "BackupArtifact",
    "BackupReason",
    "PhaseTransition",
    "RestoreOperation",
    "RestorePhase",
    # Migration
    "LegacyCategory",
    "LegacyPrice",
    "LegacyProduct",
    "LegacyStore",
    "MigrationLedgerEntry",
    "MigrationSummary",
    "MigrationVerificationReport",
    "SkippedRecord",
]
