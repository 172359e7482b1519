"""
Core module for storevault.

This module contains the error taxonomy, error handling and the
operation locks used throughout the application.
"""

from storevault.core.exceptions import (
    StoreVaultError,
    ConfigurationError,
    BackupError,
    ExternalToolError,
    ToolTimeoutError,
    ArtifactNotFoundError,
    ArtifactCorruptedError,
    RestoreError,
    RestoreVerificationError,
    ConflictError,
    RestoreInProgressError,
    MigrationError,
    MigrationSourceError,
    MigrationAbortedError,
    MalformedRecordError,
)
from storevault.core.locks import OperationLock, operation_lock

__all__ = [
    "StoreVaultError",
    "ConfigurationError",
    "BackupError",
    "ExternalToolError",
    "ToolTimeoutError",
    "ArtifactNotFoundError",
    "ArtifactCorruptedError",
    "RestoreError",
    "RestoreVerificationError",
    "ConflictError",
    "RestoreInProgressError",
    "MigrationError",
    "MigrationSourceError",
    "MigrationAbortedError",
    "MalformedRecordError",
    "OperationLock",
    "operation_lock",
]
