"""
Backup and restore system for storevault.

This module provides backup creation, retention, validation, scheduling
and restore coordination around pg_dump and psql.
"""

from storevault.backup.executor import DumpExecutor, ToolResult
from storevault.backup.storage import BackupStore, RetentionPolicy
from storevault.backup.validator import ArtifactValidator, ValidationResult, count_dump_rows
from storevault.backup.manager import BackupManager
from storevault.backup.restore import DatabaseVerifier, RestoreCoordinator, VerificationResult
from storevault.backup.scheduler import BackupScheduler

__all__ = [
    "DumpExecutor",
    "ToolResult",
    "BackupStore",
    "RetentionPolicy",
    "ArtifactValidator",
    "ValidationResult",
    "count_dump_rows",
    "BackupManager",
    "DatabaseVerifier",
    "RestoreCoordinator",
    "VerificationResult",
    "BackupScheduler",
]
