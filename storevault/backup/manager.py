"""
Backup manager for creating and managing backups.

This module provides the BackupManager class that turns a pg_dump run into
a registered backup artifact. A dump is written to a temporary file, checked,
checksummed and only then moved into the backup directory, so no reader ever
sees an incomplete artifact.
"""

import asyncio
import os
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from storevault.backup.executor import DumpExecutor
from storevault.backup.storage import BackupStore, format_artifact_filename
from storevault.core.exceptions import ArtifactCorruptedError, BackupError, StoreVaultError
from storevault.core.locks import OperationLock, operation_lock
from storevault.models.backup import BackupArtifact, BackupReason
from storevault.utils.helpers import calculate_file_checksum, format_bytes, generate_operation_id
from storevault.utils.logging import audit_event, get_logger

logger = get_logger("backup.manager")

_TICK = timedelta(milliseconds=1)


class BackupManager:
    """Main backup manager class for creating and managing backups."""

    def __init__(
        self,
        store: BackupStore,
        executor: DumpExecutor,
        retention_count: int = 30,
        lock: Optional[OperationLock] = None
    ):
        self.store = store
        self.executor = executor
        self.retention_count = retention_count
        self.lock = lock or operation_lock("backup", scope=store.backup_dir)

    @classmethod
    def from_config(cls, config, store: Optional[BackupStore] = None) -> "BackupManager":
        store = store or BackupStore(config.backup_dir, protect_pre_restore=config.protect_pre_restore)
        return cls(store, DumpExecutor.from_config(config), retention_count=config.retention_count)

    def _next_timestamp(self) -> datetime:
        """Current time, pushed past the newest artifact so names stay ordered."""
        now = datetime.now(UTC)
        now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
        latest = self.store.latest()
        if latest is not None and now <= latest.created_at:
            now = latest.created_at + _TICK
        return now

    async def create_backup(self, reason: Union[BackupReason, str] = BackupReason.MANUAL) -> BackupArtifact:
        """
        Take a point-in-time snapshot of the database.

        Args:
            reason: Why the backup is taken (manual, scheduled, pre-restore)

        Returns:
            The registered artifact

        Raises:
            ConflictError: Another backup is running against this directory
            ExternalToolError: pg_dump failed twice
            ToolTimeoutError: pg_dump timed out twice
            BackupError: The dump was empty or could not be stored
        """
        reason = BackupReason.parse(reason)
        operation_id = generate_operation_id("backup")

        with self.lock.held():
            self.store.ensure_directories()
            created_at = self._next_timestamp()
            filename = format_artifact_filename(created_at, reason)
            temp_path = self.store.temp_dir / filename
            final_path = self.store.backup_dir / filename

            logger.info(f"Starting {reason.value} backup {filename}")
            try:
                await self.executor.create_dump(temp_path)

                try:
                    size = temp_path.stat().st_size
                except FileNotFoundError:
                    raise BackupError(f"pg_dump produced no output for {filename}")
                if size == 0:
                    raise BackupError(f"pg_dump produced an empty dump for {filename}")

                checksum = await asyncio.to_thread(calculate_file_checksum, temp_path)
                os.replace(temp_path, final_path)
            except BaseException:
                temp_path.unlink(missing_ok=True)
                logger.error(f"Backup {filename} failed, temporary dump discarded")
                raise

            artifact = self.store.register(BackupArtifact(
                filename=filename,
                created_at=created_at,
                size_bytes=size,
                reason=reason,
                checksum=checksum,
                location=str(final_path),
            ))

            logger.info(f"Backup created successfully: {filename} ({format_bytes(size)})")
            audit_event("backup_created", operation_id, filename=filename, reason=reason.value)

            try:
                self.store.prune(self.retention_count)
            except (OSError, StoreVaultError) as e:
                logger.warning(f"Retention pruning after {filename} failed: {e}")

            return artifact

    async def import_backup(self, staged_path: Union[str, Path], original_name: Optional[str] = None) -> BackupArtifact:
        """
        Adopt an uploaded dump as a ``manual`` artifact.

        ``staged_path`` must sit in the store's temp directory. It is moved into
        the backup directory under a generated name, or removed if rejected.

        Raises:
            ConflictError: A backup is running against this directory
            ArtifactCorruptedError: The upload is empty
        """
        staged_path = Path(staged_path)
        operation_id = generate_operation_id("import")

        with self.lock.held():
            self.store.ensure_directories()
            created_at = self._next_timestamp()
            filename = format_artifact_filename(created_at, BackupReason.MANUAL)
            final_path = self.store.backup_dir / filename

            try:
                size = staged_path.stat().st_size
                if size == 0:
                    raise ArtifactCorruptedError(
                        f"Uploaded backup {original_name or staged_path.name} is empty",
                        filename=original_name,
                    )
                checksum = await asyncio.to_thread(calculate_file_checksum, staged_path)
                os.replace(staged_path, final_path)
            except BaseException:
                staged_path.unlink(missing_ok=True)
                raise

            artifact = self.store.register(BackupArtifact(
                filename=filename,
                created_at=created_at,
                size_bytes=size,
                reason=BackupReason.MANUAL,
                checksum=checksum,
                location=str(final_path),
            ))

            logger.info(f"Imported uploaded backup {original_name or staged_path.name} as {filename}")
            audit_event("backup_imported", operation_id, filename=filename, original_name=original_name)
            return artifact

    async def list_backups(self) -> List[BackupArtifact]:
        """All artifacts, newest first."""
        return self.store.list()

    async def recent_backups(self, limit: int = 5) -> List[BackupArtifact]:
        return self.store.list()[:limit]

    async def get_backup(self, filename: str) -> BackupArtifact:
        return self.store.get(filename)

    async def status(self) -> Dict[str, Any]:
        """Last backup, recent backups, totals and the backup directory."""
        recent = await self.recent_backups()
        stats = self.store.stats()
        return {
            "last_backup": recent[0] if recent else None,
            "recent_backups": recent,
            "total_backups": stats["total_backups"],
            "backups_directory": str(self.store.backup_dir),
            "total_size": stats["total_size"],
            "total_size_human": stats["total_size_human"],
            "retention_count": self.retention_count,
        }

    async def delete_backup(self, filename: str) -> BackupArtifact:
        return self.store.delete(filename)

    async def prune(self, max_kept: Optional[int] = None) -> List[str]:
        """
        Apply retention now; defaults to the configured retention count.

        Raises:
            ValueError: ``max_kept`` is below 1
        """
        return self.store.prune(self.retention_count if max_kept is None else max_kept)

    async def cleanup_temp_files(self, max_age_hours: float = 24) -> int:
        return self.store.cleanup_temp_files(max_age_hours)
