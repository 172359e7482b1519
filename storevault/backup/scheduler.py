"""
Scheduled backups.

Runs ``reason=scheduled`` backups on a cron schedule, every four hours by
default. A tick that collides with a running backup is skipped.
"""

import asyncio
from datetime import datetime, UTC
from typing import Any, Dict, Optional

import croniter

from storevault.backup.manager import BackupManager
from storevault.core.error_handler import ErrorContext, ErrorHandler
from storevault.core.exceptions import ConflictError
from storevault.models.backup import BackupArtifact, BackupReason
from storevault.utils.logging import get_logger

logger = get_logger("backup.scheduler")

DEFAULT_SCHEDULE = "0 */4 * * *"


class BackupScheduler:
    """Cron-driven backup loop."""

    def __init__(
        self,
        manager: BackupManager,
        cron_expression: str = DEFAULT_SCHEDULE,
        error_handler: Optional[ErrorHandler] = None
    ):
        if not croniter.croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")
        self.manager = manager
        self.cron_expression = cron_expression
        self.error_handler = error_handler or ErrorHandler(logger)
        self._running = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self.last_run: Optional[datetime] = None
        self.last_artifact: Optional[BackupArtifact] = None

    @property
    def running(self) -> bool:
        return self._running

    def next_run(self, after: Optional[datetime] = None) -> datetime:
        """Next scheduled time strictly after ``after`` (default: now)."""
        cron = croniter.croniter(self.cron_expression, after or datetime.now(UTC))
        return cron.get_next(datetime)

    async def run_once(self) -> Optional[BackupArtifact]:
        """Take one scheduled backup; returns None if it was skipped or failed."""
        self.last_run = datetime.now(UTC)
        try:
            artifact = await self.manager.create_backup(BackupReason.SCHEDULED)
        except ConflictError:
            logger.warning("Scheduled backup skipped: another backup is in progress")
            return None
        except Exception as e:
            # The loop must outlive any single failed tick.
            self.error_handler.handle_error(e, ErrorContext(operation="backup", step="scheduled"))
            return None

        self.last_artifact = artifact
        return artifact

    async def start(self):
        """Start the backup loop in the running event loop."""
        if self._running:
            logger.warning("Backup scheduler is already running")
            return

        self._running = True
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Backup scheduler started ({self.cron_expression})")

    async def stop(self):
        """Stop the backup loop."""
        if not self._running:
            return

        self._running = False

        if self._scheduler_task:
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
            self._scheduler_task = None

        logger.info("Backup scheduler stopped")

    async def _scheduler_loop(self):
        while self._running:
            now = datetime.now(UTC)
            due = self.next_run(now)
            await asyncio.sleep(max((due - now).total_seconds(), 0))
            await self.run_once()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "cron_expression": self.cron_expression,
            "next_run": self.next_run().isoformat(),
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_backup": self.last_artifact.filename if self.last_artifact else None,
        }
