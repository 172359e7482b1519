"""
Restore coordination.

A restore runs through ``Validating -> PreBackup -> Restoring -> Verifying ->
Done``. Before anything destructive happens a ``pre-restore`` safety backup is
taken, and a restore is only reported successful once the database passed
verification. Only one restore runs at a time.
"""

import asyncio
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, func, inspect, select, table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from storevault.backup.manager import BackupManager
from storevault.backup.validator import ArtifactValidator
from storevault.core.error_handler import ErrorContext, ErrorHandler
from storevault.core.exceptions import RestoreInProgressError, RestoreVerificationError, StoreVaultError
from storevault.core.locks import OperationLock, operation_lock
from storevault.models.backup import BackupReason, RestoreOperation, RestorePhase
from storevault.utils.helpers import generate_operation_id
from storevault.utils.logging import audit_event, get_logger

logger = get_logger("backup.restore")


@dataclass
class VerificationResult:
    """Post-restore check of the reference table."""
    passed: bool
    table: str
    table_exists: bool
    row_count: Optional[int] = None
    expected_rows: Optional[int] = None
    min_rows: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DatabaseVerifier:
    """Checks that the live database looks like the restored dump."""

    def __init__(self, engine: Engine, reference_table: str = "stores", min_reference_rows: int = 0):
        self.engine = engine
        self.reference_table = reference_table
        self.min_reference_rows = min_reference_rows

    @classmethod
    def from_config(cls, config, engine: Optional[Engine] = None) -> "DatabaseVerifier":
        engine = engine or create_engine(config.database_url, pool_pre_ping=True)
        return cls(engine, config.reference_table, config.min_reference_rows)

    def _check(self, expected_rows: Optional[int]) -> VerificationResult:
        result = VerificationResult(
            passed=False,
            table=self.reference_table,
            table_exists=False,
            expected_rows=expected_rows,
            min_rows=self.min_reference_rows,
        )
        try:
            with self.engine.connect() as conn:
                if not inspect(conn).has_table(self.reference_table):
                    result.message = f"Table '{self.reference_table}' is missing"
                    return result
                result.table_exists = True
                result.row_count = conn.execute(
                    select(func.count()).select_from(table(self.reference_table))
                ).scalar_one()
        except SQLAlchemyError as e:
            result.message = f"Database check failed: {e}"
            return result

        if expected_rows is not None:
            result.passed = result.row_count == expected_rows
            if not result.passed:
                result.message = (
                    f"Table '{self.reference_table}' has {result.row_count} rows, "
                    f"dump contains {expected_rows}"
                )
        else:
            result.passed = result.row_count >= self.min_reference_rows
            if not result.passed:
                result.message = (
                    f"Table '{self.reference_table}' has {result.row_count} rows, "
                    f"at least {self.min_reference_rows} required"
                )
        if result.passed:
            result.message = f"Table '{self.reference_table}' has {result.row_count} rows"
        return result

    async def verify(self, expected_rows: Optional[int] = None) -> VerificationResult:
        return await asyncio.to_thread(self._check, expected_rows)


class RestoreCoordinator:
    """Replays a chosen backup into the live database, safely."""

    def __init__(
        self,
        manager: BackupManager,
        validator: ArtifactValidator,
        verifier: DatabaseVerifier,
        lock: Optional[OperationLock] = None,
        error_handler: Optional[ErrorHandler] = None
    ):
        self.manager = manager
        self.store = manager.store
        self.executor = manager.executor
        self.validator = validator
        self.verifier = verifier
        self.lock = lock or operation_lock(
            "restore", scope=manager.store.backup_dir, conflict_error=RestoreInProgressError
        )
        self.error_handler = error_handler or ErrorHandler(logger)
        self.current_operation: Optional[RestoreOperation] = None
        self.last_operation: Optional[RestoreOperation] = None

    @property
    def in_progress(self) -> bool:
        return self.lock.locked

    def _transition(self, operation: RestoreOperation, phase: RestorePhase, message: Optional[str] = None):
        operation.advance(phase, message)
        logger.info(f"Restore {operation.id} [{operation.filename}]: {phase.value}" + (f" - {message}" if message else ""))
        audit_event(
            "restore_phase",
            operation.id,
            filename=operation.filename,
            phase=phase.value,
            message=message,
        )

    async def restore(self, filename: str) -> RestoreOperation:
        """
        Restore the database from ``filename``.

        Returns:
            The finished operation in phase ``done``

        Raises:
            RestoreInProgressError: Another restore is running
            ArtifactNotFoundError: The artifact is missing, empty or corrupted
            RestoreVerificationError: The restored database failed its checks
            ExternalToolError / ToolTimeoutError: pg_dump or psql failed

        Raised errors carry the failed operation as ``restore_operation``.
        """
        operation = RestoreOperation(id=generate_operation_id("restore"), filename=filename)

        self.lock.acquire()
        pins: List[str] = []
        try:
            self.current_operation = operation
            self.store.pin(filename)
            pins.append(filename)
            await self._run(operation, pins)
            return operation
        finally:
            for name in pins:
                self.store.unpin(name)
            self.current_operation = None
            self.last_operation = operation
            self.lock.release()

    async def _run(self, operation: RestoreOperation, pins: List[str]) -> None:
        try:
            self._transition(operation, RestorePhase.VALIDATING)
            validation = await self.validator.ensure_restorable(
                operation.filename, self.verifier.reference_table
            )
            operation.result["validation"] = validation.to_dict()

            self._transition(operation, RestorePhase.PRE_BACKUP)
            safety = await self.manager.create_backup(BackupReason.PRE_RESTORE)
            operation.pre_restore_artifact = safety
            self.store.pin(safety.filename)
            pins.append(safety.filename)

            self._transition(operation, RestorePhase.RESTORING, f"safety backup {safety.filename}")
            tool_result = await self.executor.apply_dump(self.store.path_for(operation.filename))
            operation.result["restore"] = {"elapsed": round(tool_result.elapsed, 3)}

            self._transition(operation, RestorePhase.VERIFYING)
            verification = await self.verifier.verify(validation.expected_rows)
            operation.result["verification"] = verification.to_dict()
            if not verification.passed:
                raise RestoreVerificationError(
                    f"Restore of {operation.filename} failed verification: {verification.message}",
                    details={"verification": verification.to_dict()},
                )

            self._transition(operation, RestorePhase.DONE)
            audit_event("restore_completed", operation.id, filename=operation.filename)

        except (Exception, asyncio.CancelledError) as e:
            self._fail(operation, e)
            raise

    def _fail(self, operation: RestoreOperation, error: BaseException) -> None:
        failed_phase = operation.phase
        if isinstance(error, StoreVaultError):
            error.details["operation_id"] = operation.id
            error.details["phase"] = failed_phase.value
            if operation.pre_restore_artifact is not None:
                error.details["pre_restore_artifact"] = operation.pre_restore_artifact.filename

        if isinstance(error, Exception):
            error_info = self.error_handler.handle_error(
                error,
                ErrorContext(operation="restore", step=failed_phase.value, operation_id=operation.id),
            )
            error_dict = error_info.to_dict()
        else:
            error_dict = {"code": type(error).__name__, "message": "Restore was cancelled"}

        if failed_phase != RestorePhase.IDLE:
            operation.fail(error_dict)
        else:
            operation.error = error_dict

        setattr(error, "restore_operation", operation)
        logger.error(f"Restore {operation.id} failed during {failed_phase.value}: {error_dict['message']}")
        audit_event(
            "restore_failed",
            operation.id,
            filename=operation.filename,
            phase=failed_phase.value,
            pre_restore_artifact=(
                operation.pre_restore_artifact.filename if operation.pre_restore_artifact else None
            ),
        )
