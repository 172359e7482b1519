"""
Tests for RestoreCoordinator and DatabaseVerifier.
"""

import asyncio

import pytest
from sqlalchemy import create_engine

from conftest import read_dump_rows, seed_stores, store_names
from storevault.backup.restore import DatabaseVerifier
from storevault.core.exceptions import (
    ArtifactCorruptedError,
    ArtifactNotFoundError,
    ConflictError,
    ExternalToolError,
    RestoreInProgressError,
    RestoreVerificationError,
)
from storevault.models.backup import BackupReason, RestorePhase

ORIGINAL = ["Kosher Mart", "Glatt Express", "Shalom Foods"]
CHANGED = ["Kosher Mart", "Mehadrin Market"]


@pytest.fixture
def coordinator(services):
    return services.restore_coordinator


class TestRestoreCoordinator:
    """Test cases for RestoreCoordinator."""

    @pytest.mark.asyncio
    async def test_restore_replaces_database_state(self, coordinator, services, inventory_engine):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        seed_stores(inventory_engine, CHANGED)

        operation = await coordinator.restore(original.filename)

        assert operation.phase == RestorePhase.DONE
        assert operation.succeeded
        assert [t.phase for t in operation.history] == [
            RestorePhase.VALIDATING,
            RestorePhase.PRE_BACKUP,
            RestorePhase.RESTORING,
            RestorePhase.VERIFYING,
            RestorePhase.DONE,
        ]
        assert store_names(inventory_engine) == ORIGINAL
        assert operation.result["verification"]["row_count"] == 3
        assert operation.result["verification"]["expected_rows"] == 3
        assert operation.duration is not None

    @pytest.mark.asyncio
    async def test_safety_backup_holds_pre_restore_state(self, coordinator, services, inventory_engine):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        seed_stores(inventory_engine, CHANGED)

        operation = await coordinator.restore(original.filename)

        safety = operation.pre_restore_artifact
        assert safety.reason == BackupReason.PRE_RESTORE
        assert safety.created_at > original.created_at
        rows = read_dump_rows(services.store.path_for(safety.filename))
        assert [name for _, name in rows] == CHANGED
        listed = [a.filename for a in await services.backup_manager.list_backups()]
        assert listed == [safety.filename, original.filename]

    @pytest.mark.asyncio
    async def test_verification_failure_keeps_safety_backup(
        self, coordinator, services, inventory_engine, fake_executor
    ):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        seed_stores(inventory_engine, CHANGED)
        fake_executor.lose_rows_on_apply = 1

        with pytest.raises(RestoreVerificationError) as exc_info:
            await coordinator.restore(original.filename)

        error = exc_info.value
        operation = error.restore_operation
        assert operation.phase == RestorePhase.FAILED
        assert operation.history[-2].phase == RestorePhase.VERIFYING
        assert error.details["phase"] == "verifying"
        assert error.details["pre_restore_artifact"] == operation.pre_restore_artifact.filename
        assert operation.error["code"] == "RestoreVerificationError"

        fake_executor.lose_rows_on_apply = 0
        recovered = await coordinator.restore(operation.pre_restore_artifact.filename)

        assert recovered.succeeded
        assert store_names(inventory_engine) == CHANGED

    @pytest.mark.asyncio
    async def test_apply_failure_reports_safety_backup(self, coordinator, services, inventory_engine, fake_executor):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        seed_stores(inventory_engine, CHANGED)
        fake_executor.fail_apply = True

        with pytest.raises(ExternalToolError) as exc_info:
            await coordinator.restore(original.filename)

        assert exc_info.value.details["phase"] == "restoring"
        assert "pre_restore_artifact" in exc_info.value.details
        assert store_names(inventory_engine) == CHANGED
        assert not coordinator.in_progress

    @pytest.mark.asyncio
    async def test_missing_artifact_takes_no_safety_backup(self, coordinator, services, fake_executor):
        with pytest.raises(ArtifactNotFoundError) as exc_info:
            await coordinator.restore("backup-2025-01-01T00-00-00-000Z-manual.sql")

        operation = exc_info.value.restore_operation
        assert operation.phase == RestorePhase.FAILED
        assert operation.pre_restore_artifact is None
        assert exc_info.value.details["phase"] == "validating"
        assert fake_executor.dump_calls == 0
        assert fake_executor.apply_calls == 0
        assert await services.backup_manager.list_backups() == []

    @pytest.mark.asyncio
    async def test_corrupted_artifact_rejected(self, coordinator, services, inventory_engine, fake_executor):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        with open(services.store.path_for(original.filename), "a") as f:
            f.write("-- tampered\n")

        with pytest.raises(ArtifactCorruptedError):
            await coordinator.restore(original.filename)

        assert fake_executor.apply_calls == 0
        assert store_names(inventory_engine) == ORIGINAL

    @pytest.mark.asyncio
    async def test_concurrent_restores(self, coordinator, services, fake_executor):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        fake_executor.apply_delay = 0.2

        results = await asyncio.gather(
            coordinator.restore(original.filename),
            coordinator.restore(original.filename),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, RestoreInProgressError)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert isinstance(rejected[0], ConflictError)
        assert fake_executor.apply_calls == 1

    @pytest.mark.asyncio
    async def test_restore_in_progress_flag(self, coordinator, services, fake_executor):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        fake_executor.apply_delay = 0.2

        task = asyncio.create_task(coordinator.restore(original.filename))
        await asyncio.sleep(0.05)

        assert coordinator.in_progress
        assert coordinator.current_operation is not None
        assert services.store.is_pinned(original.filename)

        await task
        assert not coordinator.in_progress
        assert coordinator.current_operation is None
        assert coordinator.last_operation.succeeded
        assert services.store.pinned_filenames() == set()

    @pytest.mark.asyncio
    async def test_pinned_artifact_cannot_be_deleted_during_restore(self, coordinator, services, fake_executor):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)
        fake_executor.apply_delay = 0.2

        task = asyncio.create_task(coordinator.restore(original.filename))
        await asyncio.sleep(0.05)
        with pytest.raises(ConflictError):
            await services.backup_manager.delete_backup(original.filename)
        await task

        await services.backup_manager.delete_backup(original.filename)

    @pytest.mark.asyncio
    async def test_concurrent_scheduled_backup_blocks_safety_backup(self, coordinator, services):
        original = await services.backup_manager.create_backup(BackupReason.MANUAL)

        with services.backup_manager.lock.held():
            with pytest.raises(ConflictError) as exc_info:
                await coordinator.restore(original.filename)

        assert exc_info.value.details["phase"] == "pre_backup"
        assert exc_info.value.restore_operation.phase == RestorePhase.FAILED


class TestDatabaseVerifier:
    """Test cases for DatabaseVerifier."""

    @pytest.mark.asyncio
    async def test_expected_rows_match(self, inventory_engine):
        seed_stores(inventory_engine, ORIGINAL)

        result = await DatabaseVerifier(inventory_engine).verify(expected_rows=3)

        assert result.passed
        assert result.row_count == 3

    @pytest.mark.asyncio
    async def test_expected_rows_mismatch(self, inventory_engine):
        seed_stores(inventory_engine, CHANGED)

        result = await DatabaseVerifier(inventory_engine).verify(expected_rows=3)

        assert not result.passed
        assert "dump contains 3" in result.message

    @pytest.mark.asyncio
    async def test_minimum_rows(self, inventory_engine):
        seed_stores(inventory_engine, [])

        result = await DatabaseVerifier(inventory_engine, min_reference_rows=1).verify()

        assert not result.passed
        assert result.table_exists
        assert result.row_count == 0

    @pytest.mark.asyncio
    async def test_missing_table(self, tmp_path):
        engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        try:
            result = await DatabaseVerifier(engine).verify()
        finally:
            engine.dispose()

        assert not result.passed
        assert not result.table_exists
        assert "missing" in result.message
