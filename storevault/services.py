"""
Service container.

Builds the backup, restore and migration orchestrators from one
``VaultConfig``, sharing a single backup store and SQLAlchemy engine.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from storevault.backup.executor import DumpExecutor
from storevault.backup.manager import BackupManager
from storevault.backup.restore import DatabaseVerifier, RestoreCoordinator
from storevault.backup.scheduler import BackupScheduler
from storevault.backup.storage import BackupStore
from storevault.backup.validator import ArtifactValidator
from storevault.migration.engine import MigrationEngine
from storevault.migration.verifier import MigrationVerifier
from storevault.models.config import VaultConfig


class VaultServices:
    """Wired orchestrators for one configuration."""

    def __init__(
        self,
        config: VaultConfig,
        engine: Engine,
        store: BackupStore,
        executor: DumpExecutor,
        backup_manager: BackupManager,
        restore_coordinator: RestoreCoordinator,
        migration_engine: MigrationEngine,
        migration_verifier: MigrationVerifier,
        scheduler: BackupScheduler
    ):
        self.config = config
        self.engine = engine
        self.store = store
        self.executor = executor
        self.backup_manager = backup_manager
        self.restore_coordinator = restore_coordinator
        self.migration_engine = migration_engine
        self.migration_verifier = migration_verifier
        self.scheduler = scheduler

    @classmethod
    def from_config(
        cls,
        config: VaultConfig,
        engine: Optional[Engine] = None,
        executor: Optional[DumpExecutor] = None
    ) -> "VaultServices":
        engine = engine or create_engine(config.database_url, pool_pre_ping=True)
        store = BackupStore(config.backup_dir, protect_pre_restore=config.protect_pre_restore)
        executor = executor or DumpExecutor.from_config(config)
        manager = BackupManager(store, executor, retention_count=config.retention_count)
        coordinator = RestoreCoordinator(
            manager,
            ArtifactValidator(store, psql_path=config.psql_path),
            DatabaseVerifier.from_config(config, engine=engine),
        )
        return cls(
            config=config,
            engine=engine,
            store=store,
            executor=executor,
            backup_manager=manager,
            restore_coordinator=coordinator,
            migration_engine=MigrationEngine(engine),
            migration_verifier=MigrationVerifier(engine),
            scheduler=BackupScheduler(manager, config.schedule_cron),
        )

    def dispose(self) -> None:
        """Release pooled database connections."""
        self.engine.dispose()
