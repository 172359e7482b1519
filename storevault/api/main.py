"""
Main FastAPI application for the storevault API.

Exposes backup, restore and migration operations over REST. Every response
uses the envelope ``{"success": bool, "data": ...}`` or
``{"success": false, "error": {...}}``.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from storevault import __version__
from storevault.core.error_handler import ErrorContext, ErrorHandler
from storevault.core.exceptions import (
    ArtifactCorruptedError,
    ArtifactNotFoundError,
    ConfigurationError,
    ConflictError,
    ExternalToolError,
    MalformedRecordError,
    MigrationAbortedError,
    MigrationSourceError,
    RestoreInProgressError,
    StoreVaultError,
    ToolTimeoutError,
)
from storevault.models.backup import BackupReason
from storevault.models.config import VaultConfig
from storevault.services import VaultServices
from storevault.utils.helpers import generate_operation_id
from storevault.utils.logging import get_logger

logger = get_logger("api")

UPLOAD_CHUNK_SIZE = 1024 * 1024


class BackupCreateRequest(BaseModel):
    """Request body for creating a backup."""
    reason: BackupReason = BackupReason.MANUAL

    @field_validator('reason', mode='before')
    @classmethod
    def parse_reason(cls, v):
        return BackupReason.parse(v)


class PruneRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_kept: Optional[int] = Field(default=None, ge=1)


class RestoreRequest(BaseModel):
    filename: str = Field(..., min_length=1)


class MigrationRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    source_path: str = Field(..., min_length=1)


# Most specific first.
_STATUS_CODES = [
    (ArtifactCorruptedError, 422),
    (ArtifactNotFoundError, 404),
    (ConflictError, 409),
    (MigrationSourceError, 422),
    (MalformedRecordError, 422),
    (ToolTimeoutError, 504),
    (ExternalToolError, 502),
    (MigrationAbortedError, 503),
    (ConfigurationError, 500),
]


def status_for_error(error: Exception) -> int:
    """HTTP status code for an error."""
    for error_type, code in _STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 500


def success(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _dump(model: Any) -> Any:
    if isinstance(model, BaseModel):
        return model.model_dump(mode="json", by_alias=True)
    if isinstance(model, list):
        return [_dump(item) for item in model]
    if isinstance(model, dict):
        return {key: _dump(value) for key, value in model.items()}
    return model


def get_services(request: Request) -> VaultServices:
    return request.app.state.services


def create_app(
    config: Optional[VaultConfig] = None,
    services: Optional[VaultServices] = None,
    run_scheduler: bool = False
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Configuration; loaded from ``STOREVAULT_CONFIG`` and the environment when omitted
        services: Pre-built services, mainly for tests
        run_scheduler: Run scheduled backups while the app is up
    """
    if services is None:
        config = config or VaultConfig.load(os.environ.get("STOREVAULT_CONFIG"))
        services = VaultServices.from_config(config)

    error_handler = ErrorHandler(logger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting storevault API v{__version__}")
        services.store.ensure_directories()
        services.store.cleanup_temp_files()
        if run_scheduler:
            await services.scheduler.start()
        yield
        if run_scheduler:
            await services.scheduler.stop()
        services.dispose()
        logger.info("Shutting down storevault API")

    app = FastAPI(
        title="storevault API",
        description="Backup, restore and legacy migration for the inventory database",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.services = services

    @app.exception_handler(StoreVaultError)
    async def storevault_error_handler(request: Request, exc: StoreVaultError):
        error_info = error_handler.handle_error(
            exc, ErrorContext(operation=f"{request.method} {request.url.path}")
        )
        payload = error_info.to_dict()
        operation = getattr(exc, "restore_operation", None)
        if operation is not None:
            payload["operation"] = _dump(operation)
        return JSONResponse(
            status_code=status_for_error(exc),
            content={"success": False, "error": payload},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        error_info = error_handler.handle_error(
            exc, ErrorContext(operation=f"{request.method} {request.url.path}")
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "error": error_info.to_dict()},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": {
                    "code": "ValidationError",
                    "message": "Invalid request",
                    "category": "validation",
                    "retryable": False,
                    "details": {"errors": jsonable_encoder(exc.errors())},
                    "remediation": ["Fix the request body and try again"],
                },
            },
        )

    @app.get("/health", tags=["Health"])
    async def health_check(svc: VaultServices = Depends(get_services)):
        backup_dir = Path(svc.store.backup_dir)
        tools = svc.executor.tools_available()
        return {
            "status": "healthy",
            "service": "storevault",
            "version": __version__,
            "timestamp": datetime.now(UTC).isoformat(),
            "components": {
                "backup_directory": backup_dir.is_dir() and os.access(backup_dir, os.W_OK),
                "pg_dump": tools["pg_dump"],
                "psql": tools["psql"],
                "restore_in_progress": svc.restore_coordinator.in_progress,
                "scheduler_running": svc.scheduler.running,
            },
        }

    @app.post("/api/backups", tags=["Backups"], status_code=status.HTTP_201_CREATED)
    async def create_backup(
        body: Optional[BackupCreateRequest] = None,
        svc: VaultServices = Depends(get_services)
    ):
        reason = body.reason if body else BackupReason.MANUAL
        artifact = await svc.backup_manager.create_backup(reason)
        return success(_dump(artifact))

    @app.get("/api/backups", tags=["Backups"])
    async def list_backups(svc: VaultServices = Depends(get_services)):
        return success(_dump(await svc.backup_manager.list_backups()))

    @app.get("/api/backups/status", tags=["Backups"])
    async def backup_status(svc: VaultServices = Depends(get_services)):
        info = await svc.backup_manager.status()
        return success({
            "lastBackup": _dump(info["last_backup"]),
            "recentBackups": _dump(info["recent_backups"]),
            "totalBackups": info["total_backups"],
            "backupsDirectory": info["backups_directory"],
            "totalSize": info["total_size"],
            "retentionCount": info["retention_count"],
        })

    @app.get("/api/backups/{filename}/download", tags=["Backups"])
    async def download_backup(filename: str, svc: VaultServices = Depends(get_services)) -> FileResponse:
        """Stream an artifact as an attachment."""
        artifact = await svc.backup_manager.get_backup(filename)
        return FileResponse(
            path=svc.store.path_for(artifact.filename),
            media_type="application/sql",
            filename=artifact.filename,
        )

    @app.delete("/api/backups/{filename}", tags=["Backups"])
    async def delete_backup(filename: str, svc: VaultServices = Depends(get_services)):
        artifact = await svc.backup_manager.delete_backup(filename)
        return success(_dump(artifact))

    @app.post("/api/backups/prune", tags=["Backups"])
    async def prune_backups(
        body: Optional[PruneRequest] = None,
        svc: VaultServices = Depends(get_services)
    ):
        deleted = await svc.backup_manager.prune(body.max_kept if body else None)
        return success({"deleted": deleted, "remaining": len(await svc.backup_manager.list_backups())})

    @app.post("/api/restore", tags=["Restore"])
    async def restore_backup(body: RestoreRequest, svc: VaultServices = Depends(get_services)):
        operation = await svc.restore_coordinator.restore(body.filename)
        return success(_dump(operation))

    @app.post("/api/restore/upload", tags=["Restore"])
    async def upload_restore(
        backup_file: UploadFile = File(..., alias="backupFile"),
        svc: VaultServices = Depends(get_services)
    ):
        """
        Restore from an uploaded plain-SQL dump.

        The upload is kept as a ``manual`` artifact, then restored like any
        other, safety backup included.
        """
        if svc.restore_coordinator.in_progress:
            raise RestoreInProgressError("A restore is already in progress", kind="restore")

        svc.store.ensure_directories()
        staged_path = svc.store.temp_dir / f"{generate_operation_id('upload')}.sql.part"
        try:
            with open(staged_path, "wb") as f:
                while True:
                    chunk = await backup_file.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
        except BaseException:
            staged_path.unlink(missing_ok=True)
            raise
        finally:
            await backup_file.close()

        artifact = await svc.backup_manager.import_backup(staged_path, original_name=backup_file.filename)
        operation = await svc.restore_coordinator.restore(artifact.filename)
        return success({"artifact": _dump(artifact), "operation": _dump(operation)})

    @app.post("/api/migrations", tags=["Migrations"])
    async def run_migration(body: MigrationRequest, svc: VaultServices = Depends(get_services)):
        summary = await svc.migration_engine.migrate(body.source_path)
        return success(_dump(summary))

    @app.post("/api/migrations/verify", tags=["Migrations"])
    async def verify_migration(body: MigrationRequest, svc: VaultServices = Depends(get_services)):
        report = await svc.migration_verifier.verify(body.source_path)
        return success(_dump(report))

    return app
