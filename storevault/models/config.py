"""
Configuration model for storevault.

All orchestrators receive their settings from a ``VaultConfig`` at
construction time; nothing is read from ambient globals afterwards.
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from storevault.core.exceptions import ConfigurationError
from storevault.utils.helpers import load_config_file

ENV_PREFIX = "STOREVAULT_"


class VaultConfig(BaseModel):
    """Settings shared by the backup, restore and migration subsystems."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    database_url: str = Field(..., description="SQLAlchemy/libpq URL of the inventory database")
    backup_dir: Path = Field(default=Path("backups"), description="Directory holding backup artifacts")
    retention_count: int = Field(default=30, ge=1, description="Number of artifacts kept by pruning")
    command_timeout: float = Field(default=300.0, gt=0, description="Per-call timeout for pg_dump/psql, seconds")
    termination_grace: float = Field(default=10.0, ge=0, description="Wait between SIGTERM and SIGKILL, seconds")
    retry_delay: float = Field(default=1.0, ge=0, description="Delay before the single tool retry, seconds")
    pg_dump_path: str = "pg_dump"
    psql_path: str = "psql"
    reference_table: str = "stores"
    min_reference_rows: int = Field(default=0, ge=0)
    protect_pre_restore: bool = False
    schedule_cron: str = "0 */4 * * *"
    log_level: str = "INFO"
    log_file: Optional[str] = None
    audit_log_file: Optional[str] = None

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        try:
            make_url(v)
        except ArgumentError as e:
            raise ValueError(f'Invalid database URL: {e}')
        return v

    @field_validator('reference_table')
    @classmethod
    def validate_reference_table(cls, v: str) -> str:
        if not v.replace('_', '').isalnum():
            raise ValueError('reference_table must be a plain table name')
        return v

    @field_validator('schedule_cron')
    @classmethod
    def validate_schedule_cron(cls, v: str) -> str:
        if not croniter.croniter.is_valid(v):
            raise ValueError(f'Invalid cron expression: {v}')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}:
            raise ValueError(f'Unknown log level: {v}')
        return level

    @property
    def temp_dir(self) -> Path:
        return self.backup_dir / ".tmp"

    @classmethod
    def _from_environment(cls) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            env_value = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None:
                values[name] = env_value
        if "database_url" not in values and os.environ.get("DATABASE_URL"):
            values["database_url"] = os.environ["DATABASE_URL"]
        return values

    @classmethod
    def load(cls, config_file: Optional[Union[str, Path]] = None, **overrides: Any) -> "VaultConfig":
        """
        Build configuration from a YAML/JSON file, the environment and overrides.

        Later sources win: file < ``STOREVAULT_*`` environment < keyword overrides.
        """
        values: Dict[str, Any] = {}
        if config_file:
            try:
                values.update(load_config_file(config_file))
            except (OSError, ValueError) as e:
                raise ConfigurationError(f"Cannot read configuration file {config_file}: {e}")
        values.update(cls._from_environment())
        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid configuration: {e.error_count()} error(s)",
                details={"errors": e.errors(include_url=False, include_context=False)},
            )
