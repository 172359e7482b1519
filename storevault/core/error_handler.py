"""
Centralized error handling for storevault.

This module categorizes errors, attaches recovery strategies and remediation
steps, and provides the retry logic used around external dump tools.
"""

import asyncio
import logging
import random
import traceback
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from .exceptions import (
    ArtifactCorruptedError,
    ArtifactNotFoundError,
    BackupError,
    ConfigurationError,
    ConflictError,
    ExternalToolError,
    MalformedRecordError,
    MigrationAbortedError,
    MigrationError,
    MigrationSourceError,
    RestoreError,
    RestoreVerificationError,
    StoreVaultError,
    ToolTimeoutError,
)


class ErrorCategory(str, Enum):
    """Categories of errors for better handling and reporting."""
    CONFIGURATION = "configuration"
    EXTERNAL_TOOL = "external_tool"
    TIMEOUT = "timeout"
    ARTIFACT = "artifact"
    BACKUP = "backup"
    RESTORE = "restore"
    VERIFICATION = "verification"
    CONFLICT = "conflict"
    MIGRATION = "migration"
    DATA = "data"
    CONNECTIVITY = "connectivity"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(str, Enum):
    """Available recovery strategies for different error types."""
    RETRY = "retry"
    RESTORE_SAFETY_BACKUP = "restore_safety_backup"
    SKIP = "skip"
    MANUAL = "manual"
    ABORT = "abort"


@dataclass
class ErrorContext:
    """Context information for an error occurrence."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    operation: Optional[str] = None
    step: Optional[str] = None
    operation_id: Optional[str] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetryConfig:
    """Configuration for retry logic."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: List[Type[Exception]] = field(default_factory=list)


@dataclass
class ErrorInfo:
    """Comprehensive error information."""
    error: Exception
    category: ErrorCategory
    severity: ErrorSeverity
    context: ErrorContext
    recovery_strategies: List[RecoveryStrategy]
    remediation_steps: List[str]
    traceback_str: str
    retryable: bool = False
    retry_count: int = 0

    @property
    def code(self) -> str:
        if isinstance(self.error, StoreVaultError):
            return self.error.code
        return type(self.error).__name__

    @property
    def details(self) -> Dict[str, Any]:
        if isinstance(self.error, StoreVaultError):
            return dict(self.error.details)
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API envelopes and structured logs."""
        return {
            "code": self.code,
            "message": str(self.error),
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "details": self.details,
            "remediation": list(self.remediation_steps),
        }


class ErrorHandler:
    """
    Error handler with categorization, recovery strategies and remediation.

    Mappings are checked most specific first, so subclasses such as
    ``RestoreInProgressError`` resolve through ``ConflictError``.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)
        self._error_mappings = self._build_error_mappings()
        self._recovery_strategies = self._build_recovery_strategies()
        self._remediation_guides = self._build_remediation_guides()

    def _build_error_mappings(self) -> Dict[Type[Exception], Dict[str, Any]]:
        """Build mapping of exception types to error categories and severities."""
        return {
            ConfigurationError: {
                "category": ErrorCategory.CONFIGURATION,
                "severity": ErrorSeverity.HIGH,
            },
            ExternalToolError: {
                "category": ErrorCategory.EXTERNAL_TOOL,
                "severity": ErrorSeverity.HIGH,
            },
            ToolTimeoutError: {
                "category": ErrorCategory.TIMEOUT,
                "severity": ErrorSeverity.HIGH,
            },
            ArtifactCorruptedError: {
                "category": ErrorCategory.ARTIFACT,
                "severity": ErrorSeverity.CRITICAL,
            },
            ArtifactNotFoundError: {
                "category": ErrorCategory.ARTIFACT,
                "severity": ErrorSeverity.MEDIUM,
            },
            BackupError: {
                "category": ErrorCategory.BACKUP,
                "severity": ErrorSeverity.HIGH,
            },
            RestoreVerificationError: {
                "category": ErrorCategory.VERIFICATION,
                "severity": ErrorSeverity.CRITICAL,
            },
            RestoreError: {
                "category": ErrorCategory.RESTORE,
                "severity": ErrorSeverity.CRITICAL,
            },
            ConflictError: {
                "category": ErrorCategory.CONFLICT,
                "severity": ErrorSeverity.LOW,
            },
            MigrationAbortedError: {
                "category": ErrorCategory.CONNECTIVITY,
                "severity": ErrorSeverity.HIGH,
            },
            MalformedRecordError: {
                "category": ErrorCategory.DATA,
                "severity": ErrorSeverity.LOW,
            },
            MigrationSourceError: {
                "category": ErrorCategory.DATA,
                "severity": ErrorSeverity.HIGH,
            },
            MigrationError: {
                "category": ErrorCategory.MIGRATION,
                "severity": ErrorSeverity.HIGH,
            },
            # Standard Python exceptions
            FileNotFoundError: {
                "category": ErrorCategory.CONFIGURATION,
                "severity": ErrorSeverity.MEDIUM,
            },
            TimeoutError: {
                "category": ErrorCategory.TIMEOUT,
                "severity": ErrorSeverity.MEDIUM,
            },
            OSError: {
                "category": ErrorCategory.BACKUP,
                "severity": ErrorSeverity.MEDIUM,
            },
        }

    def _build_recovery_strategies(self) -> Dict[ErrorCategory, List[RecoveryStrategy]]:
        """Build recovery strategies for each error category."""
        return {
            ErrorCategory.CONFIGURATION: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
            ErrorCategory.EXTERNAL_TOOL: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
            ErrorCategory.TIMEOUT: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
            ErrorCategory.ARTIFACT: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
            ErrorCategory.BACKUP: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
            ErrorCategory.RESTORE: [RecoveryStrategy.RESTORE_SAFETY_BACKUP, RecoveryStrategy.MANUAL],
            ErrorCategory.VERIFICATION: [RecoveryStrategy.RESTORE_SAFETY_BACKUP, RecoveryStrategy.MANUAL],
            ErrorCategory.CONFLICT: [RecoveryStrategy.RETRY],
            ErrorCategory.MIGRATION: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
            ErrorCategory.DATA: [RecoveryStrategy.SKIP, RecoveryStrategy.MANUAL],
            ErrorCategory.CONNECTIVITY: [RecoveryStrategy.RETRY, RecoveryStrategy.MANUAL],
            ErrorCategory.UNKNOWN: [RecoveryStrategy.MANUAL, RecoveryStrategy.ABORT],
        }

    def _build_remediation_guides(self) -> Dict[ErrorCategory, List[str]]:
        """Build remediation guides for each error category."""
        return {
            ErrorCategory.CONFIGURATION: [
                "Check the configuration file and STOREVAULT_* environment variables",
                "Verify that pg_dump and psql are installed and on PATH",
                "Ensure the backup directory is writable",
            ],
            ErrorCategory.EXTERNAL_TOOL: [
                "Inspect the stderr tail attached to the error",
                "Verify database credentials and that the server is reachable",
                "Check that the pg_dump/psql client version matches the server",
            ],
            ErrorCategory.TIMEOUT: [
                "Increase command_timeout for large databases",
                "Check database load and long-running locks",
            ],
            ErrorCategory.ARTIFACT: [
                "List available backups and choose an existing artifact",
                "Do not restore from an artifact whose checksum does not match",
            ],
            ErrorCategory.BACKUP: [
                "Ensure sufficient storage space for backups",
                "Verify the backup directory is accessible",
            ],
            ErrorCategory.RESTORE: [
                "Restore the pre-restore safety backup listed in the error details",
                "Review database logs before retrying",
            ],
            ErrorCategory.VERIFICATION: [
                "The database did not pass post-restore checks",
                "Restore the pre-restore safety backup listed in the error details",
                "Confirm the chosen artifact came from this database",
            ],
            ErrorCategory.CONFLICT: [
                "Another operation of the same kind is running",
                "Wait for it to finish and try again",
            ],
            ErrorCategory.MIGRATION: [
                "Review the migration summary and the skipped records",
            ],
            ErrorCategory.DATA: [
                "Fix or remove the malformed legacy record and re-run the migration",
            ],
            ErrorCategory.CONNECTIVITY: [
                "Check database connectivity and re-run the migration",
                "Already migrated records are skipped on re-run",
            ],
            ErrorCategory.UNKNOWN: [
                "Review error logs for additional context",
            ],
        }

    def categorize_error(self, error: Exception, context: Optional[ErrorContext] = None) -> ErrorInfo:
        """
        Categorize an error and create comprehensive error information.

        Args:
            error: The exception that occurred
            context: Optional context information

        Returns:
            ErrorInfo object with categorized error details
        """
        mapping = self._error_mappings.get(type(error))

        if not mapping:
            # Try to find mapping for parent classes
            for exc_type, exc_mapping in self._error_mappings.items():
                if isinstance(error, exc_type):
                    mapping = exc_mapping
                    break

        if not mapping:
            mapping = {
                "category": ErrorCategory.UNKNOWN,
                "severity": ErrorSeverity.MEDIUM,
            }

        category = mapping["category"]
        if isinstance(error, StoreVaultError):
            retryable = error.retryable
        else:
            retryable = isinstance(error, (TimeoutError, ConnectionError))

        return ErrorInfo(
            error=error,
            category=category,
            severity=mapping["severity"],
            context=context or ErrorContext(),
            recovery_strategies=self._recovery_strategies.get(category, [RecoveryStrategy.MANUAL]),
            remediation_steps=self._remediation_guides.get(category, []),
            traceback_str=traceback.format_exc(),
            retryable=retryable,
        )

    def handle_error(self, error: Exception, context: Optional[ErrorContext] = None) -> ErrorInfo:
        """Categorize and log an error."""
        error_info = self.categorize_error(error, context)
        if hasattr(error, "_retry_count"):
            error_info.retry_count = getattr(error, "_retry_count", 0)
        self._log_error(error_info)
        return error_info

    def _log_error(self, error_info: ErrorInfo) -> None:
        """Log error information with appropriate level."""
        log_data = {
            "error_type": type(error_info.error).__name__,
            "error_message": str(error_info.error),
            "category": error_info.category.value,
            "severity": error_info.severity.value,
            "operation": error_info.context.operation,
            "step": error_info.context.step,
            "operation_id": error_info.context.operation_id,
            "retry_count": error_info.retry_count,
            "retryable": error_info.retryable,
        }
        message = f"{log_data['error_type']}: {log_data['error_message']}"

        if error_info.severity == ErrorSeverity.CRITICAL:
            self.logger.critical(message, extra=log_data)
        elif error_info.severity == ErrorSeverity.HIGH:
            self.logger.error(message, extra=log_data)
        elif error_info.severity == ErrorSeverity.MEDIUM:
            self.logger.warning(message, extra=log_data)
        else:
            self.logger.info(message, extra=log_data)


class RetryHandler:
    """
    Handles retry logic with exponential backoff and jitter.
    """

    def __init__(self, error_handler: Optional[ErrorHandler] = None):
        self.error_handler = error_handler or ErrorHandler()
        self.logger = logging.getLogger(__name__)

    async def retry_with_backoff(
        self,
        func: Callable,
        *args,
        retry_config: Optional[RetryConfig] = None,
        context: Optional[ErrorContext] = None,
        **kwargs
    ) -> Any:
        """
        Execute a function with retry logic and exponential backoff.

        Only exceptions listed in ``retry_config.retryable_exceptions`` are
        retried (all exceptions when the list is empty). The last exception is
        re-raised once attempts are exhausted.
        """
        config = retry_config or RetryConfig()
        last_exception: Optional[Exception] = None

        for attempt in range(config.max_attempts):
            try:
                if asyncio.iscoroutinefunction(func):
                    return await func(*args, **kwargs)
                return func(*args, **kwargs)

            except Exception as e:
                last_exception = e
                setattr(e, "_retry_count", attempt + 1)
                self.error_handler.handle_error(e, context)

                if config.retryable_exceptions and not any(
                    isinstance(e, exc_type) for exc_type in config.retryable_exceptions
                ):
                    self.logger.info(f"Exception {type(e).__name__} is not retryable")
                    raise

                if attempt == config.max_attempts - 1:
                    break

                delay = min(
                    config.base_delay * (config.exponential_base ** attempt),
                    config.max_delay
                )
                if config.jitter:
                    delay *= (0.5 + random.random() * 0.5)

                self.logger.info(
                    f"Retrying in {delay:.2f} seconds (attempt {attempt + 1}/{config.max_attempts})"
                )
                await asyncio.sleep(delay)

        raise last_exception


def create_dump_retry_config(base_delay: float = 1.0) -> RetryConfig:
    """One retry for dump/restore tool invocations."""
    return RetryConfig(
        max_attempts=2,
        base_delay=base_delay,
        max_delay=base_delay,
        jitter=False,
        retryable_exceptions=[ExternalToolError, ToolTimeoutError],
    )
