"""
Custom exceptions for storevault.

This module defines the error taxonomy shared by the backup, restore and
migration subsystems. Every error carries a ``retryable`` flag separating
transient failures from ones that need an operator.
"""

from typing import Any, Dict, Optional


class StoreVaultError(Exception):
    """Base exception class for storevault errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable

    @property
    def requires_operator(self) -> bool:
        """True when retrying will not help and a human has to act."""
        return not self.retryable


class ConfigurationError(StoreVaultError):
    """Raised when there's an error in configuration."""
    pass


class BackupError(StoreVaultError):
    """Raised when backup operations fail."""
    pass


class ExternalToolError(BackupError):
    """Raised when pg_dump or psql exits with a non-zero status."""

    retryable = True

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr_tail: str = "",
        elapsed: float = 0.0,
        tool: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", None) or {}
        details.update({
            "exit_code": exit_code,
            "stderr_tail": stderr_tail,
            "elapsed": round(elapsed, 3),
            "tool": tool,
        })
        super().__init__(message, details=details, **kwargs)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        self.elapsed = elapsed
        self.tool = tool


class ToolTimeoutError(BackupError, TimeoutError):
    """Raised when an external tool overruns its deadline."""

    retryable = True

    def __init__(
        self,
        message: str,
        timeout: float = 0.0,
        elapsed: float = 0.0,
        tool: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", None) or {}
        details.update({
            "timeout": timeout,
            "elapsed": round(elapsed, 3),
            "tool": tool,
        })
        super().__init__(message, details=details, **kwargs)
        self.timeout = timeout
        self.elapsed = elapsed
        self.tool = tool


class ArtifactNotFoundError(BackupError):
    """Raised when a backup artifact is missing, empty or unreadable."""

    def __init__(self, message: str, filename: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["filename"] = filename
        super().__init__(message, details=details, **kwargs)
        self.filename = filename


class ArtifactCorruptedError(ArtifactNotFoundError):
    """Raised when an artifact no longer matches its recorded checksum."""
    pass


class RestoreError(StoreVaultError):
    """Raised when restore operations fail."""
    pass


class RestoreVerificationError(RestoreError):
    """Raised when the database fails post-restore verification."""
    pass


class ConflictError(StoreVaultError):
    """Raised when an operation of the same kind is already running."""

    retryable = True

    def __init__(self, message: str, kind: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["kind"] = kind
        super().__init__(message, details=details, **kwargs)
        self.kind = kind


class RestoreInProgressError(ConflictError):
    """Raised when a restore is requested while another one is running."""
    pass


class MigrationError(StoreVaultError):
    """Raised when legacy data migration fails."""
    pass


class MigrationSourceError(MigrationError):
    """Raised when the legacy source document cannot be read at all."""
    pass


class MigrationAbortedError(MigrationError):
    """Raised when a migration run loses its database connection."""

    retryable = True


class MalformedRecordError(MigrationError):
    """Raised for a single legacy record that cannot be migrated."""

    def __init__(self, message: str, kind: str = "record", key: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.update({"kind": kind, "key": key})
        super().__init__(message, details=details, **kwargs)
        self.kind = kind
        self.key = key
