"""
Backup and restore models for storevault.

This module defines Pydantic models for backup artifacts and for the
ephemeral restore operation state machine.
"""

from datetime import datetime, UTC
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BackupReason(str, Enum):
    """Why an artifact was taken."""
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    PRE_RESTORE = "pre-restore"

    @classmethod
    def parse(cls, value) -> "BackupReason":
        """Accept enum members, their values and legacy tags."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        if normalized in LEGACY_REASON_ALIASES:
            return LEGACY_REASON_ALIASES[normalized]
        return cls(normalized)


# Reason tags written by earlier releases of the backup job.
LEGACY_REASON_ALIASES: Dict[str, BackupReason] = {
    "auto-4hr": BackupReason.SCHEDULED,
    "auto": BackupReason.SCHEDULED,
}


class RestorePhase(str, Enum):
    """Restore state machine phases."""
    IDLE = "idle"
    VALIDATING = "validating"
    PRE_BACKUP = "pre_backup"
    RESTORING = "restoring"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


_ALLOWED_TRANSITIONS: Dict[RestorePhase, set] = {
    RestorePhase.IDLE: {RestorePhase.VALIDATING},
    RestorePhase.VALIDATING: {RestorePhase.PRE_BACKUP, RestorePhase.FAILED},
    RestorePhase.PRE_BACKUP: {RestorePhase.RESTORING, RestorePhase.FAILED},
    RestorePhase.RESTORING: {RestorePhase.VERIFYING, RestorePhase.FAILED},
    RestorePhase.VERIFYING: {RestorePhase.DONE, RestorePhase.FAILED},
    RestorePhase.DONE: set(),
    RestorePhase.FAILED: set(),
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BackupArtifact(_CamelModel):
    """One immutable point-in-time database snapshot on disk."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    filename: str
    created_at: datetime
    size_bytes: int
    reason: BackupReason
    checksum: Optional[str] = None
    location: str


class PhaseTransition(_CamelModel):
    """A single step of a restore operation."""
    phase: RestorePhase
    at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    message: Optional[str] = None


class RestoreOperation(_CamelModel):
    """State of one restore call; lives only for the duration of the call."""

    id: str
    filename: str
    phase: RestorePhase = RestorePhase.IDLE
    history: List[PhaseTransition] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: Optional[datetime] = None
    pre_restore_artifact: Optional[BackupArtifact] = None
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.phase == RestorePhase.DONE

    @property
    def duration(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def advance(self, phase: RestorePhase, message: Optional[str] = None) -> None:
        """Move to the next phase; illegal transitions raise ``ValueError``."""
        if phase not in _ALLOWED_TRANSITIONS[self.phase]:
            raise ValueError(f"Illegal restore transition {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.history.append(PhaseTransition(phase=phase, message=message))
        if phase in (RestorePhase.DONE, RestorePhase.FAILED):
            self.finished_at = datetime.now(UTC)

    def fail(self, error: Dict[str, Any]) -> None:
        """Mark the operation as failed from whichever phase it reached."""
        self.error = error
        self.advance(RestorePhase.FAILED, error.get("message"))
