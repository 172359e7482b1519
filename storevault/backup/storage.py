"""
Backup artifact storage with retention.

Artifacts are plain-SQL dump files in a single backup directory. Their
filenames encode creation time and reason, so the directory listing is the
catalog: lexical order of current-format names equals chronological order.
A ``<filename>.sha256`` sidecar holds the checksum recorded at registration.
"""

import os
import re
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from storevault.core.exceptions import ArtifactNotFoundError, BackupError, ConflictError
from storevault.models.backup import BackupArtifact, BackupReason, LEGACY_REASON_ALIASES
from storevault.utils.helpers import format_bytes
from storevault.utils.logging import audit_event, get_logger

logger = get_logger("backup.storage")

CHECKSUM_SUFFIX = ".sha256"
TEMP_DIR_NAME = ".tmp"

_FILENAME_PATTERN = re.compile(
    r"^backup-(?P<date>\d{4}-\d{2}-\d{2})T(?P<h>\d{2})-(?P<m>\d{2})-(?P<s>\d{2})"
    r"(?:-(?P<ms>\d{3}))?Z?-(?P<reason>[a-z0-9][a-z0-9-]*)\.sql$"
)


def format_artifact_filename(created_at: datetime, reason: BackupReason) -> str:
    """Build ``backup-YYYY-MM-DDTHH-MM-SS-mmmZ-<reason>.sql``."""
    stamp = created_at.astimezone(UTC).strftime("%Y-%m-%dT%H-%M-%S")
    millis = created_at.microsecond // 1000
    return f"backup-{stamp}-{millis:03d}Z-{reason.value}.sql"


def parse_artifact_filename(filename: str) -> Optional[Tuple[datetime, BackupReason]]:
    """
    Recover creation time and reason from an artifact filename.

    Returns None for names that are not artifacts. Names written without
    milliseconds and legacy reason tags such as ``auto-4hr`` are accepted.
    """
    match = _FILENAME_PATTERN.match(filename)
    if not match:
        return None

    raw_reason = match.group("reason")
    if raw_reason in LEGACY_REASON_ALIASES:
        reason = LEGACY_REASON_ALIASES[raw_reason]
    else:
        try:
            reason = BackupReason(raw_reason)
        except ValueError:
            return None

    try:
        created_at = datetime.strptime(
            f"{match.group('date')} {match.group('h')}:{match.group('m')}:{match.group('s')}",
            "%Y-%m-%d %H:%M:%S",
        ).replace(tzinfo=UTC)
    except ValueError:
        return None
    millis = match.group("ms")
    if millis:
        created_at = created_at.replace(microsecond=int(millis) * 1000)
    return created_at, reason


class RetentionPolicy:
    """Count-based retention of backup artifacts."""

    def __init__(self, max_kept: int, protect_pre_restore: bool = False):
        if max_kept < 1:
            raise ValueError("max_kept must be at least 1")
        self.max_kept = max_kept
        self.protect_pre_restore = protect_pre_restore

    def select_for_deletion(
        self,
        artifacts: List[BackupArtifact],
        pinned: Optional[set] = None
    ) -> List[BackupArtifact]:
        """
        Pick the artifacts to delete from a newest-first list.

        The ``max_kept`` newest eligible artifacts stay. Pinned artifacts are
        never selected; with ``protect_pre_restore`` safety snapshots are
        neither counted nor selected.
        """
        pinned = pinned or set()
        eligible = [
            a for a in artifacts
            if not (self.protect_pre_restore and a.reason == BackupReason.PRE_RESTORE)
        ]
        return [a for a in eligible[self.max_kept:] if a.filename not in pinned]


class BackupStore:
    """Filesystem catalog of backup artifacts."""

    def __init__(self, backup_dir: Union[str, Path], protect_pre_restore: bool = False):
        self.backup_dir = Path(backup_dir)
        self.protect_pre_restore = protect_pre_restore
        self._pins: Counter = Counter()
        self._pin_guard = threading.Lock()

    @property
    def temp_dir(self) -> Path:
        return self.backup_dir / TEMP_DIR_NAME

    def ensure_directories(self) -> None:
        """Create the backup and temp directories if needed."""
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(f"Cannot create backup directory {self.backup_dir}: {e}")

    def path_for(self, filename: str) -> Path:
        """Resolve an artifact filename inside the backup directory."""
        if Path(filename).name != filename or parse_artifact_filename(filename) is None:
            raise ArtifactNotFoundError(f"Not a backup artifact name: {filename}", filename=filename)
        return self.backup_dir / filename

    def checksum_path(self, filename: str) -> Path:
        return self.path_for(filename).with_name(filename + CHECKSUM_SUFFIX)

    def read_checksum(self, filename: str) -> Optional[str]:
        """Checksum recorded at registration, if any."""
        sidecar = self.checksum_path(filename)
        try:
            content = sidecar.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return content.split()[0] if content else None

    def _artifact_from_path(self, path: Path) -> Optional[BackupArtifact]:
        parsed = parse_artifact_filename(path.name)
        if parsed is None:
            logger.warning(f"Ignoring unrecognised file in backup directory: {path.name}")
            return None
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        if size == 0:
            logger.warning(f"Ignoring empty backup artifact: {path.name}")
            return None

        created_at, reason = parsed
        return BackupArtifact(
            filename=path.name,
            created_at=created_at,
            size_bytes=size,
            reason=reason,
            checksum=self.read_checksum(path.name),
            location=str(path),
        )

    def list(self) -> List[BackupArtifact]:
        """All valid artifacts, newest first."""
        if not self.backup_dir.exists():
            return []

        artifacts = []
        for path in self.backup_dir.iterdir():
            if path.name.startswith(".") or path.suffix != ".sql" or not path.is_file():
                continue
            artifact = self._artifact_from_path(path)
            if artifact is not None:
                artifacts.append(artifact)

        artifacts.sort(key=lambda a: (a.created_at, a.filename), reverse=True)
        return artifacts

    def latest(self) -> Optional[BackupArtifact]:
        artifacts = self.list()
        return artifacts[0] if artifacts else None

    def get(self, filename: str) -> BackupArtifact:
        """
        Look up one artifact.

        Raises:
            ArtifactNotFoundError: The name is invalid, or the file is missing or empty
        """
        path = self.path_for(filename)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Backup not found: {filename}", filename=filename)
        artifact = self._artifact_from_path(path)
        if artifact is None:
            raise ArtifactNotFoundError(f"Backup is empty or unreadable: {filename}", filename=filename)
        return artifact

    def register(self, artifact: BackupArtifact) -> BackupArtifact:
        """Persist the checksum sidecar of an artifact already in place."""
        path = self.path_for(artifact.filename)
        if not path.is_file():
            raise ArtifactNotFoundError(
                f"Cannot register missing artifact: {artifact.filename}",
                filename=artifact.filename,
            )

        if artifact.checksum:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            staging = self.temp_dir / (artifact.filename + CHECKSUM_SUFFIX)
            staging.write_text(f"{artifact.checksum}  {artifact.filename}\n", encoding="utf-8")
            os.replace(staging, self.checksum_path(artifact.filename))

        logger.info(f"Registered backup {artifact.filename} ({format_bytes(artifact.size_bytes)})")
        audit_event(
            "backup_registered",
            filename=artifact.filename,
            reason=artifact.reason.value,
            size_bytes=artifact.size_bytes,
        )
        return artifact

    def _remove(self, filename: str) -> None:
        self.path_for(filename).unlink(missing_ok=True)
        self.checksum_path(filename).unlink(missing_ok=True)

    def delete(self, filename: str) -> BackupArtifact:
        """
        Delete one artifact and its sidecar.

        Raises:
            ArtifactNotFoundError: No such artifact
            ConflictError: The artifact is in use by a restore
        """
        artifact = self.get(filename)
        if self.is_pinned(filename):
            raise ConflictError(f"Backup {filename} is in use by a restore", kind="restore")

        self._remove(filename)
        logger.info(f"Deleted backup {filename}")
        audit_event("backup_deleted", filename=filename)
        return artifact

    def is_pinned(self, filename: str) -> bool:
        with self._pin_guard:
            return self._pins[filename] > 0

    def pinned_filenames(self) -> set:
        with self._pin_guard:
            return {name for name, count in self._pins.items() if count > 0}

    def pin(self, filename: str) -> None:
        """Protect an artifact from pruning and deletion."""
        with self._pin_guard:
            self._pins[filename] += 1

    def unpin(self, filename: str) -> None:
        with self._pin_guard:
            if self._pins[filename] <= 1:
                self._pins.pop(filename, None)
            else:
                self._pins[filename] -= 1

    @contextmanager
    def pinned(self, *filenames: str) -> Iterator[None]:
        """Pin artifacts for the duration of a ``with`` block."""
        for name in filenames:
            self.pin(name)
        try:
            yield
        finally:
            for name in filenames:
                self.unpin(name)

    def prune(self, max_kept: int) -> List[str]:
        """
        Delete the oldest artifacts beyond ``max_kept``.

        Returns:
            Filenames that were deleted, oldest last
        """
        policy = RetentionPolicy(max_kept, protect_pre_restore=self.protect_pre_restore)
        doomed = policy.select_for_deletion(self.list(), self.pinned_filenames())

        deleted = []
        for artifact in doomed:
            try:
                self._remove(artifact.filename)
            except OSError as e:
                logger.warning(f"Could not prune {artifact.filename}: {e}")
                continue
            deleted.append(artifact.filename)

        if deleted:
            logger.info(f"Pruned {len(deleted)} backup(s), keeping {max_kept}")
            audit_event("backups_pruned", deleted=deleted, max_kept=max_kept)
        return deleted

    def cleanup_temp_files(self, max_age_hours: float = 24) -> int:
        """Remove stale temporary dumps left behind by crashed runs."""
        if not self.temp_dir.exists():
            return 0

        cutoff = datetime.now(UTC) - timedelta(hours=max_age_hours)
        removed = 0
        for temp_file in self.temp_dir.iterdir():
            if not temp_file.is_file():
                continue
            modified = datetime.fromtimestamp(temp_file.stat().st_mtime, UTC)
            if modified < cutoff:
                temp_file.unlink(missing_ok=True)
                removed += 1

        if removed:
            logger.info(f"Removed {removed} stale temporary file(s)")
        return removed

    def stats(self) -> Dict[str, Any]:
        """Storage statistics for the backup directory."""
        artifacts = self.list()
        total_size = sum(a.size_bytes for a in artifacts)
        by_reason: Dict[str, int] = {}
        for artifact in artifacts:
            by_reason[artifact.reason.value] = by_reason.get(artifact.reason.value, 0) + 1

        return {
            "backups_directory": str(self.backup_dir),
            "total_backups": len(artifacts),
            "total_size": total_size,
            "total_size_human": format_bytes(total_size),
            "oldest": artifacts[-1].created_at.isoformat() if artifacts else None,
            "newest": artifacts[0].created_at.isoformat() if artifacts else None,
            "by_reason": by_reason,
        }
