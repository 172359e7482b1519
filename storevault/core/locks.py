"""
Operation locks.

Each operation kind (backup, restore, migration) is guarded by one
non-blocking lock. A lock can additionally be scoped to a directory through
an ``fcntl.flock`` lock file, so two processes sharing a backup directory
exclude each other as well.
"""

import fcntl
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple, Type, Union

from storevault.core.exceptions import ConflictError


class OperationLock:
    """Fail-fast mutual exclusion for one kind of operation."""

    def __init__(
        self,
        kind: str,
        lock_file: Optional[Union[str, Path]] = None,
        conflict_error: Type[ConflictError] = ConflictError
    ):
        self.kind = kind
        self.lock_file = Path(lock_file) if lock_file else None
        self.conflict_error = conflict_error
        self._thread_lock = threading.Lock()
        self._fd: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self._thread_lock.locked()

    def _conflict(self) -> ConflictError:
        return self.conflict_error(
            f"A {self.kind} operation is already in progress",
            kind=self.kind,
        )

    def acquire(self) -> None:
        """Acquire the lock or raise the configured conflict error immediately."""
        if not self._thread_lock.acquire(blocking=False):
            raise self._conflict()

        if self.lock_file is None:
            return

        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError:
            self._thread_lock.release()
            raise

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            self._thread_lock.release()
            raise self._conflict()
        self._fd = fd

    def release(self) -> None:
        """Release the lock. Releasing an unheld lock is an error."""
        if not self._thread_lock.locked():
            raise RuntimeError(f"{self.kind} lock released while not held")
        if self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None
        self._thread_lock.release()

    @contextmanager
    def held(self) -> Iterator["OperationLock"]:
        """Hold the lock for the duration of a ``with`` block."""
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    def __repr__(self) -> str:
        return f"OperationLock(kind={self.kind!r}, lock_file={str(self.lock_file) if self.lock_file else None!r})"


_registry: Dict[Tuple[str, str], OperationLock] = {}
_registry_guard = threading.Lock()


def operation_lock(
    kind: str,
    scope: Optional[Union[str, Path]] = None,
    conflict_error: Type[ConflictError] = ConflictError
) -> OperationLock:
    """
    Return the process-wide lock for an operation kind.

    When ``scope`` is a directory the lock is also held on
    ``<scope>/.<kind>.lock`` so that other processes see it.
    """
    key = (kind, str(Path(scope).resolve()) if scope else "")
    with _registry_guard:
        lock = _registry.get(key)
        if lock is None:
            lock_file = Path(scope) / f".{kind}.lock" if scope else None
            lock = OperationLock(kind, lock_file=lock_file, conflict_error=conflict_error)
            _registry[key] = lock
        return lock
