"""
Backup artifact validator.

Checks that an artifact can be restored: the file exists and is readable,
its checksum matches the sidecar recorded at registration, and it looks like
a PostgreSQL plain-SQL dump. It also counts the rows a dump holds for the
reference table, which restore verification compares against.
"""

import asyncio
import os
import re
import shutil
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from storevault.backup.storage import BackupStore
from storevault.core.exceptions import ArtifactCorruptedError, ArtifactNotFoundError
from storevault.utils.helpers import calculate_file_checksum
from storevault.utils.logging import get_logger

logger = get_logger("backup.validator")

_EXPECTED_KEYWORDS = ["CREATE", "COPY", "INSERT", "DROP"]


class ValidationResult:
    """Result of artifact validation."""

    def __init__(self, filename: str):
        self.filename = filename
        self.is_valid = True
        self.corrupted = False
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.details: Dict[str, Any] = {}
        self.validation_time = datetime.now(UTC)

    def add_error(self, message: str, corrupted: bool = False):
        """Add an error to the validation result."""
        self.errors.append(message)
        self.is_valid = False
        self.corrupted = self.corrupted or corrupted

    def add_warning(self, message: str):
        """Add a warning to the validation result."""
        self.warnings.append(message)

    @property
    def expected_rows(self) -> Optional[int]:
        return self.details.get("reference_rows")

    def to_dict(self) -> Dict[str, Any]:
        """Convert validation result to dictionary."""
        return {
            "filename": self.filename,
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "details": self.details,
            "validation_time": self.validation_time.isoformat(),
            "error_count": len(self.errors),
            "warning_count": len(self.warnings)
        }


def _table_pattern(table: str) -> str:
    return rf'(?:"?[\w]+"?\.)?"?{re.escape(table)}"?'


def count_dump_rows(dump_path: Union[str, Path], table: str) -> Optional[int]:
    """
    Count the rows a plain-SQL dump loads into ``table``.

    Handles both ``COPY ... FROM stdin`` blocks (the pg_dump default) and
    one-row ``INSERT INTO`` statements. Returns None when the dump holds no
    data section for the table.
    """
    copy_re = re.compile(rf'^COPY\s+{_table_pattern(table)}\s*(?:\(|FROM\b)', re.IGNORECASE)
    insert_re = re.compile(rf'^INSERT\s+INTO\s+{_table_pattern(table)}[\s(]', re.IGNORECASE)

    count: Optional[int] = None
    in_copy = False
    with open(dump_path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            if in_copy:
                if line.rstrip("\r\n") == "\\.":
                    in_copy = False
                else:
                    count += 1
                continue
            if copy_re.match(line):
                in_copy = True
                count = count or 0
            elif insert_re.match(line):
                count = (count or 0) + 1
    return count


class ArtifactValidator:
    """Validates backup artifacts before they are restored."""

    def __init__(self, store: BackupStore, psql_path: str = "psql"):
        self.store = store
        self.psql_path = psql_path

    async def validate(self, filename: str, reference_table: Optional[str] = None) -> ValidationResult:
        """Validate a single artifact for integrity and restorability."""
        result = ValidationResult(filename)

        try:
            path = self.store.path_for(filename)
        except ArtifactNotFoundError as e:
            result.add_error(str(e))
            return result

        self._validate_file_existence(path, result)
        if not result.is_valid:
            return result

        await self._validate_checksum(filename, path, result)
        if not result.is_valid:
            return result

        self._validate_content(path, result)
        if reference_table:
            rows = await asyncio.to_thread(count_dump_rows, path, reference_table)
            result.details["reference_table"] = reference_table
            result.details["reference_rows"] = rows
            if rows is None:
                result.add_warning(f"Dump holds no data for table '{reference_table}'")
        self._check_restore_tools(result)

        if result.is_valid:
            logger.debug(f"Artifact {filename} passed validation")
        else:
            logger.warning(f"Artifact {filename} failed validation: {'; '.join(result.errors)}")
        return result

    async def ensure_restorable(self, filename: str, reference_table: Optional[str] = None) -> ValidationResult:
        """
        Validate an artifact and raise when it must not be restored.

        Raises:
            ArtifactCorruptedError: Checksum mismatch
            ArtifactNotFoundError: Missing, empty or unreadable artifact
        """
        result = await self.validate(filename, reference_table)
        if result.is_valid:
            return result

        message = f"Backup {filename} cannot be restored: {'; '.join(result.errors)}"
        error_cls = ArtifactCorruptedError if result.corrupted else ArtifactNotFoundError
        raise error_cls(message, filename=filename, details={"validation": result.to_dict()})

    def _validate_file_existence(self, path: Path, result: ValidationResult):
        """Validate that the artifact exists, is readable and non-empty."""
        if not path.exists():
            result.add_error(f"Backup file does not exist: {path.name}")
            return

        if not path.is_file():
            result.add_error(f"Backup location is not a file: {path.name}")
            return

        if not os.access(path, os.R_OK):
            result.add_error(f"Backup file is not readable: {path.name}")
            return

        size = path.stat().st_size
        if size == 0:
            result.add_error(f"Backup file is empty: {path.name}")
            return

        result.details["file_size"] = size
        result.details["file_accessible"] = True

    async def _validate_checksum(self, filename: str, path: Path, result: ValidationResult):
        """Compare the file against its recorded checksum."""
        expected = self.store.read_checksum(filename)
        if not expected:
            result.add_warning("No checksum available for validation")
            return

        current = await asyncio.to_thread(calculate_file_checksum, path)
        if current != expected:
            result.add_error(f"Checksum mismatch: expected {expected}, actual {current}", corrupted=True)
        else:
            result.details["checksum_valid"] = True

    def _validate_content(self, path: Path, result: ValidationResult):
        """Look for SQL statements in the head of the dump."""
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            content = f.read(10000).upper()

        found = [keyword for keyword in _EXPECTED_KEYWORDS if keyword in content]
        if not found:
            result.add_warning("No expected SQL keywords found in dump file")
        else:
            result.details["sql_keywords_found"] = found

    def _check_restore_tools(self, result: ValidationResult):
        if not shutil.which(self.psql_path):
            result.add_warning(f"Restore tool '{self.psql_path}' not found in PATH")
        else:
            result.details["psql_available"] = True
