"""
External dump tool execution.

This module runs ``pg_dump`` and ``psql`` as bounded, scoped child
processes. Each call gets a deadline; on expiry or cancellation the child is
terminated (SIGTERM, grace period, SIGKILL) and any partial output file is
removed before the error propagates. Failures are retried exactly once.
"""

import asyncio
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy.engine import URL, make_url

from storevault.core.error_handler import ErrorContext, RetryHandler, create_dump_retry_config
from storevault.core.exceptions import ConfigurationError, ExternalToolError, ToolTimeoutError
from storevault.utils.helpers import tail_text
from storevault.utils.logging import get_logger

logger = get_logger("backup.executor")


@dataclass
class ToolResult:
    """Outcome of a successful tool invocation."""
    tool: str
    exit_code: int
    elapsed: float
    stderr_tail: str = ""


def build_libpq_connection(database_url: str) -> Tuple[str, Dict[str, str]]:
    """
    Split a database URL into a password-free libpq URI and an environment.

    SQLAlchemy driver suffixes (``postgresql+psycopg2``) are dropped and the
    password moves into ``PGPASSWORD`` so it never appears on a command line.
    """
    url = make_url(database_url)
    env = os.environ.copy()
    if url.password:
        env["PGPASSWORD"] = str(url.password)
    libpq_url = URL.create(
        drivername="postgresql",
        username=url.username,
        host=url.host,
        port=url.port,
        database=url.database,
        query=url.query,
    )
    return libpq_url.render_as_string(hide_password=False), env


class DumpExecutor:
    """Runs pg_dump/psql against one database."""

    def __init__(
        self,
        database_url: str,
        pg_dump_path: str = "pg_dump",
        psql_path: str = "psql",
        timeout: float = 300.0,
        grace_period: float = 10.0,
        retry_delay: float = 1.0,
        retry_handler: Optional[RetryHandler] = None
    ):
        self.database_url = database_url
        self.pg_dump_path = pg_dump_path
        self.psql_path = psql_path
        self.timeout = timeout
        self.grace_period = grace_period
        self.retry_delay = retry_delay
        self.retry_handler = retry_handler or RetryHandler()

    @classmethod
    def from_config(cls, config) -> "DumpExecutor":
        return cls(
            database_url=config.database_url,
            pg_dump_path=config.pg_dump_path,
            psql_path=config.psql_path,
            timeout=config.command_timeout,
            grace_period=config.termination_grace,
            retry_delay=config.retry_delay,
        )

    def _resolve_tool(self, path: str) -> str:
        resolved = shutil.which(path)
        if resolved is None:
            raise ConfigurationError(
                f"Required tool not found: {path}",
                details={"tool": path},
            )
        return resolved

    def tools_available(self) -> Dict[str, bool]:
        """Report whether pg_dump and psql can be found."""
        return {
            "pg_dump": shutil.which(self.pg_dump_path) is not None,
            "psql": shutil.which(self.psql_path) is not None,
        }

    async def create_dump(self, target_path: Union[str, Path]) -> ToolResult:
        """
        Dump the whole database as plain SQL into ``target_path``.

        Args:
            target_path: File to write; removed again if the dump fails

        Returns:
            ToolResult of the successful attempt

        Raises:
            ExternalToolError: pg_dump exited non-zero twice
            ToolTimeoutError: pg_dump overran its deadline twice
            ConfigurationError: pg_dump is not installed
        """
        target = Path(target_path)
        dsn, env = build_libpq_connection(self.database_url)
        cmd = [
            self._resolve_tool(self.pg_dump_path),
            "--clean",
            "--if-exists",
            "--no-owner",
            "--no-password",
            f"--file={target}",
            f"--dbname={dsn}",
        ]
        return await self._run_with_retry("pg_dump", cmd, env, cleanup_path=target)

    async def apply_dump(self, artifact_path: Union[str, Path]) -> ToolResult:
        """
        Replay a plain SQL dump into the database in a single transaction.

        ``ON_ERROR_STOP`` makes psql abort on the first error, which rolls the
        whole transaction back and leaves the database unchanged.
        """
        artifact = Path(artifact_path)
        dsn, env = build_libpq_connection(self.database_url)
        cmd = [
            self._resolve_tool(self.psql_path),
            "--no-password",
            "--quiet",
            "--single-transaction",
            "-v", "ON_ERROR_STOP=1",
            f"--file={artifact}",
            f"--dbname={dsn}",
        ]
        return await self._run_with_retry("psql", cmd, env)

    async def _run_with_retry(
        self,
        tool: str,
        cmd: List[str],
        env: Dict[str, str],
        cleanup_path: Optional[Path] = None
    ) -> ToolResult:
        return await self.retry_handler.retry_with_backoff(
            self._run_once,
            tool,
            cmd,
            env,
            cleanup_path,
            retry_config=create_dump_retry_config(self.retry_delay),
            context=ErrorContext(operation=tool, step="execute"),
        )

    async def _run_once(
        self,
        tool: str,
        cmd: List[str],
        env: Dict[str, str],
        cleanup_path: Optional[Path]
    ) -> ToolResult:
        logger.debug(f"Running {tool}")
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=env
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"Cannot execute {tool}: {e}", details={"tool": tool})

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            self._discard(cleanup_path)
            elapsed = time.monotonic() - start
            raise ToolTimeoutError(
                f"{tool} did not finish within {self.timeout:g}s",
                timeout=self.timeout,
                elapsed=elapsed,
                tool=tool,
            )
        except asyncio.CancelledError:
            await self._terminate(process)
            self._discard(cleanup_path)
            raise

        elapsed = time.monotonic() - start
        stderr_tail = tail_text((stderr or b"").decode("utf-8", errors="replace"))

        if process.returncode != 0:
            self._discard(cleanup_path)
            raise ExternalToolError(
                f"{tool} exited with code {process.returncode}",
                exit_code=process.returncode,
                stderr_tail=stderr_tail,
                elapsed=elapsed,
                tool=tool,
            )

        logger.info(f"{tool} finished in {elapsed:.2f}s")
        return ToolResult(tool=tool, exit_code=0, elapsed=elapsed, stderr_tail=stderr_tail)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM, wait for the grace period, then SIGKILL."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Process {process.pid} ignored SIGTERM, killing it")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    @staticmethod
    def _discard(path: Optional[Path]) -> None:
        if path is None:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove partial output {path}: {e}")
