"""
Pytest configuration and fixtures for the storevault tests.

Provides a SQLite inventory database, a dump executor that snapshots and
replays that database without PostgreSQL, fake ``pg_dump``/``psql``
executables for process-level tests, and legacy migration documents.
"""

import asyncio
import json
import stat
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine, delete, insert, select

from storevault.backup.executor import ToolResult
from storevault.backup.manager import BackupManager
from storevault.backup.storage import BackupStore
from storevault.core.exceptions import ExternalToolError
from storevault.migration.schema import create_inventory_schema, stores
from storevault.models.config import VaultConfig
from storevault.services import VaultServices


class FakeDatabaseExecutor:
    """
    Dump executor backed by the ``stores`` table of a SQLite database.

    ``create_dump`` writes a pg_dump-style COPY block; ``apply_dump`` replays
    it. Knobs let tests fail or slow down either side.
    """

    def __init__(self, engine):
        self.engine = engine
        self.dump_calls = 0
        self.apply_calls = 0
        self.fail_dump = False
        self.empty_dump = False
        self.fail_apply = False
        self.lose_rows_on_apply = 0
        self.apply_delay = 0.0
        self.dump_started = asyncio.Event()
        self.dump_gate: Optional[asyncio.Event] = None

    def tools_available(self) -> Dict[str, bool]:
        return {"pg_dump": True, "psql": True}

    async def create_dump(self, target_path) -> ToolResult:
        self.dump_calls += 1
        target = Path(target_path)
        with self.engine.connect() as conn:
            rows = conn.execute(select(stores.c.id, stores.c.name).order_by(stores.c.id)).all()

        with open(target, "w", encoding="utf-8") as f:
            if self.empty_dump:
                return ToolResult(tool="pg_dump", exit_code=0, elapsed=0.0)
            f.write("-- storevault test dump\n")
            f.write("DROP TABLE IF EXISTS public.stores;\n")
            f.write("CREATE TABLE public.stores (id integer, name text);\n")
            f.flush()

            self.dump_started.set()
            if self.dump_gate is not None:
                await self.dump_gate.wait()
            if self.fail_dump:
                raise ExternalToolError("pg_dump exited with code 1", exit_code=1,
                                        stderr_tail="pg_dump: error: connection refused", tool="pg_dump")

            f.write("COPY public.stores (id, name) FROM stdin;\n")
            for row in rows:
                f.write(f"{row.id}\t{row.name}\n")
            f.write("\\.\n")
        return ToolResult(tool="pg_dump", exit_code=0, elapsed=0.01)

    async def apply_dump(self, artifact_path) -> ToolResult:
        self.apply_calls += 1
        if self.apply_delay:
            await asyncio.sleep(self.apply_delay)
        if self.fail_apply:
            raise ExternalToolError("psql exited with code 3", exit_code=3,
                                    stderr_tail="ERROR: syntax error", tool="psql")

        rows = read_dump_rows(artifact_path)
        if self.lose_rows_on_apply:
            rows = rows[:-self.lose_rows_on_apply]
        with self.engine.begin() as conn:
            conn.execute(delete(stores))
            for row_id, name in rows:
                conn.execute(insert(stores).values(id=row_id, name=name, slug=name.lower(), is_active=True))
        return ToolResult(tool="psql", exit_code=0, elapsed=0.01)


def read_dump_rows(path) -> List[tuple]:
    """Rows of the stores COPY block of a test dump."""
    rows = []
    in_copy = False
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.rstrip("\n")
            if line.startswith("COPY public.stores"):
                in_copy = True
            elif in_copy and line == "\\.":
                in_copy = False
            elif in_copy:
                row_id, name = line.split("\t")
                rows.append((int(row_id), name))
    return rows


def seed_stores(engine, names: List[str]) -> None:
    """Replace the stores table content with ``names``."""
    with engine.begin() as conn:
        conn.execute(delete(stores))
        for index, name in enumerate(names, start=1):
            conn.execute(insert(stores).values(id=index, name=name, slug=name.lower(), is_active=True))


def store_names(engine) -> List[str]:
    with engine.connect() as conn:
        return list(conn.execute(select(stores.c.name).order_by(stores.c.id)).scalars())


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    return tmp_path / "inventory.db"


@pytest.fixture
def database_url(database_path: Path) -> str:
    return f"sqlite:///{database_path}"


@pytest.fixture
def inventory_engine(database_url: str):
    """File-backed SQLite database with the inventory schema."""
    engine = create_engine(database_url, connect_args={"check_same_thread": False})
    create_inventory_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def fake_executor(inventory_engine) -> FakeDatabaseExecutor:
    seed_stores(inventory_engine, ["Kosher Mart", "Glatt Express", "Shalom Foods"])
    return FakeDatabaseExecutor(inventory_engine)


@pytest.fixture
def backup_store(backup_dir: Path) -> BackupStore:
    return BackupStore(backup_dir)


@pytest.fixture
def backup_manager(backup_store: BackupStore, fake_executor: FakeDatabaseExecutor) -> BackupManager:
    return BackupManager(backup_store, fake_executor, retention_count=10)


@pytest.fixture
def vault_config(database_url: str, backup_dir: Path) -> VaultConfig:
    return VaultConfig(
        database_url=database_url,
        backup_dir=backup_dir,
        retention_count=10,
        command_timeout=5,
        termination_grace=1,
        retry_delay=0,
    )


@pytest.fixture
def services(vault_config: VaultConfig, inventory_engine, fake_executor) -> VaultServices:
    return VaultServices.from_config(vault_config, engine=inventory_engine, executor=fake_executor)


@pytest.fixture
def legacy_document() -> Dict[str, Any]:
    """One store, one category, one product priced in two units."""
    return {
        "stores": {
            "Kosher Mart": {"url": "https://koshermart.example"},
        },
        "categories": {
            "dairy": {"name": "Dairy"},
        },
        "products": {
            "milk": {
                "displayName": "Milk",
                "category": "dairy",
                "synonyms": ["chalav", "whole milk"],
                "commonBrands": ["Golden Flow"],
                "prices": {
                    "Kosher Mart": [
                        {"price": 3.49, "unit": "quart", "lastUpdated": "2025-01-01T10:00:00Z"},
                        {"price": 5.99, "unit": "gallon", "inStock": False},
                    ],
                },
            },
        },
    }


@pytest.fixture
def write_legacy_file(tmp_path: Path):
    """Factory writing a legacy document to disk."""
    def _write(document: Dict[str, Any], name: str = "kosher-prices.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(document), encoding="utf-8")
        return path
    return _write


FAKE_PG_DUMP = """#!{python}
import os
import sys
import time

args = sys.argv[1:]
target = next(a.split("=", 1)[1] for a in args if a.startswith("--file="))
mode = os.environ.get("FAKE_PG_MODE", "ok")

with open(target, "w") as f:
    f.write("-- partial dump\\n")
    f.flush()
    if mode == "hang":
        time.sleep(60)
    f.write("-- pgpassword=%s\\n" % os.environ.get("PGPASSWORD", ""))
    f.write("-- args=%s\\n" % " ".join(args))
    f.write("COPY public.stores (id, name) FROM stdin;\\n1\\tKosher Mart\\n\\\\.\\n")

if mode == "fail":
    sys.stderr.write("pg_dump: error: connection to server failed\\n")
    sys.exit(1)
"""

FAKE_PSQL = """#!{python}
import os
import sys

args = sys.argv[1:]
log = os.environ.get("FAKE_PSQL_LOG")
if log:
    with open(log, "a") as f:
        f.write(" ".join(args) + "\\n")
if os.environ.get("FAKE_PG_MODE") == "fail":
    sys.stderr.write("psql:dump.sql:12: ERROR:  relation does not exist\\n")
    sys.exit(3)
"""


@pytest.fixture
def fake_pg_tools(tmp_path: Path) -> Dict[str, str]:
    """Executable stand-ins for pg_dump and psql."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    tools = {}
    for name, template in (("pg_dump", FAKE_PG_DUMP), ("psql", FAKE_PSQL)):
        path = bin_dir / name
        path.write_text(template.replace("{python}", sys.executable), encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        tools[name] = str(path)
    return tools
