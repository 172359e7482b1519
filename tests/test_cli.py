"""
Tests for the command-line interface.
"""

import json

import pytest
from click.testing import CliRunner

from conftest import seed_stores, store_names
from storevault import __version__
from storevault.cli.main import main


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, services):
    def _invoke(*args, **kwargs):
        return runner.invoke(main, list(args), obj={"services": services}, **kwargs)
    return _invoke


def list_backups(invoke):
    result = invoke("backup", "list", "--format", "json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


class TestCLI:
    """Test cases for the storevault CLI."""

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self, runner):
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "backup" in result.output
        assert "restore" in result.output
        assert "migrate" in result.output

    def test_backup_create_and_list(self, invoke):
        result = invoke("backup", "create", "--reason", "manual")

        assert result.exit_code == 0, result.output
        assert "Backup created" in result.output

        backups = list_backups(invoke)
        assert len(backups) == 1
        assert backups[0]["reason"] == "manual"
        assert backups[0]["filename"] in result.output.replace("\n", "")

    def test_backup_list_empty(self, invoke):
        result = invoke("backup", "list")

        assert result.exit_code == 0
        assert "No backups found" in result.output

    def test_backup_failure_exits_non_zero(self, invoke, fake_executor):
        fake_executor.fail_dump = True

        result = invoke("backup", "create")

        assert result.exit_code == 1
        assert "Backup failed" in result.output
        assert "What to do" in result.output

    def test_backup_status(self, invoke):
        invoke("backup", "create")

        result = invoke("backup", "status")

        assert result.exit_code == 0
        assert "Backup Status" in result.output
        assert "Total backups: 1" in result.output

    def test_backup_prune(self, invoke):
        for _ in range(3):
            invoke("backup", "create")

        result = invoke("backup", "prune", "--max-kept", "1")

        assert result.exit_code == 0, result.output
        assert "Pruned 2 backup(s)" in result.output
        assert len(list_backups(invoke)) == 1

    def test_backup_delete(self, invoke):
        invoke("backup", "create")
        filename = list_backups(invoke)[0]["filename"]

        result = invoke("backup", "delete", filename, "--yes")

        assert result.exit_code == 0, result.output
        assert list_backups(invoke) == []

    def test_restore(self, invoke, inventory_engine):
        invoke("backup", "create")
        filename = list_backups(invoke)[0]["filename"]
        seed_stores(inventory_engine, ["Mehadrin Market"])

        result = invoke("restore", filename, "--yes")

        assert result.exit_code == 0, result.output
        assert "Restore Complete" in result.output
        assert store_names(inventory_engine) == ["Kosher Mart", "Glatt Express", "Shalom Foods"]

    def test_restore_cancelled(self, invoke, fake_executor):
        invoke("backup", "create")
        filename = list_backups(invoke)[0]["filename"]

        result = invoke("restore", filename, input="n\n")

        assert result.exit_code == 0
        assert "Restore cancelled" in result.output
        assert fake_executor.apply_calls == 0

    def test_restore_missing_artifact(self, invoke):
        result = invoke("restore", "backup-2025-01-01T00-00-00-000Z-manual.sql", "--yes")

        assert result.exit_code == 1
        assert "Restore failed" in result.output

    def test_migrate_and_verify(self, invoke, legacy_document, write_legacy_file):
        path = str(write_legacy_file(legacy_document))

        result = invoke("migrate", path, "--format", "json")

        assert result.exit_code == 0, result.output
        summary = json.loads(result.output)
        assert summary["pricesUpserted"] == 2
        assert summary["skipped"] == 0

        verified = invoke("verify-migration", path)
        assert verified.exit_code == 0, verified.output
        assert "Verification passed" in verified.output

    def test_migrate_table_output(self, invoke, legacy_document, write_legacy_file):
        result = invoke("migrate", str(write_legacy_file(legacy_document)))

        assert result.exit_code == 0, result.output
        assert "Migration Summary" in result.output
        assert "Already migrated: 0" in result.output

    def test_verify_migration_reports_issues(self, invoke, legacy_document, write_legacy_file):
        result = invoke("verify-migration", str(write_legacy_file(legacy_document)))

        assert result.exit_code == 1
        assert "issue(s)" in result.output

    def test_schedule_once(self, invoke):
        result = invoke("schedule", "--once")

        assert result.exit_code == 0, result.output
        backups = list_backups(invoke)
        assert [b["reason"] for b in backups] == ["scheduled"]
