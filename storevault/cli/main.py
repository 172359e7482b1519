"""
Main CLI entry point for storevault.

This module provides the command-line interface using Click with Rich
formatting: backups, restores, migrations, the backup scheduler and the
API server.
"""

import asyncio
import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from storevault import __version__
from storevault.core.error_handler import ErrorContext, ErrorHandler
from storevault.core.exceptions import StoreVaultError
from storevault.models.backup import BackupReason
from storevault.models.config import VaultConfig
from storevault.services import VaultServices
from storevault.utils.helpers import format_bytes, format_duration
from storevault.utils.logging import get_logger, setup_logging

console = Console()
logger = get_logger("cli")


def _services(ctx: click.Context) -> VaultServices:
    """Build (once) the services for this invocation."""
    if ctx.obj.get("services") is None:
        config = VaultConfig.load(
            ctx.obj.get("config_path"),
            database_url=ctx.obj.get("database_url"),
            backup_dir=ctx.obj.get("backup_dir"),
        )
        setup_logging(
            level="DEBUG" if ctx.obj.get("verbose") else config.log_level,
            log_file=config.log_file,
            audit_log_file=config.audit_log_file,
        )
        ctx.obj["services"] = VaultServices.from_config(config)
    return ctx.obj["services"]


def _fail(error: Exception, operation: str, verbose: bool = False) -> None:
    """Print an error panel with remediation steps and exit non-zero."""
    error_info = ErrorHandler(logger).categorize_error(error, ErrorContext(operation=operation))

    text = Text()
    text.append(f"{error}\n", style="bold red")
    text.append(f"\nCategory: {error_info.category.value}", style="dim")
    text.append(f"\nRetryable: {'yes' if error_info.retryable else 'no'}", style="dim")
    for key, value in error_info.details.items():
        if value not in (None, "", {}):
            text.append(f"\n{key}: {value}", style="dim")
    if error_info.remediation_steps:
        text.append("\n\nWhat to do:", style="bold yellow")
        for step in error_info.remediation_steps:
            text.append(f"\n  • {step}")

    console.print(Panel(text, title=f"{operation} failed", border_style="red", padding=(1, 2)))
    if verbose:
        console.print(f"[dim]{error_info.traceback_str}[/dim]")
    sys.exit(1)


def _run(ctx: click.Context, operation: str, coro_factory):
    try:
        services = _services(ctx)
        return asyncio.run(coro_factory(services))
    except StoreVaultError as e:
        _fail(e, operation, ctx.obj.get("verbose", False))
    except KeyboardInterrupt:
        console.print(f"[yellow]{operation} cancelled by user[/yellow]")
        sys.exit(1)


def _artifact_table(artifacts, title: str = "Backups") -> Table:
    table = Table(title=title)
    table.add_column("Filename", style="cyan")
    table.add_column("Created (UTC)")
    table.add_column("Reason", style="magenta")
    table.add_column("Size", justify="right")
    for artifact in artifacts:
        table.add_row(
            artifact.filename,
            artifact.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            artifact.reason.value,
            format_bytes(artifact.size_bytes),
        )
    return table


@click.group(invoke_without_command=True)
@click.option('--config', '-c', 'config_path', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', envvar='DATABASE_URL', help='Database URL (overrides configuration)')
@click.option('--backup-dir', type=click.Path(file_okay=False), help='Backup directory (overrides configuration)')
@click.option('--version', is_flag=True, help='Show version information')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def main(
    ctx: click.Context,
    config_path: Optional[str],
    database_url: Optional[str],
    backup_dir: Optional[str],
    version: bool,
    verbose: bool
):
    """
    storevault

    Backups, verified restores and legacy data migration for the
    grocery inventory database.
    """
    ctx.ensure_object(dict)
    ctx.obj.setdefault("config_path", config_path)
    ctx.obj.setdefault("database_url", database_url)
    ctx.obj.setdefault("backup_dir", backup_dir)
    ctx.obj["verbose"] = verbose

    if version:
        console.print(f"storevault version {__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.group()
def backup():
    """Create, list and prune backups."""


@backup.command("create")
@click.option('--reason', '-r', type=click.Choice([r.value for r in BackupReason]),
              default=BackupReason.MANUAL.value, help='Why the backup is taken')
@click.pass_context
def backup_create(ctx: click.Context, reason: str):
    """Take a backup now."""
    with console.status("[green]Dumping database...[/green]"):
        artifact = _run(ctx, "Backup", lambda svc: svc.backup_manager.create_backup(reason))
    console.print(f"[green]✓ Backup created:[/green] {artifact.filename} ({format_bytes(artifact.size_bytes)})")


@backup.command("list")
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']), default='table')
@click.pass_context
def backup_list(ctx: click.Context, output_format: str):
    """List backups, newest first."""
    artifacts = _run(ctx, "List backups", lambda svc: svc.backup_manager.list_backups())
    if output_format == 'json':
        click.echo(json.dumps([a.model_dump(mode="json", by_alias=True) for a in artifacts], indent=2))
        return
    if not artifacts:
        console.print("[yellow]No backups found[/yellow]")
        return
    console.print(_artifact_table(artifacts))


@backup.command("status")
@click.pass_context
def backup_status(ctx: click.Context):
    """Show the last backup and storage totals."""
    info = _run(ctx, "Backup status", lambda svc: svc.backup_manager.status())
    last = info["last_backup"]

    text = Text()
    text.append("Last backup: ", style="bold")
    text.append(last.filename if last else "none", style="cyan")
    text.append(f"\nTotal backups: {info['total_backups']}")
    text.append(f"\nTotal size: {info['total_size_human']}")
    text.append(f"\nRetention: {info['retention_count']}")
    text.append(f"\nDirectory: {info['backups_directory']}", style="dim")
    console.print(Panel(text, title="Backup Status", border_style="blue", padding=(1, 2)))

    if info["recent_backups"]:
        console.print(_artifact_table(info["recent_backups"], title="Recent Backups"))


@backup.command("prune")
@click.option('--max-kept', type=click.IntRange(min=1), help='Number of backups to keep')
@click.pass_context
def backup_prune(ctx: click.Context, max_kept: Optional[int]):
    """Delete the oldest backups beyond the retention count."""
    deleted = _run(ctx, "Prune", lambda svc: svc.backup_manager.prune(max_kept))
    if not deleted:
        console.print("[green]Nothing to prune[/green]")
        return
    for filename in deleted:
        console.print(f"[dim]- {filename}[/dim]")
    console.print(f"[green]✓ Pruned {len(deleted)} backup(s)[/green]")


@backup.command("delete")
@click.argument('filename')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def backup_delete(ctx: click.Context, filename: str, yes: bool):
    """Delete one backup."""
    if not yes and not click.confirm(f"Delete backup {filename}?"):
        console.print("[yellow]Cancelled[/yellow]")
        return
    _run(ctx, "Delete backup", lambda svc: svc.backup_manager.delete_backup(filename))
    console.print(f"[green]✓ Deleted {filename}[/green]")


@main.command()
@click.argument('filename')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def restore(ctx: click.Context, filename: str, yes: bool):
    """Restore the database from a backup (a safety backup is taken first)."""
    if not yes and not click.confirm(
        f"Replace the current database with {filename}?", default=False
    ):
        console.print("[yellow]Restore cancelled[/yellow]")
        return

    with console.status(f"[green]Restoring {filename}...[/green]"):
        operation = _run(ctx, "Restore", lambda svc: svc.restore_coordinator.restore(filename))

    text = Text()
    text.append(f"Restored from {filename}\n", style="bold green")
    if operation.pre_restore_artifact:
        text.append(f"Safety backup: {operation.pre_restore_artifact.filename}\n", style="cyan")
    verification = operation.result.get("verification", {})
    if verification:
        text.append(verification.get("message", ""), style="dim")
    if operation.duration is not None:
        text.append(f"\nDuration: {format_duration(operation.duration)}", style="dim")
    console.print(Panel(text, title="Restore Complete", border_style="green", padding=(1, 2)))


@main.command()
@click.argument('source', type=click.Path(exists=True, dir_okay=False))
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json']), default='table')
@click.pass_context
def migrate(ctx: click.Context, source: str, output_format: str):
    """Migrate a legacy JSON inventory file into the database."""
    summary = _run(ctx, "Migration", lambda svc: svc.migration_engine.migrate(source))

    if output_format == 'json':
        click.echo(json.dumps(summary.model_dump(mode="json", by_alias=True), indent=2))
        return

    table = Table(title="Migration Summary")
    table.add_column("Records")
    table.add_column("Upserted", justify="right")
    table.add_column("Created", justify="right")
    table.add_row("Stores", str(summary.stores_upserted), str(summary.stores_created))
    table.add_row("Categories", str(summary.categories_upserted), str(summary.categories_created))
    table.add_row("Products", str(summary.products_upserted), str(summary.products_created))
    table.add_row("Prices", str(summary.prices_upserted), "-")
    console.print(table)
    console.print(f"Already migrated: {summary.already_migrated}")
    console.print(f"Skipped: {summary.skipped}")
    for record in summary.skipped_records:
        console.print(f"  • [yellow]{record.kind} {record.key}[/yellow]: {record.reason}")


@main.command("verify-migration")
@click.argument('source', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def verify_migration(ctx: click.Context, source: str):
    """Check that a legacy file is fully present in the database."""
    report = _run(ctx, "Migration verification", lambda svc: svc.migration_verifier.verify(source))

    if report.success:
        console.print(f"[green]✓ Verification passed ({report.checks_passed} checks)[/green]")
        return

    console.print(f"[red]Verification found {len(report.issues)} issue(s):[/red]")
    for issue in report.issues:
        console.print(f"  • [red]{issue}[/red]")
    sys.exit(1)


@main.command()
@click.option('--once', is_flag=True, help='Take one scheduled backup and exit')
@click.pass_context
def schedule(ctx: click.Context, once: bool):
    """Run scheduled backups (every four hours by default)."""
    async def run_scheduler(svc: VaultServices):
        if once:
            return await svc.scheduler.run_once()
        console.print(f"[green]Scheduler running ({svc.scheduler.cron_expression}), "
                      f"next backup at {svc.scheduler.next_run().isoformat()}[/green]")
        await svc.scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await svc.scheduler.stop()

    artifact = _run(ctx, "Scheduler", run_scheduler)
    if once:
        if artifact is None:
            console.print("[yellow]Scheduled backup skipped[/yellow]")
            sys.exit(1)
        console.print(f"[green]✓ Backup created:[/green] {artifact.filename}")


@main.command()
@click.option('--host', default='127.0.0.1', help='Host to bind to')
@click.option('--port', default=8000, help='Port to bind to')
@click.option('--with-scheduler', is_flag=True, help='Also run scheduled backups')
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, with_scheduler: bool):
    """Start the REST API server."""
    import uvicorn

    from storevault.api.main import create_app

    try:
        services = _services(ctx)
    except StoreVaultError as e:
        _fail(e, "Server startup", ctx.obj.get("verbose", False))

    console.print(f"[green]Starting storevault API on http://{host}:{port}[/green]")
    uvicorn.run(create_app(services=services, run_scheduler=with_scheduler), host=host, port=port)


if __name__ == '__main__':
    main()
