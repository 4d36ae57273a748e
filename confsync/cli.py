"""confsync CLI — the main entry point for the configuration sync pipeline."""

import logging
import signal
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from confsync import __version__
from confsync.config import DEFAULT_CONFIG_PATH, RepeatSettings, SyncConfig, load_config
from confsync.errors import BackupFailureError, ConfigError, IntegrityViolationError, LockContention
from confsync.log import log_session_end, log_session_start, setup_logging
from confsync.models import SyncOutcome, SyncResult, short_sha

console = Console()
logger = logging.getLogger("confsync")

_OUTCOME_STYLES = {
    SyncOutcome.SKIPPED: "dim",
    SyncOutcome.DEPLOYED: "green",
    SyncOutcome.PREVIEWED: "cyan",
    SyncOutcome.FAILED: "red",
    SyncOutcome.ROLLED_BACK: "yellow",
}

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Options file (YAML or JSON)",
)


@click.group()
@click.version_option(version=__version__)
def main():
    """confsync — keep a live configuration directory in sync with git.

    Clones the configured repository into a private staging directory,
    mirrors it onto the live directory without ever touching runtime-owned
    paths, validates the result and rolls back from a backup on failure.
    """


def _load(config_path: str) -> SyncConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(2)


def _on_sigterm(signum, frame):
    raise SystemExit(143)


# ── Run ──────────────────────────────────────────────────────────────


@main.command()
@config_option
@click.option("--once", is_flag=True, help="Run a single pass even if repeat is active")
@click.option("--dry-run", is_flag=True, help="Report what would change without writing")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def run(config_path: str, once: bool, dry_run: bool, verbose: bool):
    """Synchronize the live directory with the configured repository."""
    from confsync.sync.orchestrator import SyncOrchestrator

    config = _load(config_path)
    if dry_run:
        config = config.with_overrides(deploy_dry_run=True)
    if once:
        config = config.with_overrides(
            repeat=RepeatSettings(active=False, interval=config.repeat.interval)
        )

    setup_logging(config.log_path, level=logging.DEBUG if verbose else logging.INFO)
    signal.signal(signal.SIGTERM, _on_sigterm)

    orchestrator = SyncOrchestrator(config)
    log_session_start()
    try:
        result = orchestrator.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping")
        sys.exit(130)
    finally:
        log_session_end()

    _print_result(result)
    if result.outcome in (SyncOutcome.FAILED, SyncOutcome.ROLLED_BACK):
        sys.exit(1)


def _print_result(result: SyncResult) -> None:
    style = _OUTCOME_STYLES[result.outcome]
    lines = [f"[{style}]{result.outcome.value.replace('_', ' ').upper()}[/]"]
    if result.old_commit or result.new_commit:
        lines.append(f"{short_sha(result.old_commit)} -> {short_sha(result.new_commit)}")
    if result.reason:
        lines.append(result.reason)
    if result.deploy is not None:
        lines.append(result.deploy.summary())
    if result.restarted:
        lines.append("Restart triggered")
    console.print(Panel("\n".join(lines), title="Sync Result"))


# ── Backups ──────────────────────────────────────────────────────────


@main.command()
@config_option
def backups(config_path: str):
    """List the backups kept for the live directory, newest first."""
    from confsync.sync.orchestrator import SyncOrchestrator

    config = _load(config_path)
    snapshots = SyncOrchestrator(config).backups.list_all()
    if not snapshots:
        console.print(f"[yellow]No backups in {config.backup_path}[/]")
        return

    table = Table(title=f"Backups ({len(snapshots)})")
    table.add_column("Name", style="cyan")
    table.add_column("Label")
    table.add_column("Created (UTC)")
    table.add_column("Commit", style="dim")
    table.add_column("Files", justify="right")

    for snapshot in snapshots:
        table.add_row(
            snapshot.name,
            snapshot.label,
            snapshot.created_at,
            short_sha(snapshot.commit),
            str(snapshot.file_count),
        )

    console.print(table)


# ── Restore ──────────────────────────────────────────────────────────


@main.command()
@click.argument("name")
@config_option
def restore(name: str, config_path: str):
    """Restore the live directory from backup NAME.

    Protected paths are never touched. The staging repository is left as
    is, so the next run only redeploys once the remote moves again.
    """
    from confsync.sync.orchestrator import SyncOrchestrator

    config = _load(config_path)
    setup_logging(config.log_path)
    try:
        snapshot = SyncOrchestrator(config).restore_backup(name)
    except LockContention as e:
        console.print(f"[yellow]{e}; try again later[/]")
        sys.exit(1)
    except (BackupFailureError, IntegrityViolationError) as e:
        console.print(f"[red]Restore failed:[/] {e}")
        sys.exit(1)

    console.print(f"[green]Restored from:[/] {snapshot.location}")
