from __future__ import annotations

import os
import signal
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from .audit import build_reconciler
from .config import AppConfig, configure_logging
from .fleet import FleetDiscoveryError, NoRunningContainersError, build_orchestrator
from .models import (
    TASK_FAILED,
    TASK_OK,
    UPDATE_FAILURE,
    UPDATE_SUCCESS,
    BackupAuditReport,
    FleetReport,
)
from .pve import PveHost
from .reporting import audit_rows, fleet_rows

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_FATAL = 2

console = Console()

app = typer.Typer(
    help="Snapshot-then-update the running containers of a Proxmox VE host and audit its backup jobs.",
    no_args_is_help=True,
    add_completion=False,
)

LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    help="Logging level (defaults to PFM_LOG_LEVEL or INFO).",
)
CTID_OPTION = typer.Option(
    None,
    "--ctid",
    help="Only update this container ID. Repeat to select several.",
)
DAYS_OPTION = typer.Option(
    None,
    "--days",
    "-d",
    help="Check backup tasks from the last N days (defaults to PFM_BACKUP_LOOKBACK_DAYS or 1).",
)

_OUTCOME_STYLES = {
    UPDATE_SUCCESS: "green",
    UPDATE_FAILURE: "red",
}
_CLASSIFICATION_STYLES = {
    TASK_OK: "green",
    TASK_FAILED: "red",
}


@app.callback()
def main(log_level: str | None = LOG_LEVEL_OPTION) -> None:
    configure_logging(log_level or AppConfig().log_level)
    signal.signal(signal.SIGTERM, _raise_on_termination)


@app.command("update")
def update_command(ctid: list[int] | None = CTID_OPTION) -> None:
    """Snapshot and update every running container."""
    _require_root()
    config = AppConfig()
    host = PveHost(command_timeout_seconds=config.command_timeout_seconds)
    orchestrator = build_orchestrator(
        host,
        snapshot_prefix=config.snapshot_prefix,
        lvm_snapshot_size=config.lvm_snapshot_size,
        update_timeout_seconds=config.update_timeout_seconds,
    )

    try:
        report = orchestrator.run(target_ids=ctid or None)
    except NoRunningContainersError as error:
        console.print(f"[yellow]{error}[/yellow]")
        raise typer.Exit(code=EXIT_OK) from error
    except FleetDiscoveryError as error:
        _fail(str(error), EXIT_FATAL)

    _render_fleet_report(report)
    raise typer.Exit(code=EXIT_FAILURES if report.has_failures else EXIT_OK)


@app.command("backup-check")
def backup_check_command(days: int | None = DAYS_OPTION) -> None:
    """Report the backup jobs of this node for the lookback window."""
    _require_root()
    config = AppConfig()
    lookback_days = days if days is not None else config.backup_lookback_days
    host = PveHost(command_timeout_seconds=config.command_timeout_seconds)
    reconciler = build_reconciler(host, task_dir=config.task_log_dir, type_tag=config.backup_type_tag)

    try:
        report = reconciler.audit(node=config.node_name, lookback_days=lookback_days)
    except ValueError as error:
        _fail(f"Invalid lookback window: {error}", EXIT_FATAL)

    _render_audit_report(report)
    if report.has_failures:
        console.print("[red]One or more backup jobs failed![/red]")
        raise typer.Exit(code=EXIT_FAILURES)
    if report.entries:
        console.print("[green]All backup jobs completed successfully.[/green]")
    raise typer.Exit(code=EXIT_OK)


def _render_fleet_report(report: FleetReport) -> None:
    table = Table("CT", "Name", "OS", "Snapshot", "Outcome", "Message", title=f"Fleet update {report.run_date}")
    for row in fleet_rows(report):
        style = _OUTCOME_STYLES.get(row["outcome"], "yellow")
        table.add_row(
            row["ctid"],
            row["name"],
            row["os"],
            row["snapshot"],
            f"[{style}]{row['outcome']}[/{style}]",
            row["message"],
        )
    console.print(table)
    console.print(
        f"Success: [green]{report.success_count}[/green]  "
        f"Failed: [red]{report.failure_count}[/red]  "
        f"Skipped: [yellow]{report.skipped_count}[/yellow]"
    )


def _render_audit_report(report: BackupAuditReport) -> None:
    console.print(
        f"[bold]Backup health check: {report.node}[/bold] (last {report.lookback_days} day(s), "
        f"source: {report.source or 'none'})"
    )
    for warning in report.warnings:
        console.print(f"[yellow]{warning}[/yellow]")

    if report.entries:
        table = Table("Date", "VMID", "Status", "Duration", "UPID")
        for row in audit_rows(report):
            style = _CLASSIFICATION_STYLES.get(row["classification"], "yellow")
            table.add_row(
                row["date"],
                row["vmid"],
                f"[{style}]{row['status']}[/{style}]",
                row["duration"],
                row["upid"],
            )
        console.print(table)
    if report.note:
        console.print(f"[yellow]{report.note}[/yellow]")

    console.print(
        f"OK: [green]{report.ok_count}[/green]  "
        f"Failed: [red]{report.failed_count}[/red]  "
        f"Running: [yellow]{report.running_count}[/yellow]"
    )


def _require_root() -> None:
    if os.geteuid() != 0:
        _fail("This command must be run as root.", EXIT_FAILURES)


def _fail(message: str, code: int) -> NoReturn:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=code)


def _raise_on_termination(signum: int, _frame: FrameType | None) -> None:
    # SystemExit unwinds through subprocess.run, which kills the running host command.
    raise SystemExit(128 + signum)


if __name__ == "__main__":
    app()
