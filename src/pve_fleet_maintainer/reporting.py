from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from .guest import OS_LABELS
from .models import UPDATE_FAILURE, BackupAuditReport, ContainerUpdateResult, FleetReport

_UPID_DISPLAY_LENGTH = 30

_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "classify stage failed",
        "Confirm the container is running and `pct exec` works for it.",
    ),
    (
        "update stage failed",
        "Check the container's package manager and network access, then rerun the update.",
    ),
    (
        "update command exited",
        "Open a shell with `pct enter` and run the package update manually to see the full error.",
    ),
    (
        "unexpected update failure",
        "Inspect the host logs for this container's update attempt.",
    ),
)


def actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect the host logs for more detail."


def fleet_rows(report: FleetReport) -> list[dict[str, str]]:
    return [_fleet_row(result) for result in report.results]


def _fleet_row(result: ContainerUpdateResult) -> dict[str, str]:
    snapshot = "none"
    if result.snapshot is not None:
        snapshot = f"{result.snapshot.outcome} ({result.snapshot.backend})"

    message = result.message
    if result.outcome == UPDATE_FAILURE:
        message = actionable_next_step(result.message)

    return {
        "ctid": str(result.ctid),
        "name": result.name or "unnamed",
        "os": OS_LABELS.get(result.os_family, result.os_family),
        "snapshot": snapshot,
        "outcome": result.outcome,
        "message": message,
    }


def audit_rows(report: BackupAuditReport) -> list[dict[str, str]]:
    rows: list[dict[str, str]] = []
    for entry in report.entries:
        record = entry.record
        rows.append(
            {
                "date": format_epoch(record.start_time),
                "vmid": record.workload_id,
                "status": entry.display_status,
                "classification": entry.classification,
                "duration": format_duration(record.start_time, record.end_time),
                "upid": short_upid(record.task_id),
            }
        )
    return rows


def format_epoch(value: int) -> str:
    try:
        return datetime.fromtimestamp(value).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError):
        return str(value)


def format_duration(start_time: int, end_time: int | None) -> str:
    if end_time is None or end_time < start_time:
        return "-"
    seconds = end_time - start_time
    return f"{seconds // 60}m {seconds % 60}s"


def short_upid(upid: str) -> str:
    if len(upid) <= _UPID_DISPLAY_LENGTH:
        return upid
    return f"{upid[:_UPID_DISPLAY_LENGTH]}..."


def fleet_report_to_dict(report: FleetReport) -> dict[str, Any]:
    payload = _plain(asdict(report))
    payload["summary"] = {
        "success": report.success_count,
        "failure": report.failure_count,
        "skipped_unknown_os": report.skipped_count,
    }
    return payload


def audit_report_to_dict(report: BackupAuditReport) -> dict[str, Any]:
    payload = _plain(asdict(report))
    payload["summary"] = {
        "ok": report.ok_count,
        "running": report.running_count,
        "failed": report.failed_count,
    }
    return payload


def _plain(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value
