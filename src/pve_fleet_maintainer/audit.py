from __future__ import annotations

from pathlib import Path
import logging
import time
from typing import Sequence

from .models import TASK_FAILED, TASK_OK, TASK_RUNNING, BackupAuditEntry, BackupAuditReport
from .pve import PveHost
from .tasks import (
    DEFAULT_BACKUP_TYPE_TAG,
    DEFAULT_TASK_LOG_DIR,
    BackupTaskSource,
    BackupTaskSourceUnavailable,
    StructuredQueryTaskSource,
    TaskIndexSource,
    compute_cutoff,
)

logger = logging.getLogger(__name__)

NO_DATA_SOURCE_NOTE = "no data source available"


def classify_status(status: str) -> str:
    normalized = status.strip()
    if normalized == "OK":
        return TASK_OK
    if not normalized:
        return TASK_RUNNING
    return TASK_FAILED


class BackupAuditReconciler:
    """Build one backup audit report from the first task source that can serve data."""

    def __init__(self, sources: Sequence[BackupTaskSource]) -> None:
        self.sources = tuple(sources)

    def audit(self, *, node: str, lookback_days: int = 1, now: float | None = None) -> BackupAuditReport:
        current = time.time() if now is None else now
        cutoff = compute_cutoff(lookback_days, current)
        warnings: list[str] = []

        for source in self.sources:
            try:
                records = source.fetch(node=node, lookback_days=lookback_days, now=current)
            except BackupTaskSourceUnavailable as error:
                logger.warning("Backup task source %s unavailable: %s", source.name, error)
                warnings.append(f"{source.name}: {error}")
                continue

            entries = tuple(
                BackupAuditEntry(record=record, classification=classify_status(record.status)) for record in records
            )
            note = "" if entries else f"no backup tasks found in the last {lookback_days} day(s)"
            if not entries:
                logger.warning("No backup tasks found in the last %s day(s)", lookback_days)
            return BackupAuditReport(
                node=node,
                lookback_days=lookback_days,
                cutoff=cutoff,
                source=source.name,
                entries=entries,
                note=note,
                warnings=tuple(warnings),
            )

        logger.warning("No backup task source is available on %s", node)
        return BackupAuditReport(
            node=node,
            lookback_days=lookback_days,
            cutoff=cutoff,
            source=None,
            note=NO_DATA_SOURCE_NOTE,
            warnings=tuple(warnings),
        )


def build_reconciler(
    host: PveHost,
    *,
    task_dir: Path = DEFAULT_TASK_LOG_DIR,
    type_tag: str = DEFAULT_BACKUP_TYPE_TAG,
) -> BackupAuditReconciler:
    return BackupAuditReconciler(
        [
            StructuredQueryTaskSource(host, type_tag=type_tag),
            TaskIndexSource(task_dir, type_tag=type_tag),
        ]
    )
