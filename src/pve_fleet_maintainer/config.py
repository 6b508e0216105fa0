from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import os
import socket

from rich.logging import RichHandler


@dataclass(frozen=True)
class AppConfig:
    node_name: str = os.getenv("PFM_NODE_NAME", socket.gethostname())
    task_log_dir: Path = Path(os.getenv("PFM_TASK_LOG_DIR", "/var/log/pve/tasks"))
    backup_type_tag: str = os.getenv("PFM_BACKUP_TYPE_TAG", "vzdump")
    snapshot_prefix: str = os.getenv("PFM_SNAPSHOT_PREFIX", "pre_update")
    lvm_snapshot_size: str = os.getenv("PFM_LVM_SNAPSHOT_SIZE", "1G")
    command_timeout_seconds: int = int(os.getenv("PFM_COMMAND_TIMEOUT_SECONDS", "60"))
    update_timeout_seconds: int = int(os.getenv("PFM_UPDATE_TIMEOUT_SECONDS", "3600"))
    backup_lookback_days: int = int(os.getenv("PFM_BACKUP_LOOKBACK_DAYS", "1"))
    log_level: str = os.getenv("PFM_LOG_LEVEL", "INFO")


def configure_logging(level: str) -> None:
    resolved_level = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved_level, int):
        resolved_level = logging.INFO

    logging.basicConfig(
        level=resolved_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=False, show_path=False)],
        force=True,
    )
