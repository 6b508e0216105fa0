from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import logging
import re
import time
from typing import Any, Iterator, Protocol

from .models import WORKLOAD_ID_NOT_AVAILABLE, BackupTaskRecord
from .pve import PveCommandError, PveHost

logger = logging.getLogger(__name__)

SOURCE_STRUCTURED_QUERY = "structured-query"
SOURCE_RAW_INDEX = "raw-index"

DEFAULT_BACKUP_TYPE_TAG = "vzdump"
DEFAULT_TASK_LOG_DIR = Path("/var/log/pve/tasks")
SECONDS_PER_DAY = 86400

# UPID:<node>:<pid>:<pstart>:<starttime>:<type>:<id>:<user>:  (note the trailing colon)
UPID_FIELD_COUNT = 9
_UPID_NODE_FIELD = 1
_UPID_START_FIELD = 4
_UPID_TYPE_FIELD = 5
_UPID_ID_FIELD = 6
_UPID_USER_FIELD = 7

_HEX_PATTERN = re.compile(r"[0-9A-Fa-f]+")
_LEADING_DIGITS_PATTERN = re.compile(r"\d+")
_ACTIVE_SAVED_FLAGS = frozenset({"0", "1"})


class BackupTaskSourceUnavailable(RuntimeError):
    """Raised when a task source cannot serve data and the next source should be tried."""


class TaskIndexDecodeError(ValueError):
    """Raised when a single task index line cannot be decoded."""


class BackupTaskSource(Protocol):
    name: str

    def fetch(self, *, node: str, lookback_days: int, now: float | None = None) -> list[BackupTaskRecord]:
        ...


@dataclass(frozen=True)
class UpidFields:
    upid: str
    node: str
    start_time: int
    task_type: str
    task_ident: str
    user: str

    @property
    def workload_id(self) -> str:
        match = _LEADING_DIGITS_PATTERN.match(self.task_ident)
        return match.group(0) if match else WORKLOAD_ID_NOT_AVAILABLE


def compute_cutoff(lookback_days: int, now: float | None = None) -> int:
    if isinstance(lookback_days, bool) or not isinstance(lookback_days, int):
        raise ValueError("lookback_days must be an integer")
    if lookback_days < 1:
        raise ValueError("lookback_days must be >= 1")
    current = time.time() if now is None else now
    return int(current) - lookback_days * SECONDS_PER_DAY


def decode_hex_timestamp(value: str) -> int:
    if not _HEX_PATTERN.fullmatch(value):
        raise TaskIndexDecodeError(f"start time is not hex-encoded: {value!r}")
    return int(value, 16)


def parse_upid(upid: str) -> UpidFields:
    fields = upid.split(":")
    if fields[0] != "UPID":
        raise TaskIndexDecodeError(f"not a task identifier: {upid!r}")
    if len(fields) != UPID_FIELD_COUNT:
        raise TaskIndexDecodeError(
            f"expected {UPID_FIELD_COUNT} colon-separated fields in task identifier, found {len(fields)}: {upid!r}"
        )

    return UpidFields(
        upid=upid,
        node=fields[_UPID_NODE_FIELD],
        start_time=decode_hex_timestamp(fields[_UPID_START_FIELD]),
        task_type=fields[_UPID_TYPE_FIELD],
        task_ident=fields[_UPID_ID_FIELD],
        user=fields[_UPID_USER_FIELD],
    )


def parse_index_line(line: str) -> tuple[UpidFields, int | None, str]:
    """Split one task index line into its identifier, end time and status.

    Archived index lines look like ``<UPID> <endtime-hex> <status>``. Lines in
    the ``active`` file may carry a saved flag before the end time, and tasks
    that are still running have nothing after the identifier.
    """
    upid, _, tail = line.strip().partition(" ")
    fields = parse_upid(upid)
    end_time, status = _parse_index_tail(tail)
    return fields, end_time, status


def _parse_index_tail(tail: str) -> tuple[int | None, str]:
    remainder = tail.strip()
    if not remainder:
        return None, ""

    first, _, rest = remainder.partition(" ")
    if first in _ACTIVE_SAVED_FLAGS and rest:
        candidate, _, candidate_rest = rest.strip().partition(" ")
        if _HEX_PATTERN.fullmatch(candidate):
            first, rest = candidate, candidate_rest

    if not _HEX_PATTERN.fullmatch(first):
        return None, remainder
    return int(first, 16), rest.strip()


class StructuredQueryTaskSource:
    """Backup tasks from the node task API via ``pvesh``."""

    name = SOURCE_STRUCTURED_QUERY

    def __init__(self, host: PveHost, *, type_tag: str = DEFAULT_BACKUP_TYPE_TAG) -> None:
        self.host = host
        self.type_tag = type_tag

    def fetch(self, *, node: str, lookback_days: int, now: float | None = None) -> list[BackupTaskRecord]:
        cutoff = compute_cutoff(lookback_days, now)
        if not self.host.has_command("pvesh"):
            raise BackupTaskSourceUnavailable("pvesh not found")

        try:
            items = self.host.query_tasks(node=node, type_filter=self.type_tag, since=cutoff)
        except PveCommandError as error:
            raise BackupTaskSourceUnavailable(f"pvesh query failed: {error}") from error

        records: list[BackupTaskRecord] = []
        for item in items:
            record = self._normalize(item, cutoff=cutoff)
            if record is not None:
                records.append(record)
        return records

    def _normalize(self, item: dict[str, Any], *, cutoff: int) -> BackupTaskRecord | None:
        task_id = str(item.get("upid") or "")
        if _task_type(item, task_id) != self.type_tag:
            return None

        start_time = _coerce_epoch(item.get("starttime"))
        if start_time is None or start_time < cutoff:
            return None

        workload_id = str(item.get("id") or "").strip()
        return BackupTaskRecord(
            task_id=task_id,
            start_time=start_time,
            end_time=_coerce_epoch(item.get("endtime")),
            status=str(item.get("status") or ""),
            workload_id=workload_id or WORKLOAD_ID_NOT_AVAILABLE,
        )


class TaskIndexSource:
    """Backup tasks read straight from the task index files on disk."""

    name = SOURCE_RAW_INDEX

    def __init__(self, task_dir: Path = DEFAULT_TASK_LOG_DIR, *, type_tag: str = DEFAULT_BACKUP_TYPE_TAG) -> None:
        self.task_dir = task_dir
        self.type_tag = type_tag

    def index_files(self) -> list[Path]:
        if not self.task_dir.is_dir():
            raise BackupTaskSourceUnavailable(f"task log directory not found: {self.task_dir}")

        files: list[Path] = []
        active = self.task_dir / "active"
        if active.is_file():
            files.append(active)
        files.extend(path for path in sorted(self.task_dir.glob("index*")) if path.is_file())

        if not files:
            raise BackupTaskSourceUnavailable(f"no task index files found in {self.task_dir}")
        return files

    def fetch(self, *, node: str, lookback_days: int, now: float | None = None) -> list[BackupTaskRecord]:
        cutoff = compute_cutoff(lookback_days, now)
        records: list[BackupTaskRecord] = []
        for path in self.index_files():
            records.extend(self._scan(path, cutoff=cutoff))
        return records

    def _scan(self, path: Path, *, cutoff: int) -> Iterator[BackupTaskRecord]:
        try:
            handle = path.open(encoding="utf-8", errors="replace")
        except OSError as error:
            logger.warning("Unable to read task index %s: %s", path, error)
            return

        with handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    fields, end_time, status = parse_index_line(line)
                except TaskIndexDecodeError as error:
                    logger.warning("%s:%s: skipping undecodable task line: %s", path, line_number, error)
                    continue

                if fields.start_time < cutoff or fields.task_type != self.type_tag:
                    continue

                yield BackupTaskRecord(
                    task_id=fields.upid,
                    start_time=fields.start_time,
                    end_time=end_time,
                    status=status,
                    workload_id=fields.workload_id,
                )


def _task_type(item: dict[str, Any], task_id: str) -> str | None:
    task_type = item.get("type")
    if task_type is not None:
        return str(task_type)
    try:
        return parse_upid(task_id).task_type
    except TaskIndexDecodeError:
        return None


def _coerce_epoch(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float):
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None
