from __future__ import annotations

from dataclasses import dataclass, field

POWER_RUNNING = "running"
POWER_STOPPED = "stopped"
POWER_UNKNOWN = "unknown"

BACKEND_ZFS = "zfs"
BACKEND_LVM = "lvm"
BACKEND_LVM_THIN = "lvm-thin"
BACKEND_GENERIC = "generic"

SNAPSHOT_CREATED = "created"
SNAPSHOT_SKIPPED = "skipped"
SNAPSHOT_FAILED = "failed"
SNAPSHOT_COLLISION = "collision"

OS_DEBIAN = "debian"
OS_ALPINE = "alpine"
OS_ARCH = "arch"
OS_FEDORA = "fedora"
OS_UNKNOWN = "unknown"

UPDATE_SUCCESS = "success"
UPDATE_FAILURE = "failure"
UPDATE_SKIPPED_UNKNOWN_OS = "skipped-unknown-os"

TASK_OK = "ok"
TASK_RUNNING = "running"
TASK_FAILED = "failed"

WORKLOAD_ID_NOT_AVAILABLE = "n/a"


@dataclass(frozen=True)
class ContainerHandle:
    ctid: int
    name: str
    power_state: str


@dataclass(frozen=True)
class StorageDescriptor:
    ctid: int
    root_storage: str | None
    storage_name: str | None
    storage_type: str | None
    kind: str
    path: str | None = None


@dataclass(frozen=True)
class SnapshotAttempt:
    backend: str
    outcome: str
    detail: str = ""


@dataclass(frozen=True)
class SnapshotRecord:
    ctid: int
    name: str
    backend: str
    outcome: str
    location: str | None = None
    message: str = ""
    attempts: tuple[SnapshotAttempt, ...] = ()


@dataclass(frozen=True)
class ContainerUpdateResult:
    ctid: int
    name: str
    outcome: str
    stage: str
    started_at: str
    finished_at: str
    os_family: str = OS_UNKNOWN
    snapshot: SnapshotRecord | None = None
    message: str = ""


@dataclass(frozen=True)
class FleetReport:
    run_date: str
    snapshot_name: str
    results: tuple[ContainerUpdateResult, ...] = ()

    @property
    def success_count(self) -> int:
        return _count(self.results, UPDATE_SUCCESS)

    @property
    def failure_count(self) -> int:
        return _count(self.results, UPDATE_FAILURE)

    @property
    def skipped_count(self) -> int:
        return _count(self.results, UPDATE_SKIPPED_UNKNOWN_OS)

    @property
    def has_failures(self) -> bool:
        return self.failure_count > 0


@dataclass(frozen=True)
class BackupTaskRecord:
    task_id: str
    start_time: int
    status: str
    end_time: int | None = None
    workload_id: str = WORKLOAD_ID_NOT_AVAILABLE


@dataclass(frozen=True)
class BackupAuditEntry:
    record: BackupTaskRecord
    classification: str

    @property
    def display_status(self) -> str:
        if self.classification == TASK_OK:
            return "OK"
        if self.classification == TASK_RUNNING:
            return "RUNNING"
        return self.record.status.strip()


@dataclass(frozen=True)
class BackupAuditReport:
    node: str
    lookback_days: int
    cutoff: int
    source: str | None
    entries: tuple[BackupAuditEntry, ...] = ()
    note: str = ""
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok_count(self) -> int:
        return sum(1 for entry in self.entries if entry.classification == TASK_OK)

    @property
    def running_count(self) -> int:
        return sum(1 for entry in self.entries if entry.classification == TASK_RUNNING)

    @property
    def failed_count(self) -> int:
        return sum(1 for entry in self.entries if entry.classification == TASK_FAILED)

    @property
    def has_failures(self) -> bool:
        return self.failed_count > 0


def _count(results: tuple[ContainerUpdateResult, ...], outcome: str) -> int:
    return sum(1 for result in results if result.outcome == outcome)
