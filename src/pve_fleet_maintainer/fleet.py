from __future__ import annotations

from datetime import UTC, date, datetime
import logging
from typing import Iterable

from .guest import GuestOSProber, UpdateExecution, UpdateExecutor
from .models import (
    BACKEND_GENERIC,
    OS_UNKNOWN,
    POWER_RUNNING,
    SNAPSHOT_SKIPPED,
    UPDATE_FAILURE,
    UPDATE_SKIPPED_UNKNOWN_OS,
    UPDATE_SUCCESS,
    ContainerHandle,
    ContainerUpdateResult,
    FleetReport,
    SnapshotRecord,
)
from .pve import PveHost, error_message
from .storage import DEFAULT_SNAPSHOT_PREFIX, SnapshotAcquirer, StorageBackendResolver, build_snapshot_name

logger = logging.getLogger(__name__)

STAGE_DISCOVERED = "discovered"
STAGE_SNAPSHOTTING = "snapshotting"
STAGE_CLASSIFYING = "classifying"
STAGE_UPDATING = "updating"
STAGE_SKIPPED_UNKNOWN_OS = "skipped-unknown-os"


class FleetDiscoveryError(RuntimeError):
    """Raised when the set of containers to update cannot be determined."""


class NoRunningContainersError(FleetDiscoveryError):
    """Raised when discovery succeeds but nothing is eligible for an update."""


class ContainerStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class FleetUpdateOrchestrator:
    """Snapshot, classify and update every running container, one at a time.

    Each container is processed to completion before the next one starts. A
    failure in one container is recorded in its result and never stops the
    rest of the fleet.
    """

    def __init__(
        self,
        *,
        host: PveHost,
        resolver: StorageBackendResolver,
        acquirer: SnapshotAcquirer,
        prober: GuestOSProber,
        executor: UpdateExecutor,
        snapshot_prefix: str = DEFAULT_SNAPSHOT_PREFIX,
    ) -> None:
        self.host = host
        self.resolver = resolver
        self.acquirer = acquirer
        self.prober = prober
        self.executor = executor
        self.snapshot_prefix = snapshot_prefix

    def discover(self, target_ids: Iterable[int] | None = None) -> list[ContainerHandle]:
        try:
            containers = self.host.list_containers()
        except Exception as error:  # pylint: disable=broad-except
            raise FleetDiscoveryError(f"unable to list containers: {error_message(error)}") from error

        running = [container for container in containers if container.power_state == POWER_RUNNING]
        if target_ids is not None:
            wanted = set(target_ids)
            running = [container for container in running if container.ctid in wanted]
            if not running:
                wanted_csv = ", ".join(str(ctid) for ctid in sorted(wanted))
                raise NoRunningContainersError(f"No running containers match the requested IDs: {wanted_csv}")

        if not running:
            raise NoRunningContainersError("No running containers found. Nothing to do.")
        return running

    def run(self, *, target_ids: Iterable[int] | None = None, run_date: date | None = None) -> FleetReport:
        containers = self.discover(target_ids)
        return self.update_many(containers, run_date=run_date or date.today())

    def update_many(self, containers: list[ContainerHandle], *, run_date: date) -> FleetReport:
        snapshot_name = build_snapshot_name(run_date, self.snapshot_prefix)
        results: list[ContainerUpdateResult] = []
        for container in containers:
            results.append(self.update_one(container, snapshot_name=snapshot_name, run_date=run_date))

        report = FleetReport(
            run_date=run_date.isoformat(),
            snapshot_name=snapshot_name,
            results=tuple(results),
        )
        logger.info(
            "Fleet run finished: %s succeeded, %s failed, %s skipped",
            report.success_count,
            report.failure_count,
            report.skipped_count,
        )
        return report

    def update_one(self, container: ContainerHandle, *, snapshot_name: str, run_date: date) -> ContainerUpdateResult:
        started_at = _utc_now_iso()
        stage = STAGE_DISCOVERED
        snapshot: SnapshotRecord | None = None
        os_family = OS_UNKNOWN
        outcome = UPDATE_FAILURE
        message = ""
        logger.info("Processing CT %s (%s)...", container.ctid, container.name or "unnamed")

        try:
            stage = STAGE_SNAPSHOTTING
            snapshot = self._take_snapshot(container, snapshot_name=snapshot_name, run_date=run_date)

            stage = STAGE_CLASSIFYING
            os_family = self._classify(container)

            if os_family == OS_UNKNOWN:
                stage = STAGE_SKIPPED_UNKNOWN_OS
                outcome = UPDATE_SKIPPED_UNKNOWN_OS
                message = "could not detect the guest OS; update skipped"
                logger.warning("CT %s: could not detect OS, skipping", container.ctid)
            else:
                stage = STAGE_UPDATING
                execution = self._update(container, os_family)
                outcome = execution.outcome
                message = execution.message
        except ContainerStageError as error:
            message = str(error)
        except Exception as error:  # pylint: disable=broad-except
            message = f"unexpected update failure: {error_message(error)}"

        if outcome == UPDATE_SUCCESS:
            logger.info("CT %s: successfully updated %s", container.ctid, container.name or "unnamed")
        elif outcome == UPDATE_FAILURE:
            logger.error("CT %s: error updating %s: %s", container.ctid, container.name or "unnamed", message)

        return ContainerUpdateResult(
            ctid=container.ctid,
            name=container.name,
            outcome=outcome,
            stage=stage,
            started_at=started_at,
            finished_at=_utc_now_iso(),
            os_family=os_family,
            snapshot=snapshot,
            message=message,
        )

    def _take_snapshot(self, container: ContainerHandle, *, snapshot_name: str, run_date: date) -> SnapshotRecord:
        try:
            descriptor = self.resolver.resolve_container(container.ctid)
            return self.acquirer.acquire(descriptor, snapshot_name, run_date=run_date)
        except Exception as error:  # pylint: disable=broad-except
            reason = error_message(error)
            logger.warning("CT %s: snapshot stage failed, continuing without snapshot: %s", container.ctid, reason)
            return SnapshotRecord(
                ctid=container.ctid,
                name=snapshot_name,
                backend=BACKEND_GENERIC,
                outcome=SNAPSHOT_SKIPPED,
                message=f"snapshot stage failed: {reason}",
            )

    def _classify(self, container: ContainerHandle) -> str:
        try:
            return self.prober.classify(container.ctid)
        except Exception as error:  # pylint: disable=broad-except
            raise ContainerStageError(stage="classify", reason=error_message(error)) from error

    def _update(self, container: ContainerHandle, os_family: str) -> UpdateExecution:
        try:
            return self.executor.apply(container.ctid, os_family)
        except Exception as error:  # pylint: disable=broad-except
            raise ContainerStageError(stage="update", reason=error_message(error)) from error


def build_orchestrator(
    host: PveHost,
    *,
    snapshot_prefix: str = DEFAULT_SNAPSHOT_PREFIX,
    lvm_snapshot_size: str,
    update_timeout_seconds: int,
) -> FleetUpdateOrchestrator:
    return FleetUpdateOrchestrator(
        host=host,
        resolver=StorageBackendResolver(host),
        acquirer=SnapshotAcquirer(host, lvm_snapshot_size=lvm_snapshot_size),
        prober=GuestOSProber(host),
        executor=UpdateExecutor(host, timeout_seconds=update_timeout_seconds),
        snapshot_prefix=snapshot_prefix,
    )


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).replace(microsecond=0).isoformat()
