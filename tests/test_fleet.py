from __future__ import annotations

from datetime import date
from unittest.mock import Mock

import pytest

from pve_fleet_maintainer.fleet import (
    STAGE_SKIPPED_UNKNOWN_OS,
    STAGE_UPDATING,
    FleetDiscoveryError,
    FleetUpdateOrchestrator,
    NoRunningContainersError,
    build_orchestrator,
)
from pve_fleet_maintainer.guest import UpdateExecution
from pve_fleet_maintainer.models import (
    BACKEND_GENERIC,
    BACKEND_LVM,
    BACKEND_ZFS,
    OS_DEBIAN,
    OS_FEDORA,
    OS_UNKNOWN,
    POWER_RUNNING,
    POWER_STOPPED,
    SNAPSHOT_CREATED,
    SNAPSHOT_SKIPPED,
    UPDATE_FAILURE,
    UPDATE_SKIPPED_UNKNOWN_OS,
    UPDATE_SUCCESS,
    ContainerHandle,
    SnapshotRecord,
)
from pve_fleet_maintainer.pve import CommandResult, PveCommandError

RUN_DATE = date(2026, 10, 19)


def _container(ctid: int, name: str = "", power_state: str = POWER_RUNNING) -> ContainerHandle:
    return ContainerHandle(ctid=ctid, name=name or f"ct{ctid}", power_state=power_state)


def _snapshot(ctid: int) -> SnapshotRecord:
    return SnapshotRecord(
        ctid=ctid,
        name="pre_update_2026-10-19",
        backend=BACKEND_GENERIC,
        outcome=SNAPSHOT_CREATED,
    )


def _orchestrator(containers: list[ContainerHandle]) -> FleetUpdateOrchestrator:
    host = Mock()
    host.list_containers.return_value = containers
    acquirer = Mock()
    acquirer.acquire.side_effect = lambda descriptor, _name, **_kwargs: _snapshot(descriptor.ctid)
    resolver = Mock()
    resolver.resolve_container.side_effect = lambda ctid: Mock(ctid=ctid)
    prober = Mock()
    prober.classify.return_value = OS_DEBIAN
    executor = Mock()
    executor.apply.return_value = UpdateExecution(outcome=UPDATE_SUCCESS, returncode=0)
    return FleetUpdateOrchestrator(
        host=host,
        resolver=resolver,
        acquirer=acquirer,
        prober=prober,
        executor=executor,
    )


def test_discover_returns_running_containers_only() -> None:
    orchestrator = _orchestrator([_container(100), _container(101, power_state=POWER_STOPPED), _container(102)])

    assert [container.ctid for container in orchestrator.discover()] == [100, 102]


def test_discover_filters_to_requested_targets() -> None:
    orchestrator = _orchestrator([_container(100), _container(101), _container(102)])

    assert [container.ctid for container in orchestrator.discover([102])] == [102]


def test_discover_without_running_containers_is_fatal() -> None:
    orchestrator = _orchestrator([_container(101, power_state=POWER_STOPPED)])

    with pytest.raises(NoRunningContainersError, match="No running containers found"):
        orchestrator.run(run_date=RUN_DATE)


def test_discover_with_unmatched_target_is_fatal() -> None:
    orchestrator = _orchestrator([_container(100)])

    with pytest.raises(NoRunningContainersError, match="999"):
        orchestrator.discover([999])


def test_discover_wraps_registry_failure() -> None:
    orchestrator = _orchestrator([])
    orchestrator.host.list_containers.side_effect = PveCommandError(command=["pct", "list"], reason="ipcc failed")

    with pytest.raises(FleetDiscoveryError, match="unable to list containers"):
        orchestrator.discover()


def test_run_continues_after_one_container_fails() -> None:
    containers = [_container(ctid) for ctid in (100, 101, 102, 103)]
    orchestrator = _orchestrator(containers)
    orchestrator.executor.apply.side_effect = [
        UpdateExecution(outcome=UPDATE_SUCCESS, returncode=0),
        UpdateExecution(outcome=UPDATE_FAILURE, returncode=100, message="update command exited with status 100"),
        UpdateExecution(outcome=UPDATE_SUCCESS, returncode=0),
        UpdateExecution(outcome=UPDATE_SUCCESS, returncode=0),
    ]

    report = orchestrator.run(run_date=RUN_DATE)

    assert [result.ctid for result in report.results] == [100, 101, 102, 103]
    assert report.failure_count == 1
    assert report.success_count == 3
    assert report.has_failures
    assert report.snapshot_name == "pre_update_2026-10-19"


def test_run_isolates_unexpected_exceptions_per_container() -> None:
    orchestrator = _orchestrator([_container(100), _container(101)])
    orchestrator.executor.apply.side_effect = [RuntimeError("exec socket closed"), UpdateExecution(UPDATE_SUCCESS, 0)]

    report = orchestrator.run(run_date=RUN_DATE)

    first, second = report.results
    assert first.outcome == UPDATE_FAILURE
    assert first.stage == STAGE_UPDATING
    assert first.message == "update stage failed: exec socket closed"
    assert second.outcome == UPDATE_SUCCESS


def test_classification_failure_is_recorded_as_failure() -> None:
    orchestrator = _orchestrator([_container(100)])
    orchestrator.prober.classify.side_effect = RuntimeError("probe crashed")

    report = orchestrator.run(run_date=RUN_DATE)

    assert report.results[0].outcome == UPDATE_FAILURE
    assert "classify stage failed" in report.results[0].message
    orchestrator.executor.apply.assert_not_called()


def test_snapshot_stage_error_never_blocks_update() -> None:
    orchestrator = _orchestrator([_container(100)])
    orchestrator.resolver.resolve_container.side_effect = RuntimeError("resolver bug")

    report = orchestrator.run(run_date=RUN_DATE)

    result = report.results[0]
    assert result.snapshot is not None
    assert result.snapshot.outcome == SNAPSHOT_SKIPPED
    assert result.outcome == UPDATE_SUCCESS


def test_unknown_os_is_skipped_and_counted_separately() -> None:
    orchestrator = _orchestrator([_container(100), _container(101)])
    orchestrator.prober.classify.side_effect = [OS_UNKNOWN, OS_DEBIAN]

    report = orchestrator.run(run_date=RUN_DATE)

    assert report.results[0].outcome == UPDATE_SKIPPED_UNKNOWN_OS
    assert report.results[0].stage == STAGE_SKIPPED_UNKNOWN_OS
    assert report.skipped_count == 1
    assert report.failure_count == 0
    assert not report.has_failures
    orchestrator.executor.apply.assert_called_once_with(101, OS_DEBIAN)


def test_each_container_is_snapshotted_before_classification() -> None:
    orchestrator = _orchestrator([_container(100)])
    calls: list[str] = []
    orchestrator.acquirer.acquire.side_effect = lambda descriptor, _name, **_kwargs: (
        calls.append("snapshot") or _snapshot(100)
    )
    orchestrator.prober.classify.side_effect = lambda _ctid: calls.append("classify") or OS_DEBIAN
    orchestrator.executor.apply.side_effect = lambda *_args: calls.append("update") or UpdateExecution(UPDATE_SUCCESS, 0)

    orchestrator.run(run_date=RUN_DATE)

    assert calls == ["snapshot", "classify", "update"]


class _FakeHost:
    """Stands in for a host with one ZFS, one directory and one LVM container."""

    def __init__(self) -> None:
        self.rootfs = {
            100: "local-zfs:subvol-100-disk-0",
            101: "local:101/vm-101-disk-0.raw",
            102: "data-lvm:vm-102-disk-0",
        }
        self.markers = {
            100: "/etc/debian_version",
            102: "/etc/fedora-release",
        }
        self.update_exit_codes = {100: 0, 102: 1}
        self.snapshot_calls: list[tuple[str, int | str]] = []

    def list_containers(self) -> list[ContainerHandle]:
        return [_container(100, "app"), _container(101, "legacy"), _container(102, "db")]

    def has_command(self, _name: str) -> bool:
        return True

    def root_storage_reference(self, ctid: int) -> str:
        return self.rootfs[ctid]

    def storage_types(self) -> dict[str, str]:
        return {"local-zfs": "zfspool", "local": "dir", "data-lvm": "lvm"}

    def volume_path(self, volume_id: str) -> str:
        if volume_id.startswith("local-zfs:"):
            return "/rpool/data/subvol-100-disk-0"
        return "/dev/data/vm-102-disk-0"

    def zfs_dataset_exists(self, _dataset: str) -> bool:
        return True

    def lvm_volume_exists(self, _lv_path: str) -> bool:
        return True

    def zfs_snapshot(self, dataset: str, name: str) -> CommandResult:
        self.snapshot_calls.append(("zfs", dataset))
        return CommandResult(command=("zfs",), returncode=0)

    def lvm_snapshot(self, lv_path: str, name: str, *, size: str) -> CommandResult:
        self.snapshot_calls.append(("lvm", lv_path))
        return CommandResult(command=("lvcreate",), returncode=0)

    def container_snapshot(self, ctid: int, name: str, *, description: str) -> CommandResult:
        self.snapshot_calls.append(("pct", ctid))
        return CommandResult(command=("pct",), returncode=2, stderr="snapshot feature is not available")

    def container_exec(self, ctid: int, command, *, timeout_seconds: int | None = None) -> CommandResult:
        if list(command[:2]) == ["test", "-f"]:
            return CommandResult(command=tuple(command), returncode=0 if self.markers.get(ctid) == command[2] else 1)
        return CommandResult(command=tuple(command), returncode=self.update_exit_codes[ctid])


def test_mixed_fleet_end_to_end() -> None:
    host = _FakeHost()
    orchestrator = build_orchestrator(host, lvm_snapshot_size="1G", update_timeout_seconds=60)  # type: ignore[arg-type]

    report = orchestrator.run(run_date=RUN_DATE)

    assert (report.success_count, report.failure_count, report.skipped_count) == (1, 1, 1)
    by_ctid = {result.ctid: result for result in report.results}

    assert by_ctid[100].os_family == OS_DEBIAN
    assert by_ctid[100].outcome == UPDATE_SUCCESS
    assert (by_ctid[100].snapshot.outcome, by_ctid[100].snapshot.backend) == (SNAPSHOT_CREATED, BACKEND_ZFS)

    assert by_ctid[101].outcome == UPDATE_SKIPPED_UNKNOWN_OS
    assert by_ctid[101].snapshot.backend == BACKEND_GENERIC
    assert by_ctid[101].snapshot.outcome in {SNAPSHOT_CREATED, SNAPSHOT_SKIPPED}

    assert by_ctid[102].os_family == OS_FEDORA
    assert by_ctid[102].outcome == UPDATE_FAILURE
    assert (by_ctid[102].snapshot.outcome, by_ctid[102].snapshot.backend) == (SNAPSHOT_CREATED, BACKEND_LVM)

    assert host.snapshot_calls == [
        ("zfs", "rpool/data/subvol-100-disk-0"),
        ("pct", 101),
        ("lvm", "/dev/data/vm-102-disk-0"),
    ]
