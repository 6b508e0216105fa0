from __future__ import annotations

import json
import subprocess

import pytest

from pve_fleet_maintainer.models import POWER_RUNNING, POWER_STOPPED, POWER_UNKNOWN, ContainerHandle
from pve_fleet_maintainer.pve import (
    CommandResult,
    PveCommandError,
    PveHost,
    error_message,
    parse_pct_config,
    parse_pct_list,
    parse_pvesm_status,
    parse_root_storage_reference,
)

_PCT_LIST_OUTPUT = """VMID       Status     Lock         Name
100        running                 web
101        stopped    backup       db
102        running                 cache
103        paused                  legacy
"""

_PVESM_STATUS_OUTPUT = """Name             Type     Status           Total            Used       Available        %
local             dir     active        98497780        12000000        81447896   12.18%
local-lvm     lvmthin     active       365760512        2000000       363760512    0.55%
local-zfs     zfspool     active       450000000        1000000       449000000    0.22%
"""


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_parse_pct_list_reads_status_and_name_with_blank_lock_column() -> None:
    containers = parse_pct_list(_PCT_LIST_OUTPUT)

    assert containers == [
        ContainerHandle(ctid=100, name="web", power_state=POWER_RUNNING),
        ContainerHandle(ctid=101, name="db", power_state=POWER_STOPPED),
        ContainerHandle(ctid=102, name="cache", power_state=POWER_RUNNING),
        ContainerHandle(ctid=103, name="legacy", power_state=POWER_UNKNOWN),
    ]


def test_parse_pct_config_stops_at_snapshot_sections() -> None:
    output = """arch: amd64
hostname: web
rootfs: local-zfs:subvol-100-disk-0,size=8G
# comment line

[pre_update_2026-10-18]
rootfs: local-zfs:subvol-100-disk-0@old,size=8G
"""

    config = parse_pct_config(output)

    assert config["hostname"] == "web"
    assert config["rootfs"] == "local-zfs:subvol-100-disk-0,size=8G"


@pytest.mark.parametrize(
    ("rootfs", "expected"),
    [
        ("local-zfs:subvol-100-disk-0,size=8G", "local-zfs:subvol-100-disk-0"),
        ("local-lvm:vm-101-disk-0,size=4G", "local-lvm:vm-101-disk-0"),
        ("/mnt/bind/rootfs", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_root_storage_reference(rootfs: str | None, expected: str | None) -> None:
    assert parse_root_storage_reference(rootfs) == expected


def test_parse_pvesm_status_maps_storage_name_to_type() -> None:
    assert parse_pvesm_status(_PVESM_STATUS_OUTPUT) == {
        "local": "dir",
        "local-lvm": "lvmthin",
        "local-zfs": "zfspool",
    }


def test_run_wraps_missing_binary_as_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise_missing(*_args, **_kwargs):
        raise FileNotFoundError("pct")

    monkeypatch.setattr("pve_fleet_maintainer.pve.subprocess.run", _raise_missing)

    with pytest.raises(PveCommandError, match="pct was not found in PATH"):
        PveHost().run(["pct", "list"])


def test_run_wraps_timeout_as_command_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise_timeout(*_args, **_kwargs):
        raise subprocess.TimeoutExpired(cmd=["zfs", "list"], timeout=5)

    monkeypatch.setattr("pve_fleet_maintainer.pve.subprocess.run", _raise_timeout)

    with pytest.raises(PveCommandError, match="timed out after 5 seconds"):
        PveHost().run(["zfs", "list"], timeout_seconds=5)


def test_run_checked_raises_with_stderr_reason(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "pve_fleet_maintainer.pve.subprocess.run",
        lambda *_args, **_kwargs: _completed(returncode=2, stderr="storage 'nope' does not exist"),
    )

    with pytest.raises(PveCommandError) as error_info:
        PveHost().run_checked(["pvesm", "status"])

    assert error_info.value.returncode == 2
    assert "storage 'nope' does not exist" in str(error_info.value)


def test_list_containers_invokes_pct_list(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def _fake_run(command, **_kwargs):
        calls.append(command)
        return _completed(stdout=_PCT_LIST_OUTPUT)

    monkeypatch.setattr("pve_fleet_maintainer.pve.subprocess.run", _fake_run)

    containers = PveHost().list_containers()

    assert calls == [["pct", "list"]]
    assert [container.ctid for container in containers] == [100, 101, 102, 103]


def test_lvm_snapshot_always_passes_fixed_size(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[list[str]] = []

    def _fake_run(command, **_kwargs):
        calls.append(command)
        return _completed()

    monkeypatch.setattr("pve_fleet_maintainer.pve.subprocess.run", _fake_run)
    host = PveHost()

    host.lvm_snapshot("/dev/pve/vm-101-disk-0", "snap", size="1G")

    assert calls == [["lvcreate", "--snapshot", "-L", "1G", "-n", "snap", "/dev/pve/vm-101-disk-0"]]


def test_error_message_falls_back_to_exception_name() -> None:
    assert error_message(RuntimeError("  pct exited  ")) == "pct exited"
    assert error_message(TimeoutError()) == "TimeoutError"


def test_container_exec_passes_command_after_separator(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def _fake_run(command, **kwargs):
        captured["command"] = command
        captured["timeout"] = kwargs["timeout"]
        return _completed(returncode=1)

    monkeypatch.setattr("pve_fleet_maintainer.pve.subprocess.run", _fake_run)

    result = PveHost(command_timeout_seconds=30).container_exec(100, ["test", "-f", "/etc/debian_version"])

    assert captured == {"command": ["pct", "exec", "100", "--", "test", "-f", "/etc/debian_version"], "timeout": 30}
    assert result == CommandResult(command=tuple(captured["command"]), returncode=1)
    assert not result.ok


def test_query_tasks_parses_json_and_drops_non_objects(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = [{"upid": "UPID:pve:1:2:3:vzdump:100:root@pam:", "status": "OK"}, "garbage"]
    captured: dict[str, list[str]] = {}

    def _fake_run(command, **_kwargs):
        captured["command"] = command
        return _completed(stdout=json.dumps(payload))

    monkeypatch.setattr("pve_fleet_maintainer.pve.subprocess.run", _fake_run)

    tasks = PveHost().query_tasks(node="pve", type_filter="vzdump", since=1700000000)

    assert tasks == [payload[0]]
    assert captured["command"][:3] == ["pvesh", "get", "/nodes/pve/tasks"]
    assert "--since" in captured["command"]
    assert captured["command"][captured["command"].index("--since") + 1] == "1700000000"


def test_query_tasks_rejects_invalid_json(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "pve_fleet_maintainer.pve.subprocess.run",
        lambda *_args, **_kwargs: _completed(stdout="not json"),
    )

    with pytest.raises(PveCommandError, match="invalid JSON output"):
        PveHost().query_tasks(node="pve", type_filter="vzdump", since=0)


def test_volume_path_returns_none_on_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "pve_fleet_maintainer.pve.subprocess.run",
        lambda *_args, **_kwargs: _completed(returncode=255, stderr="no such volume"),
    )

    assert PveHost().volume_path("local-zfs:subvol-100-disk-0") is None


def test_host_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="must be positive"):
        PveHost(command_timeout_seconds=0)
