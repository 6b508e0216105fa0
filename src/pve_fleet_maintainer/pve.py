from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import shlex
import shutil
import subprocess
from typing import Any, Sequence

from .models import POWER_RUNNING, POWER_STOPPED, POWER_UNKNOWN, ContainerHandle

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 60
DEFAULT_TASK_QUERY_LIMIT = 1000


@dataclass(frozen=True)
class CommandResult:
    command: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def failure_reason(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"


class PveCommandError(RuntimeError):
    """Raised when a host command cannot be run or a checked command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        reason: str,
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{_render_command(command)} failed: {normalized_reason}")
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr


class PveHost:
    """Thin wrapper over the Proxmox VE command line tools available on the host."""

    def __init__(self, *, command_timeout_seconds: int = DEFAULT_COMMAND_TIMEOUT_SECONDS) -> None:
        if command_timeout_seconds <= 0:
            raise ValueError("command_timeout_seconds must be positive")
        self.command_timeout_seconds = command_timeout_seconds

    def has_command(self, name: str) -> bool:
        return shutil.which(name) is not None

    def run(self, command: Sequence[str], *, timeout_seconds: int | None = None) -> CommandResult:
        timeout = timeout_seconds or self.command_timeout_seconds
        logger.debug("Running %s", _render_command(command))
        try:
            completed = subprocess.run(
                list(command),
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as error:
            raise PveCommandError(command=command, reason=f"{command[0]} was not found in PATH") from error
        except subprocess.TimeoutExpired as error:
            raise PveCommandError(command=command, reason=f"timed out after {timeout} seconds") from error
        except OSError as error:
            raise PveCommandError(command=command, reason=error_message(error)) from error

        return CommandResult(
            command=tuple(command),
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

    def run_checked(self, command: Sequence[str], *, timeout_seconds: int | None = None) -> CommandResult:
        result = self.run(command, timeout_seconds=timeout_seconds)
        if not result.ok:
            raise PveCommandError(
                command=command,
                reason=result.failure_reason(),
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def list_containers(self) -> list[ContainerHandle]:
        return parse_pct_list(self.run_checked(["pct", "list"]).stdout)

    def container_config(self, ctid: int) -> dict[str, str]:
        return parse_pct_config(self.run_checked(["pct", "config", str(ctid)]).stdout)

    def root_storage_reference(self, ctid: int) -> str | None:
        return parse_root_storage_reference(self.container_config(ctid).get("rootfs"))

    def storage_types(self) -> dict[str, str]:
        return parse_pvesm_status(self.run_checked(["pvesm", "status"]).stdout)

    def volume_path(self, volume_id: str) -> str | None:
        result = self.run(["pvesm", "path", volume_id])
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            if line.strip():
                return line.strip()
        return None

    def zfs_dataset_exists(self, dataset: str) -> bool:
        return self.run(["zfs", "list", "-H", "-o", "name", dataset]).ok

    def zfs_snapshot(self, dataset: str, name: str) -> CommandResult:
        return self.run(["zfs", "snapshot", f"{dataset}@{name}"])

    def lvm_volume_exists(self, lv_path: str) -> bool:
        return self.run(["lvdisplay", lv_path]).ok

    def lvm_snapshot(self, lv_path: str, name: str, *, size: str) -> CommandResult:
        return self.run(["lvcreate", "--snapshot", "-L", size, "-n", name, lv_path])

    def container_snapshot(self, ctid: int, name: str, *, description: str) -> CommandResult:
        return self.run(["pct", "snapshot", str(ctid), name, "--description", description])

    def container_exec(
        self,
        ctid: int,
        command: Sequence[str],
        *,
        timeout_seconds: int | None = None,
    ) -> CommandResult:
        return self.run(["pct", "exec", str(ctid), "--", *command], timeout_seconds=timeout_seconds)

    def query_tasks(
        self,
        *,
        node: str,
        type_filter: str,
        since: int,
        limit: int = DEFAULT_TASK_QUERY_LIMIT,
    ) -> list[dict[str, Any]]:
        command = [
            "pvesh",
            "get",
            f"/nodes/{node}/tasks",
            "--typefilter",
            type_filter,
            "--since",
            str(since),
            "--limit",
            str(limit),
            "--output-format",
            "json",
        ]
        result = self.run_checked(command)
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as error:
            raise PveCommandError(command=command, reason=f"invalid JSON output ({error})") from error
        if not isinstance(payload, list):
            raise PveCommandError(command=command, reason="expected a JSON list of tasks")
        return [item for item in payload if isinstance(item, dict)]


def parse_pct_list(output: str) -> list[ContainerHandle]:
    containers: list[ContainerHandle] = []
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or not fields[0].isdigit():
            continue

        # The Lock column is blank for most containers, so Name is taken from the end.
        name = fields[-1] if len(fields) >= 3 else ""
        containers.append(
            ContainerHandle(
                ctid=int(fields[0]),
                name=name,
                power_state=_normalize_power_state(fields[1]),
            )
        )
    return containers


def parse_pct_config(output: str) -> dict[str, str]:
    config: dict[str, str] = {}
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            break
        key, separator, value = line.partition(":")
        if not separator:
            continue
        config[key.strip()] = value.strip()
    return config


def parse_root_storage_reference(rootfs: str | None) -> str | None:
    if not rootfs:
        return None
    volume_id = rootfs.split(",", 1)[0].strip()
    storage_name, separator, volume_spec = volume_id.partition(":")
    if not separator or not storage_name or not volume_spec:
        return None
    return volume_id


def parse_pvesm_status(output: str) -> dict[str, str]:
    storage_types: dict[str, str] = {}
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0] == "Name":
            continue
        storage_types[fields[0]] = fields[1].lower()
    return storage_types


def _normalize_power_state(value: str) -> str:
    normalized = value.strip().lower()
    if normalized == POWER_RUNNING:
        return POWER_RUNNING
    if normalized == POWER_STOPPED:
        return POWER_STOPPED
    return POWER_UNKNOWN


def _render_command(command: Sequence[str]) -> str:
    return shlex.join(command)


def error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
