from __future__ import annotations

from dataclasses import dataclass
import logging

from .models import (
    OS_ALPINE,
    OS_ARCH,
    OS_DEBIAN,
    OS_FEDORA,
    OS_UNKNOWN,
    UPDATE_FAILURE,
    UPDATE_SUCCESS,
)
from .pve import PveCommandError, PveHost

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_TIMEOUT_SECONDS = 3600

# First match wins. Ubuntu also ships /etc/debian_version, so order matters.
OS_MARKERS: tuple[tuple[str, str], ...] = (
    (OS_DEBIAN, "/etc/debian_version"),
    (OS_ALPINE, "/etc/alpine-release"),
    (OS_ARCH, "/etc/arch-release"),
    (OS_FEDORA, "/etc/fedora-release"),
)

UPDATE_COMMANDS: dict[str, tuple[str, ...]] = {
    OS_DEBIAN: (
        "bash",
        "-c",
        "export DEBIAN_FRONTEND=noninteractive && apt-get update -qq "
        "&& apt-get dist-upgrade -y -qq && apt-get autoremove -y -qq",
    ),
    OS_ALPINE: ("ash", "-c", "apk update && apk upgrade && rm -rf /var/cache/apk/*"),
    OS_ARCH: ("bash", "-c", "pacman -Syu --noconfirm && pacman -Sc --noconfirm"),
    OS_FEDORA: ("bash", "-c", "dnf upgrade -y --quiet && dnf clean all --quiet"),
}

OS_LABELS = {
    OS_DEBIAN: "Debian/Ubuntu (apt)",
    OS_ALPINE: "Alpine (apk)",
    OS_ARCH: "Arch (pacman)",
    OS_FEDORA: "Fedora (dnf)",
    OS_UNKNOWN: "unknown",
}


@dataclass(frozen=True)
class UpdateExecution:
    outcome: str
    returncode: int | None
    message: str = ""


class GuestOSProber:
    def __init__(self, host: PveHost, *, markers: tuple[tuple[str, str], ...] = OS_MARKERS) -> None:
        self.host = host
        self.markers = markers

    def classify(self, ctid: int) -> str:
        for os_family, marker_path in self.markers:
            if self._marker_exists(ctid, marker_path):
                return os_family
        return OS_UNKNOWN

    def _marker_exists(self, ctid: int, marker_path: str) -> bool:
        try:
            return self.host.container_exec(ctid, ["test", "-f", marker_path]).ok
        except Exception as error:  # pylint: disable=broad-except
            logger.debug("CT %s: probe for %s failed: %s", ctid, marker_path, error)
            return False


class UpdateExecutor:
    """Run the package manager refresh, upgrade and cleanup for one container.

    A failed update is reported once and never retried within the same run.
    """

    def __init__(self, host: PveHost, *, timeout_seconds: int = DEFAULT_UPDATE_TIMEOUT_SECONDS) -> None:
        self.host = host
        self.timeout_seconds = timeout_seconds

    def apply(self, ctid: int, os_family: str) -> UpdateExecution:
        command = UPDATE_COMMANDS.get(os_family)
        if command is None:
            raise ValueError(f"no update command for OS family: {os_family}")

        logger.info("CT %s: detected %s", ctid, OS_LABELS.get(os_family, os_family))
        try:
            result = self.host.container_exec(ctid, command, timeout_seconds=self.timeout_seconds)
        except PveCommandError as error:
            return UpdateExecution(outcome=UPDATE_FAILURE, returncode=error.returncode, message=str(error))

        if result.ok:
            return UpdateExecution(outcome=UPDATE_SUCCESS, returncode=result.returncode)
        return UpdateExecution(
            outcome=UPDATE_FAILURE,
            returncode=result.returncode,
            message=f"update command exited with status {result.returncode}: {_tail(result.failure_reason())}",
        )


def _tail(text: str, max_length: int = 300) -> str:
    stripped = text.strip()
    if len(stripped) <= max_length:
        return stripped
    return f"...{stripped[-max_length:]}"
