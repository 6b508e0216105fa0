from __future__ import annotations

from dataclasses import replace
from datetime import date
import logging
import posixpath
from typing import Callable

from .models import (
    BACKEND_GENERIC,
    BACKEND_LVM,
    BACKEND_LVM_THIN,
    BACKEND_ZFS,
    SNAPSHOT_COLLISION,
    SNAPSHOT_CREATED,
    SNAPSHOT_FAILED,
    SNAPSHOT_SKIPPED,
    SnapshotAttempt,
    SnapshotRecord,
    StorageDescriptor,
)
from .pve import CommandResult, PveHost, error_message

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_PREFIX = "pre_update"
DEFAULT_LVM_SNAPSHOT_SIZE = "1G"

ZFS_STORAGE_TYPES = frozenset({"zfspool", "zfs"})
LVM_STORAGE_TYPES = {
    "lvm": BACKEND_LVM,
    "lvmthin": BACKEND_LVM_THIN,
}

_COLLISION_MARKERS = ("already exists", "already used")
_ZVOL_DEVICE_PREFIX = "/dev/zvol/"


def build_snapshot_name(run_date: date, prefix: str = DEFAULT_SNAPSHOT_PREFIX) -> str:
    return f"{prefix}_{run_date.isoformat()}"


class StorageBackendResolver:
    """Work out which snapshot mechanism a container's root volume supports.

    Resolution never fails: anything that cannot be positively identified as a
    usable ZFS dataset or LVM logical volume is classified as ``generic``.
    """

    def __init__(self, host: PveHost) -> None:
        self.host = host

    def resolve_container(self, ctid: int) -> StorageDescriptor:
        try:
            root_storage = self.host.root_storage_reference(ctid)
        except Exception as error:  # pylint: disable=broad-except
            logger.warning("CT %s: unable to read rootfs from container config: %s", ctid, error_message(error))
            root_storage = None
        return self.resolve(ctid, root_storage)

    def resolve(self, ctid: int, root_storage: str | None) -> StorageDescriptor:
        descriptor = StorageDescriptor(
            ctid=ctid,
            root_storage=root_storage,
            storage_name=None,
            storage_type=None,
            kind=BACKEND_GENERIC,
        )
        if not root_storage:
            return descriptor

        descriptor = replace(descriptor, storage_name=root_storage.partition(":")[0])
        try:
            return self._resolve(descriptor, root_storage)
        except Exception as error:  # pylint: disable=broad-except
            logger.warning("CT %s: storage resolution failed, using generic snapshots: %s", ctid, error_message(error))
            return descriptor

    def _resolve(self, descriptor: StorageDescriptor, root_storage: str) -> StorageDescriptor:
        storage_type = self._lookup_storage_type(descriptor.storage_name or "")
        if storage_type is None:
            return descriptor
        descriptor = replace(descriptor, storage_type=storage_type)

        if storage_type in ZFS_STORAGE_TYPES:
            return self._resolve_zfs(descriptor, root_storage)
        if storage_type in LVM_STORAGE_TYPES:
            return self._resolve_lvm(descriptor, root_storage, LVM_STORAGE_TYPES[storage_type])
        return descriptor

    def _lookup_storage_type(self, storage_name: str) -> str | None:
        if not self.host.has_command("pvesm"):
            logger.warning("pvesm not found; storage backend cannot be determined")
            return None
        return self.host.storage_types().get(storage_name)

    def _resolve_zfs(self, descriptor: StorageDescriptor, root_storage: str) -> StorageDescriptor:
        dataset = _zfs_dataset_from_path(self.host.volume_path(root_storage))
        if dataset and self.host.zfs_dataset_exists(dataset):
            return replace(descriptor, kind=BACKEND_ZFS, path=dataset)
        logger.warning("CT %s: ZFS dataset for %s could not be verified", descriptor.ctid, root_storage)
        return descriptor

    def _resolve_lvm(self, descriptor: StorageDescriptor, root_storage: str, kind: str) -> StorageDescriptor:
        lv_path = self.host.volume_path(root_storage)
        if lv_path and self.host.lvm_volume_exists(lv_path):
            return replace(descriptor, kind=kind, path=lv_path)
        logger.warning("CT %s: logical volume for %s could not be verified", descriptor.ctid, root_storage)
        return descriptor


class SnapshotAcquirer:
    """Take the best available rollback point: ZFS, then LVM, then ``pct snapshot``.

    Snapshot problems never propagate. When every tier fails the record is
    ``skipped`` and the update goes ahead without a rollback point.
    """

    def __init__(self, host: PveHost, *, lvm_snapshot_size: str = DEFAULT_LVM_SNAPSHOT_SIZE) -> None:
        self.host = host
        self.lvm_snapshot_size = lvm_snapshot_size

    def acquire(self, descriptor: StorageDescriptor, snapshot_name: str, *, run_date: date) -> SnapshotRecord:
        attempts: list[SnapshotAttempt] = []
        for tier in (self._try_zfs_snapshot, self._try_lvm_snapshot):
            record = tier(descriptor, snapshot_name, attempts)
            if record is not None:
                return record
        return self._container_snapshot(descriptor, snapshot_name, attempts, run_date=run_date)

    def _try_zfs_snapshot(
        self,
        descriptor: StorageDescriptor,
        snapshot_name: str,
        attempts: list[SnapshotAttempt],
    ) -> SnapshotRecord | None:
        if descriptor.kind != BACKEND_ZFS or not descriptor.path:
            return None

        location = f"{descriptor.path}@{snapshot_name}"
        logger.info("CT %s: storage ZFS (%s)", descriptor.ctid, descriptor.storage_name)
        return self._attempt(
            descriptor=descriptor,
            snapshot_name=snapshot_name,
            backend=BACKEND_ZFS,
            location=location,
            attempts=attempts,
            action=lambda: self.host.zfs_snapshot(descriptor.path or "", snapshot_name),
        )

    def _try_lvm_snapshot(
        self,
        descriptor: StorageDescriptor,
        snapshot_name: str,
        attempts: list[SnapshotAttempt],
    ) -> SnapshotRecord | None:
        if descriptor.kind not in {BACKEND_LVM, BACKEND_LVM_THIN} or not descriptor.path:
            return None

        # Snapshot LVs share the volume group namespace, so the origin name keeps them apart.
        lv_name = f"{posixpath.basename(descriptor.path)}_{snapshot_name}"
        location = posixpath.join(posixpath.dirname(descriptor.path), lv_name)
        logger.info("CT %s: storage LVM (%s)", descriptor.ctid, descriptor.storage_name)
        return self._attempt(
            descriptor=descriptor,
            snapshot_name=snapshot_name,
            backend=BACKEND_LVM,
            location=location,
            attempts=attempts,
            action=lambda: self.host.lvm_snapshot(descriptor.path or "", lv_name, size=self.lvm_snapshot_size),
        )

    def _container_snapshot(
        self,
        descriptor: StorageDescriptor,
        snapshot_name: str,
        attempts: list[SnapshotAttempt],
        *,
        run_date: date,
    ) -> SnapshotRecord:
        logger.info(
            "CT %s: storage %s, using pct snapshot",
            descriptor.ctid,
            descriptor.storage_type or "unknown",
        )
        description = f"Auto-snapshot before update on {run_date.isoformat()}"
        record = self._attempt(
            descriptor=descriptor,
            snapshot_name=snapshot_name,
            backend=BACKEND_GENERIC,
            location=f"{descriptor.ctid}@{snapshot_name}",
            attempts=attempts,
            action=lambda: self.host.container_snapshot(descriptor.ctid, snapshot_name, description=description),
        )
        if record is not None:
            return record

        logger.warning("CT %s: snapshot failed, continuing without snapshot", descriptor.ctid)
        return SnapshotRecord(
            ctid=descriptor.ctid,
            name=snapshot_name,
            backend=BACKEND_GENERIC,
            outcome=SNAPSHOT_SKIPPED,
            message="no snapshot could be created; continuing without a rollback point",
            attempts=tuple(attempts),
        )

    def _attempt(
        self,
        *,
        descriptor: StorageDescriptor,
        snapshot_name: str,
        backend: str,
        location: str,
        attempts: list[SnapshotAttempt],
        action: Callable[[], CommandResult],
    ) -> SnapshotRecord | None:
        try:
            result = action()
        except Exception as error:  # pylint: disable=broad-except
            reason = error_message(error)
            attempts.append(SnapshotAttempt(backend=backend, outcome=SNAPSHOT_FAILED, detail=reason))
            logger.warning("CT %s: %s snapshot failed: %s", descriptor.ctid, backend, reason)
            return None

        if result.ok:
            attempts.append(SnapshotAttempt(backend=backend, outcome=SNAPSHOT_CREATED, detail=location))
            logger.info("CT %s: %s snapshot created: %s", descriptor.ctid, backend, location)
            return SnapshotRecord(
                ctid=descriptor.ctid,
                name=snapshot_name,
                backend=backend,
                outcome=SNAPSHOT_CREATED,
                location=location,
                attempts=tuple(attempts),
            )

        reason = result.failure_reason()
        if _is_name_collision(reason):
            attempts.append(SnapshotAttempt(backend=backend, outcome=SNAPSHOT_COLLISION, detail=reason))
            logger.warning("CT %s: snapshot %s already exists, keeping it", descriptor.ctid, location)
            return SnapshotRecord(
                ctid=descriptor.ctid,
                name=snapshot_name,
                backend=backend,
                outcome=SNAPSHOT_SKIPPED,
                location=location,
                message=f"snapshot {location} already exists",
                attempts=tuple(attempts),
            )

        attempts.append(SnapshotAttempt(backend=backend, outcome=SNAPSHOT_FAILED, detail=reason))
        logger.warning("CT %s: %s snapshot failed: %s", descriptor.ctid, backend, reason)
        return None


def _zfs_dataset_from_path(path: str | None) -> str | None:
    if not path:
        return None
    if path.startswith(_ZVOL_DEVICE_PREFIX):
        path = path[len(_ZVOL_DEVICE_PREFIX):]
    dataset = path.strip().lstrip("/")
    return dataset or None


def _is_name_collision(reason: str) -> bool:
    normalized = reason.lower()
    return any(marker in normalized for marker in _COLLISION_MARKERS)
