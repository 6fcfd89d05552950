"""
Snapshot management for the storage pool.

Snapshots are named by intent and creation time. Backup-cycle snapshots are
transient and removed after upload; safety snapshots taken before a restore
are kept as the rollback point and are never destroyed here.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.errors import SnapshotOperationError, SnapshotPathMissingError
from lib.logger import get_logger
from lib.utils import snapshot_timestamp
from plugins.base import SnapshotPlugin

BACKUP_PREFIX = "autobackup"
SAFETY_PREFIX = "before-restore"

INTENT_PREFIXES = {
    "backup": BACKUP_PREFIX,
    "safety": SAFETY_PREFIX,
}


@dataclass(frozen=True)
class SnapshotHandle:
    """A pool snapshot created by this service."""

    pool: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.pool}@{self.name}"

    @property
    def intent(self) -> Optional[str]:
        for intent, prefix in INTENT_PREFIXES.items():
            if self.name.startswith(f"{prefix}-"):
                return intent
        return None

    @property
    def is_safety(self) -> bool:
        return self.intent == "safety"

    @classmethod
    def parse(cls, full_name: str) -> "SnapshotHandle":
        """Build a handle from "pool@name"."""
        pool, sep, name = full_name.partition("@")
        if not sep or not pool or not name:
            raise ValueError(f"Not a snapshot name: {full_name!r}")
        return cls(pool=pool, name=name)

    def __str__(self) -> str:
        return self.full_name


class SnapshotManager:
    """
    Creates, resolves and destroys pool snapshots.

    Attributes:
        plugin: Filesystem snapshot adapter
        clock: Source of the timestamps used in snapshot names
    """

    def __init__(
        self,
        plugin: SnapshotPlugin,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.plugin = plugin
        self.clock = clock
        self.logger = get_logger()

    def pool_exists(self, pool: str) -> bool:
        return self.plugin.pool_exists(pool)

    def get_mountpoint(self, pool: str) -> Path:
        """
        Return where pool is mounted.

        Pools without a usable mountpoint property ("none", "legacy") are
        assumed to be mounted at /<pool>.
        """
        mountpoint = self.plugin.get_mountpoint(pool).strip()
        if mountpoint in ("", "-", "none", "legacy"):
            return Path("/") / pool
        return Path(mountpoint)

    def ensure_dataset(
        self, pool: str, name: str, properties: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Create pool/name unless it exists.

        Returns:
            True if the dataset was created
        """
        dataset = f"{pool}/{name}"
        if self.plugin.dataset_exists(dataset):
            self.logger.debug(f"Dataset {dataset} already exists")
            return False

        self.logger.info(f"Creating dataset {dataset}")
        self.plugin.create_dataset(pool, name, properties or {})
        return True

    def create_snapshot(self, pool: str, intent: str = "backup") -> SnapshotHandle:
        """
        Snapshot the pool.

        Args:
            pool: Pool name
            intent: "backup" for transient cycle snapshots, "safety" for
                pre-restore rollback points

        Raises:
            ValueError: If intent is unknown
            SnapshotOperationError: If the snapshot cannot be created
        """
        if intent not in INTENT_PREFIXES:
            raise ValueError(f"Unknown snapshot intent: {intent}")

        handle = SnapshotHandle(
            pool=pool,
            name=f"{INTENT_PREFIXES[intent]}-{snapshot_timestamp(self.clock())}",
        )

        self.logger.info(f"Creating {intent} snapshot {handle}")
        self.plugin.snapshot(handle.full_name)
        return handle

    def resolve_path(self, handle: SnapshotHandle) -> Path:
        """
        Return the read-only directory exposing the snapshot contents.

        Raises:
            SnapshotPathMissingError: If the filesystem has not materialized
                the snapshot directory
        """
        path = self.get_mountpoint(handle.pool) / ".zfs" / "snapshot" / handle.name
        if not path.exists():
            raise SnapshotPathMissingError(f"snapshot path does not exist: {path}")
        return path

    def destroy_snapshot(self, handle: SnapshotHandle) -> None:
        """
        Destroy a backup-cycle snapshot.

        Raises:
            SnapshotOperationError: If handle is a safety snapshot or the
                destroy fails
        """
        if handle.is_safety:
            raise SnapshotOperationError(f"refusing to destroy safety snapshot {handle}")

        self.logger.debug(f"Destroying snapshot {handle}")
        self.plugin.destroy(handle.full_name)

    def list_snapshots(self, pool: str, intent: Optional[str] = None) -> List[SnapshotHandle]:
        """List snapshots of pool created by this service, optionally by intent."""
        handles = []
        for full_name in self.plugin.list_snapshots(pool):
            try:
                handle = SnapshotHandle.parse(full_name)
            except ValueError:
                continue
            if handle.intent is None:
                continue
            if intent is None or handle.intent == intent:
                handles.append(handle)
        return handles
