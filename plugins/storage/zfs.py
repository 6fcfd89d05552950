"""
ZFS plugin for pool, dataset and snapshot primitives.

Wraps the zfs and zpool CLIs. Existence checks return booleans; mutating
operations raise SnapshotOperationError with the tool's stderr.
"""

from typing import Dict, List, Optional

from core.errors import SnapshotOperationError
from lib.commands import CommandError, run_command
from plugins.base import SnapshotPlugin


class ZfsPlugin(SnapshotPlugin):
    """Snapshot adapter for ZFS."""

    def __init__(self, zfs_binary: str = "zfs", zpool_binary: str = "zpool"):
        super().__init__({"zfs": zfs_binary, "zpool": zpool_binary})
        self.zfs_binary = zfs_binary
        self.zpool_binary = zpool_binary

    @property
    def name(self) -> str:
        return "ZfsPlugin"

    def _zfs(self, *args: str, action: str) -> str:
        try:
            return run_command([self.zfs_binary, *args]).stdout
        except CommandError as e:
            raise SnapshotOperationError(f"failed to {action}: {e}") from e

    def _succeeds(self, *args: str) -> bool:
        try:
            run_command(list(args))
        except CommandError:
            return False
        return True

    def pool_exists(self, name: str) -> bool:
        return self._succeeds(self.zpool_binary, "list", "-H", "-o", "name", name)

    def dataset_exists(self, name: str) -> bool:
        return self._succeeds(self.zfs_binary, "list", "-H", "-o", "name", name)

    def create_dataset(
        self, pool: str, name: str, properties: Optional[Dict[str, str]] = None
    ) -> None:
        """Create pool/name, setting each property with -o key=value."""
        args = ["create"]
        for key, value in (properties or {}).items():
            args.extend(["-o", f"{key}={value}"])
        args.append(f"{pool}/{name}")

        self._zfs(*args, action=f"create dataset {pool}/{name}")

    def get_mountpoint(self, name: str) -> str:
        output = self._zfs(
            "get", "-H", "-o", "value", "mountpoint", name,
            action=f"get mountpoint of {name}",
        )
        return output.strip()

    def snapshot(self, name: str) -> None:
        self._zfs("snapshot", name, action=f"create ZFS snapshot {name}")

    def destroy(self, name: str) -> None:
        if "@" not in name:
            # Only snapshots are ever destroyed by this service
            raise SnapshotOperationError(f"refusing to destroy non-snapshot {name}")
        self._zfs("destroy", name, action=f"destroy ZFS snapshot {name}")

    def list_snapshots(self, dataset: str) -> List[str]:
        output = self._zfs(
            "list", "-H", "-t", "snapshot", "-o", "name", "-d", "1", dataset,
            action=f"list snapshots of {dataset}",
        )
        return [line.strip() for line in output.splitlines() if line.strip()]
