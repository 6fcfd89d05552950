"""
Plugin interfaces for external tools.

The backup and restore control logic only talks to these narrow interfaces.
Each external tool gets exactly one adapter implementing one of them, so the
executors can be tested with fake adapters.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from core.config_loader import (
    BackendConfig,
    ManagedUnitConfig,
    RetentionPolicy,
    SnapshotInfo,
)
from lib.logger import get_logger


class PluginBase(ABC):
    """
    Base class for all plugins.

    Attributes:
        config: Plugin specific settings
        logger: Logger instance
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.logger = get_logger()

    @property
    @abstractmethod
    def name(self) -> str:
        """Human readable plugin name."""

    def is_available(self) -> bool:
        """Return whether the underlying tool can be used on this host."""
        return True


class BackupEnginePlugin(PluginBase):
    """
    Encrypting, deduplicating backup engine.

    Every method raises core.errors.BackupEngineError when the engine
    reports a failure.
    """

    @abstractmethod
    def create_repository(self, backend: BackendConfig, password: str) -> None:
        """Create a new repository at the backend location."""

    @abstractmethod
    def connect_repository(self, backend: BackendConfig, password: str) -> None:
        """Open a session with an existing repository."""

    @abstractmethod
    def create_snapshot(self, path: Path, description: str) -> None:
        """Upload the contents of path as a new repository snapshot."""

    @abstractmethod
    def list_snapshots(self) -> List[SnapshotInfo]:
        """List snapshots held in the repository."""

    @abstractmethod
    def expire_snapshots(self, retention: RetentionPolicy) -> None:
        """Prune repository snapshots according to retention."""

    @abstractmethod
    def restore_snapshot(self, snapshot_id: str, target: Path) -> None:
        """Write the contents of a repository snapshot into target."""


class SnapshotPlugin(PluginBase):
    """
    Copy-on-write filesystem snapshot primitives.

    Mutating methods raise core.errors.SnapshotOperationError on failure.
    """

    @abstractmethod
    def pool_exists(self, name: str) -> bool:
        """Return whether the pool is imported."""

    @abstractmethod
    def dataset_exists(self, name: str) -> bool:
        """Return whether the dataset exists."""

    @abstractmethod
    def create_dataset(
        self, pool: str, name: str, properties: Optional[Dict[str, str]] = None
    ) -> None:
        """Create pool/name with the given properties."""

    @abstractmethod
    def get_mountpoint(self, name: str) -> str:
        """Return the raw mountpoint property of a pool or dataset."""

    @abstractmethod
    def snapshot(self, name: str) -> None:
        """Create snapshot name (dataset@snapshot)."""

    @abstractmethod
    def destroy(self, name: str) -> None:
        """Destroy snapshot name."""

    @abstractmethod
    def list_snapshots(self, dataset: str) -> List[str]:
        """Return full names of the snapshots of dataset."""


class MirrorPlugin(PluginBase):
    """Directory mirroring (full sync with deletion)."""

    @abstractmethod
    def mirror(self, source: Path, target: Path, exclude: Sequence[str] = ()) -> None:
        """
        Make target an exact copy of source.

        Anything in target that is not in source is deleted, except paths
        matching exclude (relative to target).
        """


class UnitRegistryPlugin(PluginBase):
    """Registry of managed services and applications."""

    @abstractmethod
    def units(self, kind: Optional[str] = None) -> List[ManagedUnitConfig]:
        """Return managed units in startup order, optionally filtered by kind."""

    @abstractmethod
    def start(self, unit: ManagedUnitConfig) -> None:
        """Start unit. Raises on failure."""

    @abstractmethod
    def stop(self, unit: ManagedUnitConfig) -> None:
        """Stop unit. Raises on failure."""

    @abstractmethod
    def should_start(self, unit: ManagedUnitConfig) -> bool:
        """Return whether unit is expected to be running."""

    def validate(self, unit: ManagedUnitConfig) -> bool:
        """Return whether a started unit is healthy."""
        return True
