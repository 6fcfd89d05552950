"""
Shared pytest fixtures and configuration for Pool Backup Autopilot tests.

Provides fake adapters for every external tool so the control logic can be
exercised without kopia, zfs, rsync, systemd or Docker.
"""

import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

# Rich wraps console output at the detected terminal width (80 by default);
# widen it so long tmp paths in CLI messages don't split asserted substrings.
os.environ.setdefault("COLUMNS", "500")

from core.config_loader import (
    AutopilotConfig,
    BackendConfig,
    BackupServiceConfig,
    ManagedUnitConfig,
    RetentionPolicy,
    S3BackendConfig,
    SnapshotInfo,
)
from core.errors import BackupEngineError, RestoreStepError, SnapshotOperationError
from core.service import BackupService
from core.status import StatusTracker
from lib.state_manager import StateManager
from plugins.base import (
    BackupEnginePlugin,
    MirrorPlugin,
    SnapshotPlugin,
    UnitRegistryPlugin,
)

# Fake adapters


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeEngine(BackupEnginePlugin):
    """Backup engine that records calls and fails on request."""

    def __init__(self):
        super().__init__()
        self.calls: List[tuple] = []
        self.snapshots: List[SnapshotInfo] = []
        self.restored_files: Dict[str, str] = {}
        self.available = True
        self.fail_connect: Optional[str] = None
        self.fail_connect_times = 0
        self.fail_create: Optional[str] = None
        self.fail_snapshot: Optional[str] = None
        self.fail_expire: Optional[str] = None
        self.fail_list: Optional[str] = None
        self.fail_restore: Optional[str] = None

    @property
    def name(self) -> str:
        return "FakeEngine"

    def is_available(self) -> bool:
        return self.available

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def create_repository(self, backend, password):
        self.calls.append(("create_repository", backend.type))
        if self.fail_create:
            raise BackupEngineError(self.fail_create)

    def connect_repository(self, backend, password):
        self.calls.append(("connect_repository", backend.type))
        if self.fail_connect_times > 0:
            self.fail_connect_times -= 1
            raise BackupEngineError("repository not initialized")
        if self.fail_connect:
            raise BackupEngineError(self.fail_connect)

    def create_snapshot(self, path, description):
        self.calls.append(("create_snapshot", Path(path), description))
        if self.fail_snapshot:
            raise BackupEngineError(self.fail_snapshot)

    def list_snapshots(self):
        self.calls.append(("list_snapshots",))
        if self.fail_list:
            raise BackupEngineError(self.fail_list)
        return list(self.snapshots)

    def expire_snapshots(self, retention):
        self.calls.append(("expire_snapshots", retention.as_flags()))
        if self.fail_expire:
            raise BackupEngineError(self.fail_expire)

    def restore_snapshot(self, snapshot_id, target):
        self.calls.append(("restore_snapshot", snapshot_id, Path(target)))
        if self.fail_restore:
            raise BackupEngineError(self.fail_restore)
        for name, content in self.restored_files.items():
            (Path(target) / name).write_text(content, encoding="utf-8")


class FakeZfs(SnapshotPlugin):
    """
    In-memory pool with a real mount directory.

    Snapshots are materialized as directories under <mount>/.zfs/snapshot
    unless materialize is False.
    """

    def __init__(self, mount: Path, pool: str = "local"):
        super().__init__()
        self.mount = mount
        self.pools = {pool}
        self.datasets = {pool}
        self.existing_snapshots: List[str] = []
        self.created: List[str] = []
        self.destroyed: List[str] = []
        self.created_datasets: List[tuple] = []
        self.mountpoint_value: Optional[str] = str(mount)
        self.materialize = True
        self.fail_snapshot: Optional[str] = None
        self.fail_destroy: Optional[str] = None
        self.fail_create_dataset: Optional[str] = None

    @property
    def name(self) -> str:
        return "FakeZfs"

    def pool_exists(self, name):
        return name in self.pools

    def dataset_exists(self, name):
        return name in self.datasets

    def create_dataset(self, pool, name, properties=None):
        if self.fail_create_dataset:
            raise SnapshotOperationError(self.fail_create_dataset)
        self.created_datasets.append((pool, name, dict(properties or {})))
        self.datasets.add(f"{pool}/{name}")

    def get_mountpoint(self, name):
        return self.mountpoint_value

    def snapshot(self, name):
        if self.fail_snapshot:
            raise SnapshotOperationError(self.fail_snapshot)
        self.created.append(name)
        self.existing_snapshots.append(name)
        if self.materialize:
            (self.mount / ".zfs" / "snapshot" / name.split("@", 1)[1]).mkdir(parents=True)

    def destroy(self, name):
        if self.fail_destroy:
            raise SnapshotOperationError(self.fail_destroy)
        self.destroyed.append(name)
        self.existing_snapshots.remove(name)

    def list_snapshots(self, dataset):
        return [name for name in self.existing_snapshots if name.startswith(f"{dataset}@")]


class FakeMirror(MirrorPlugin):
    """Mirror that records calls and snapshots the staged file list."""

    def __init__(self):
        super().__init__()
        self.calls: List[tuple] = []
        self.staged_files: List[str] = []
        self.fail: Optional[str] = None

    @property
    def name(self) -> str:
        return "FakeMirror"

    def mirror(self, source, target, exclude: Sequence[str] = ()):
        self.calls.append((Path(source), Path(target), list(exclude)))
        self.staged_files = sorted(p.name for p in Path(source).iterdir())
        if self.fail:
            raise RestoreStepError(self.fail)


class FakeUnits(UnitRegistryPlugin):
    """Unit registry recording start/stop order."""

    def __init__(self, units: Optional[List[ManagedUnitConfig]] = None):
        super().__init__()
        self.registered = list(units or [])
        self.calls: List[tuple] = []
        self.fail_stop: set = set()
        self.fail_start: set = set()
        self.unhealthy: set = set()
        self.validate_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "FakeUnits"

    def units(self, kind=None):
        return [u for u in self.registered if kind is None or u.kind == kind]

    def start(self, unit):
        self.calls.append(("start", unit.name))
        if unit.name in self.fail_start:
            raise RuntimeError(f"cannot start {unit.name}")

    def stop(self, unit):
        self.calls.append(("stop", unit.name))
        if unit.name in self.fail_stop:
            raise RuntimeError(f"cannot stop {unit.name}")

    def should_start(self, unit):
        return unit.enabled

    def validate(self, unit):
        if self.validate_error is not None:
            raise self.validate_error
        return unit.name not in self.unhealthy


# Time-related fixtures


@pytest.fixture
def fixed_timestamp():
    """Fixed timestamp for reproducible tests (a Monday)."""
    return datetime(2024, 1, 15, 2, 0, 0)


@pytest.fixture
def clock(fixed_timestamp):
    """Settable clock starting at fixed_timestamp."""
    return FakeClock(fixed_timestamp)


# Temporary paths


@pytest.fixture
def temp_state_db(tmp_path):
    """Temporary database path for state manager tests."""
    return tmp_path / "test_state.db"


@pytest.fixture
def temp_log_dir(tmp_path):
    """Temporary directory for log files."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


@pytest.fixture
def pool_mount(tmp_path):
    """Directory standing in for the pool mountpoint."""
    mount = tmp_path / "local"
    mount.mkdir()
    (mount / "data.txt").write_text("live data", encoding="utf-8")
    return mount


# Adapters


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def fake_zfs(pool_mount):
    return FakeZfs(pool_mount)


@pytest.fixture
def fake_mirror():
    return FakeMirror()


@pytest.fixture
def managed_units():
    """Two services and two applications, in startup order."""
    return [
        ManagedUnitConfig(name="postgres", kind="service"),
        ManagedUnitConfig(name="backup", kind="service"),
        ManagedUnitConfig(name="nginx", kind="service"),
        ManagedUnitConfig(name="disabled-svc", kind="service", enabled=False),
        ManagedUnitConfig(name="gitea", kind="application", type="docker"),
        ManagedUnitConfig(name="nextcloud", kind="application", type="docker"),
    ]


@pytest.fixture
def fake_units(managed_units):
    return FakeUnits(managed_units)


# Configuration


@pytest.fixture
def s3_backend():
    """Complete S3 backend."""
    return BackendConfig(
        type="s3",
        s3=S3BackendConfig(
            endpoint="s3.example.com",
            bucket="pool-backups",
            access_key="AKIAEXAMPLE",
            secret_key="secret-key",
        ),
    )


@pytest.fixture
def enabled_config(s3_backend):
    """Enabled service with default scheduling and daily retention."""
    return BackupServiceConfig(
        enabled=True,
        repository_password="correct horse",
        backend=s3_backend,
        retention=RetentionPolicy(keep_daily=7),
        backup_frequency="",
    )


@pytest.fixture
def settings(tmp_path):
    """Daemon settings pointing at temporary paths, no maintenance windows."""
    return AutopilotConfig.model_validate(
        {
            "daemon": {
                "pool": "local",
                "service_name": "backup",
                "cache_dir": str(tmp_path / "cache"),
                "state_db": str(tmp_path / "state.db"),
            },
        }
    )


@pytest.fixture
def state_manager(settings):
    return StateManager(settings.daemon.state_db)


@pytest.fixture
def tracker(state_manager):
    return StatusTracker(state_manager)


@pytest.fixture
def service(settings, state_manager, fake_engine, fake_zfs, fake_mirror, fake_units, clock):
    """Backup service wired to fake adapters, scheduler driven by the test."""
    return BackupService(
        settings,
        state_manager,
        engine=fake_engine,
        snapshot_plugin=fake_zfs,
        mirror=fake_mirror,
        units=fake_units,
        clock=clock,
        background=False,
    )


@pytest.fixture
def connected_service(service, enabled_config):
    """Service enabled with a complete configuration and connected."""
    service.update(enabled_config)
    return service
