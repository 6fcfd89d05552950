"""
Backup service facade.

BackupService wires the adapters, the repository connector, both executors
and the scheduler together, and exposes the read and update surface used by
the CLI and the hosting daemon.
"""

import threading
from datetime import datetime
from typing import Callable, List, Optional

from core.backup_engine import BackupExecutor
from core.config_loader import (
    AutopilotConfig,
    BackupServiceConfig,
    BackupServiceRecord,
    RestoreCommand,
)
from core.errors import CycleInProgressError, StepOutcome, best_effort
from core.maintenance import MaintenanceSchedule
from core.repository import RepositoryConnector
from core.restore_engine import RestoreExecutor
from core.scheduler import BackupScheduler
from core.snapshots import SnapshotManager
from core.status import StatusTracker
from lib.logger import get_logger
from lib.state_manager import StateManager
from plugins.base import (
    BackupEnginePlugin,
    MirrorPlugin,
    SnapshotPlugin,
    UnitRegistryPlugin,
)
from plugins.engines.kopia import KopiaPlugin
from plugins.services.generic import GenericUnitRegistry
from plugins.storage.zfs import ZfsPlugin
from plugins.sync.rsync import RsyncPlugin


class BackupService:
    """
    The backup service of one host.

    Adapters default to the real tools named in the settings; tests pass
    fakes instead.

    Example:
        >>> service = BackupService(loader.settings, StateManager(db_path))
        >>> service.update(BackupServiceConfig(enabled=True, ...))
        >>> service.get().state.repository_connected
        True
    """

    def __init__(
        self,
        settings: AutopilotConfig,
        state_manager: StateManager,
        engine: Optional[BackupEnginePlugin] = None,
        snapshot_plugin: Optional[SnapshotPlugin] = None,
        mirror: Optional[MirrorPlugin] = None,
        units: Optional[UnitRegistryPlugin] = None,
        clock: Callable[[], datetime] = datetime.now,
        background: bool = True,
    ):
        self.settings = settings
        self.background = background
        self.logger = get_logger()
        daemon = settings.daemon
        tools = settings.tools

        self.engine = engine if engine is not None else KopiaPlugin(
            tools.kopia, cache_dir=daemon.cache_dir
        )
        self.snapshot_plugin = (
            snapshot_plugin if snapshot_plugin is not None else ZfsPlugin(tools.zfs, tools.zpool)
        )
        self.mirror = mirror if mirror is not None else RsyncPlugin(tools.rsync)
        self.units = (
            units if units is not None
            else GenericUnitRegistry(settings.units, systemctl=tools.systemctl)
        )

        self.tracker = StatusTracker(state_manager, initial_config=settings.backup)

        self.schedule = MaintenanceSchedule(settings.maintenance_windows)
        self.snapshots = SnapshotManager(self.snapshot_plugin, clock=clock)
        self.connector = RepositoryConnector(
            self.engine,
            self.snapshots,
            self.tracker,
            pool=daemon.pool,
            cache_dataset=daemon.cache_dataset,
            cache_dir=daemon.cache_dir,
        )
        self.backup_executor = BackupExecutor(
            self.engine, self.snapshots, self.tracker, self.schedule, daemon.pool, clock=clock
        )
        self.restore_executor = RestoreExecutor(
            self.engine,
            self.snapshots,
            self.mirror,
            self.units,
            self.tracker,
            pool=daemon.pool,
            service_name=daemon.service_name,
            staging_dir_name=daemon.staging_dir_name,
        )
        self.scheduler = BackupScheduler(
            self, self.schedule, poll_interval=daemon.poll_interval_seconds, clock=clock
        )

        self._update_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._scheduler_thread: Optional[threading.Thread] = None

    # ========================================================================
    # Read surface
    # ========================================================================

    def get(self) -> BackupServiceRecord:
        """
        Return configuration and status.

        The snapshot list is refreshed first when the service is enabled and
        connected. A failed refresh is logged and the last known list is
        returned.
        """
        record = self.tracker.load()
        if record.config.enabled and record.state.repository_connected:
            outcome = self.refresh_snapshots()
            if not outcome.ok:
                self.logger.warning(f"Could not refresh snapshot list: {outcome.error}")
        return self.tracker.load()

    def refresh_snapshots(self) -> StepOutcome:
        """Query the repository for its snapshots and store the list."""
        return best_effort("refresh snapshot list", self.backup_executor.refresh_snapshot_list)

    def should_start(self) -> bool:
        return self.tracker.config.enabled

    def supported(self) -> bool:
        """True if the backup engine can run on this host."""
        return self.engine.is_available()

    # ========================================================================
    # Update surface
    # ========================================================================

    def update(self, new_config: BackupServiceConfig) -> BackupServiceRecord:
        """
        Apply a configuration update.

        A new restore_snapshot_id triggers a restore before anything else
        is applied. The trigger is cleared in the stored configuration
        whether the restore succeeds or fails; a failed restore aborts the
        rest of the update.

        Raises:
            CycleInProgressError: If a restore is requested while a cycle runs
            RestorePreconditionError, RestoreStepError: If the restore fails
            ConfigInvalidError, RepositoryUnavailableError: If the repository
                cannot be connected with the new configuration
        """
        with self._update_lock:
            old_config = self.tracker.config

            if old_config.enabled and not new_config.enabled:
                self.stop()

            command = RestoreCommand.from_update(old_config, new_config)
            if command is not None:
                if self.tracker.state.in_progress:
                    raise CycleInProgressError(
                        f"cannot restore {command.snapshot_id}: "
                        "a backup or restore is in progress"
                    )
                try:
                    self.perform_restore(command.snapshot_id)
                finally:
                    self._clear_restore_trigger()

            self.tracker.set_config(new_config.model_copy(update={"restore_snapshot_id": ""}))

            if new_config.enabled:
                if not old_config.enabled:
                    self.start()
                self.configure()

            return self.tracker.load()

    def _clear_restore_trigger(self) -> None:
        def change(record: BackupServiceRecord) -> None:
            record.config.restore_snapshot_id = ""

        self.tracker.mutate(change)

    def configure(self) -> None:
        """
        Connect to the configured repository.

        Raises:
            ConfigInvalidError: If backend or password are incomplete
            RepositoryUnavailableError: If the repository cannot be reached
        """
        config = self.tracker.config
        self.connector.ensure_connected(config.backend, config.repository_password)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def start(self) -> None:
        """
        Start the scheduler thread if it is not running.

        Without background scheduling the caller drives scheduler.tick().
        """
        if not self.background:
            self.logger.info("Backup service started (scheduler driven by caller)")
            return

        if self._scheduler_thread is not None and self._scheduler_thread.is_alive():
            return

        self._stop_event.clear()
        self._scheduler_thread = threading.Thread(
            target=self.scheduler.run_forever,
            args=(self._stop_event,),
            name="backup-scheduler",
            daemon=True,
        )
        self._scheduler_thread.start()
        self.logger.info("Backup service started")

    def stop(self) -> None:
        """
        Stop the scheduler and forget the repository session.

        A cycle already running is allowed to finish.
        """
        self._stop_event.set()
        thread = self._scheduler_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._scheduler_thread = None

        self.connector.disconnect()
        self.logger.info("Backup service stopped")

    def recover_interrupted(self) -> bool:
        """
        Reset a cycle left in progress by a process that died mid-cycle.

        Only the long-running daemon calls this at startup; short-lived
        commands sharing the state database must not.
        """
        return self.tracker.recover_interrupted()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called. Returns True if stopped."""
        return self._stop_event.wait(timeout)

    # ========================================================================
    # Cycles
    # ========================================================================

    def run_backup(self, window_id: Optional[str] = None) -> List[StepOutcome]:
        """Run one backup cycle now."""
        return self.backup_executor.run(window_id)

    def perform_restore(self, snapshot_id: str) -> List[StepOutcome]:
        """Restore snapshot_id onto the pool."""
        outcomes = self.restore_executor.run(snapshot_id)
        outcome = self.refresh_snapshots()
        if not outcome.ok:
            self.logger.warning(f"Could not refresh snapshot list: {outcome.error}")
        return outcomes
