"""
Restore cycle for Pool Backup Autopilot.

A restore replaces the live pool contents with a repository snapshot:

    stop units -> safety snapshot -> stage -> apply -> clean up -> start units

Managed units are stopped before any data is touched and a safety snapshot
is taken before the first destructive write, so an operator can always roll
back to the pre-restore state even if the cycle aborts halfway.
"""

import os
from pathlib import Path
from typing import List

from core.config_loader import ManagedUnitConfig
from core.errors import (
    BackupError,
    ConfigInvalidError,
    CycleInProgressError,
    RestorePreconditionError,
    RestoreStepError,
    StepOutcome,
    best_effort,
)
from core.snapshots import SnapshotManager
from core.status import StatusTracker
from lib.logger import get_logger, log_context
from lib.utils import ensure_directory, safe_remove
from plugins.base import BackupEnginePlugin, MirrorPlugin, UnitRegistryPlugin


class RestoreExecutor:
    """
    Runs one complete, destructive restore cycle.

    Attributes:
        engine: Backup engine adapter
        snapshots: Snapshot manager for the pool
        mirror: Adapter that applies staged data onto the live mount
        units: Registry of managed services and applications
        tracker: Service record the cycle reports to
        pool: Pool being restored
        service_name: Name of this service in the unit registry (never stopped)
        staging_dir_name: Directory created under the pool mount for staging
    """

    def __init__(
        self,
        engine: BackupEnginePlugin,
        snapshots: SnapshotManager,
        mirror: MirrorPlugin,
        units: UnitRegistryPlugin,
        tracker: StatusTracker,
        pool: str,
        service_name: str = "backup",
        staging_dir_name: str = ".restore-staging",
    ):
        self.engine = engine
        self.snapshots = snapshots
        self.mirror = mirror
        self.units = units
        self.tracker = tracker
        self.pool = pool
        self.service_name = service_name
        self.staging_dir_name = staging_dir_name
        self.logger = get_logger().bind(**log_context(pool=pool, action="restore"))

    def check_preconditions(self, snapshot_id: str) -> None:
        """
        Verify a restore may start.

        Raises:
            ConfigInvalidError: If snapshot_id is empty
            CycleInProgressError: If a backup or restore is already running
            RestorePreconditionError: If the repository is not connected or
                the pool is missing
        """
        if not snapshot_id:
            raise ConfigInvalidError("snapshot ID is required")

        state = self.tracker.state
        if state.in_progress:
            raise CycleInProgressError("a backup or restore is already in progress")

        if not state.repository_connected:
            status = "Repository not connected"
        elif not self.snapshots.pool_exists(self.pool):
            status = f"Pool {self.pool} not found"
        else:
            return

        self.tracker.note(status)
        self.logger.warning(f"Restore not started: {status}")
        raise RestorePreconditionError(status)

    # ========================================================================
    # Managed units
    # ========================================================================

    def _managed(self, kind: str) -> List[ManagedUnitConfig]:
        managed = [unit for unit in self.units.units(kind) if unit.name != self.service_name]
        if kind == "service":
            # Disabled services stay down; applications are always cycled
            managed = [unit for unit in managed if self.units.should_start(unit)]
        return managed

    def stop_units(self) -> List[StepOutcome]:
        """Stop applications, then services, each in reverse startup order."""
        outcomes = []
        for kind in ("application", "service"):
            for unit in reversed(self._managed(kind)):
                self.logger.info(f"Stopping {kind} {unit.name}")
                outcomes.append(best_effort(f"stop {unit.name}", self.units.stop, unit))
        return outcomes

    def start_units(self) -> List[StepOutcome]:
        """Start services, then applications, each in startup order."""
        outcomes = []
        for kind in ("service", "application"):
            for unit in self._managed(kind):
                self.logger.info(f"Starting {kind} {unit.name}")
                outcome = best_effort(f"start {unit.name}", self.units.start, unit)
                if outcome.ok:
                    outcome = best_effort(f"validate {unit.name}", self._validate, unit)
                outcomes.append(outcome)
        return outcomes

    def _validate(self, unit: ManagedUnitConfig) -> None:
        if not self.units.validate(unit):
            raise RestoreStepError(f"{unit.name} is not healthy after restart")

    # ========================================================================
    # Cycle
    # ========================================================================

    def _hard_failure(self, message: str, error: BaseException) -> RestoreStepError:
        status = f"{message}: {error}"
        self.logger.error(f"Restore failed: {status}")
        self.tracker.fail(status)
        return RestoreStepError(status)

    def run(self, snapshot_id: str) -> List[StepOutcome]:
        """
        Restore snapshot_id onto the live pool.

        Returns:
            Outcomes of the best-effort steps (unit stop/start, cleanup)

        Raises:
            ConfigInvalidError: If snapshot_id is empty
            CycleInProgressError: If a cycle is already running
            RestorePreconditionError: If the restore may not start
            RestoreStepError: If the safety snapshot, staging or apply fails,
                or anything else aborts the cycle. Managed units are left
                stopped in that case and the record is no longer in progress.
        """
        snapshot_id = snapshot_id.strip()
        self.check_preconditions(snapshot_id)

        if not self.tracker.try_begin("Stopping services"):
            raise CycleInProgressError("a backup or restore is already in progress")

        try:
            return self._restore(snapshot_id)
        except RestoreStepError:
            raise
        except Exception as e:
            raise self._hard_failure("restore aborted", e) from e

    def _restore(self, snapshot_id: str) -> List[StepOutcome]:
        self.logger.info(f"Starting restore of snapshot {snapshot_id}")
        outcomes = self.stop_units()
        self._log_outcomes(outcomes)

        self.tracker.advance(20, "Creating safety snapshot")
        try:
            safety = self.snapshots.create_snapshot(self.pool, "safety")
        except BackupError as e:
            raise self._hard_failure("failed to create safety snapshot", e) from e
        self.logger.info(f"Safety snapshot {safety} created")

        self.tracker.advance(30, "Preparing restore location")
        try:
            mountpoint = self.snapshots.get_mountpoint(self.pool)
            staging = self._prepare_staging(mountpoint)
        except (BackupError, OSError) as e:
            raise self._hard_failure("failed to prepare restore location", e) from e

        try:
            self.tracker.advance(50, "Restoring snapshot")
            try:
                self.engine.restore_snapshot(snapshot_id, staging)
            except BackupError as e:
                raise self._hard_failure(f"failed to restore snapshot {snapshot_id}", e) from e

            self.tracker.advance(70, "Applying restored data")
            try:
                self.mirror.mirror(staging, mountpoint, exclude=[f"/{self.staging_dir_name}"])
            except BackupError as e:
                raise self._hard_failure("failed to apply restored data", e) from e
        finally:
            cleanup = best_effort("remove staging directory", safe_remove, staging)
            self._log_outcomes([cleanup])
            outcomes.append(cleanup)

        self.tracker.advance(80, "Starting services")
        started = self.start_units()
        self._log_outcomes(started)
        outcomes.extend(started)

        self.tracker.finish("Restore completed successfully")
        self.logger.info(f"Restore of snapshot {snapshot_id} completed")
        return outcomes

    def _prepare_staging(self, mountpoint: Path) -> Path:
        staging = mountpoint / self.staging_dir_name
        # Leftovers of an interrupted restore must not leak into this one
        safe_remove(staging)
        ensure_directory(staging, mode=0o700)
        os.chmod(staging, 0o700)
        return staging

    def _log_outcomes(self, outcomes: List[StepOutcome]) -> None:
        for outcome in outcomes:
            if not outcome.ok:
                self.logger.warning(f"{outcome.step} failed: {outcome.error}")
