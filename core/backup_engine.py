"""
Backup cycle for Pool Backup Autopilot.

One cycle snapshots the pool, uploads the snapshot contents to the
repository, applies retention and removes the transient snapshot again.
Progress moves 0 -> 25 -> 75 -> 90 -> 100 and every step is written to the
service record as it starts.
"""

from datetime import datetime
from typing import Callable, List, Optional

from core.errors import (
    BackupError,
    BackupPreconditionError,
    CycleInProgressError,
    StepOutcome,
    best_effort,
)
from core.maintenance import MaintenanceSchedule
from core.snapshots import SnapshotHandle, SnapshotManager
from core.status import StatusTracker
from lib.logger import get_logger, log_context
from lib.utils import human_readable_duration
from plugins.base import BackupEnginePlugin


class BackupExecutor:
    """
    Runs one complete backup cycle.

    Attributes:
        engine: Backup engine adapter
        snapshots: Snapshot manager for the pool
        tracker: Service record the cycle reports to
        schedule: Maintenance windows, re-checked when a cycle starts
        pool: Pool to back up
        clock: Source of the current time
    """

    def __init__(
        self,
        engine: BackupEnginePlugin,
        snapshots: SnapshotManager,
        tracker: StatusTracker,
        schedule: MaintenanceSchedule,
        pool: str,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.engine = engine
        self.snapshots = snapshots
        self.tracker = tracker
        self.schedule = schedule
        self.pool = pool
        self.clock = clock
        self.logger = get_logger().bind(**log_context(pool=pool, action="backup"))

    def _precondition_failed(self, status: str) -> None:
        self.tracker.note(status)
        self.logger.warning(f"Backup not started: {status}")
        raise BackupPreconditionError(status)

    def check_preconditions(self, now: datetime) -> None:
        """
        Verify a cycle may start now.

        Only last_status is touched when a precondition fails.

        Raises:
            CycleInProgressError: If a backup or restore is already running
            BackupPreconditionError: If the repository is not connected, no
                maintenance window is open or the pool is missing
        """
        state = self.tracker.state
        if state.in_progress:
            raise CycleInProgressError("a backup or restore is already in progress")
        if not state.repository_connected:
            self._precondition_failed("Repository not connected")
        if not self.schedule.is_active(now):
            self._precondition_failed("Outside maintenance window")
        if not self.snapshots.pool_exists(self.pool):
            self._precondition_failed(f"Pool {self.pool} not found")

    def run(self, window_id: Optional[str] = None) -> List[StepOutcome]:
        """
        Run one backup cycle.

        Args:
            window_id: Maintenance window occurrence the cycle belongs to.
                Defaults to the occurrence open when the cycle starts.

        Returns:
            Outcomes of the best-effort steps (retention, cleanup)

        Raises:
            CycleInProgressError: If a cycle is already running
            BackupPreconditionError: If the cycle may not start
            SnapshotOperationError: If the pool snapshot fails
            BackupEngineError: If the upload fails
            BackupError: If anything after the upload aborts the cycle. The
                transient snapshot is still destroyed.
        """
        started = self.clock()
        self.check_preconditions(started)

        if window_id is None:
            window_id = self.schedule.current_window_id(started)

        if not self.tracker.try_begin("Creating ZFS snapshot"):
            raise CycleInProgressError("a backup or restore is already in progress")

        self.logger.info(f"Starting backup of pool {self.pool}")
        handle: Optional[SnapshotHandle] = None

        try:
            handle = self.snapshots.create_snapshot(self.pool, "backup")

            self.tracker.advance(25, "Creating Kopia snapshot")
            path = self.snapshots.resolve_path(handle)
            description = (
                f"Backup of {self.pool} pool at "
                f"{started.astimezone().isoformat(timespec='seconds')}"
            )
            self.engine.create_snapshot(path, description)

        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.error(f"Backup failed: {e}")
            self.tracker.fail(str(e))
            if handle is not None:
                self._log_outcome(self._destroy(handle))
            if isinstance(e, BackupError):
                raise
            raise BackupError(f"backup failed: {e}") from e

        try:
            return self._complete(handle, started, window_id)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.error(f"Backup failed after upload: {e}")
            self.tracker.fail(str(e))
            if isinstance(e, BackupError):
                raise
            raise BackupError(f"backup failed: {e}") from e

    def _complete(
        self, handle: SnapshotHandle, started: datetime, window_id: Optional[str]
    ) -> List[StepOutcome]:
        outcomes = []

        try:
            config = self.tracker.config
            self.tracker.advance(75, "Applying retention policies")
            if config.retention.is_empty():
                self.logger.debug("No retention rules configured, skipping expiry")
            else:
                outcomes.append(
                    best_effort("apply retention", self.engine.expire_snapshots, config.retention)
                )

            self.tracker.advance(90, "Cleaning up ZFS snapshot")
        finally:
            outcomes.append(self._destroy(handle))
            for outcome in outcomes:
                self._log_outcome(outcome)

        completed = self.clock()
        fields = {"last_backup": completed}
        if not config.backup_frequency:
            fields["last_backup_window"] = window_id
        self.tracker.finish("Backup completed successfully", **fields)
        elapsed = max(0.0, (completed - started).total_seconds())
        self.logger.info(
            f"Backup of pool {self.pool} completed in {human_readable_duration(elapsed)}"
        )

        refresh = best_effort("refresh snapshot list", self.refresh_snapshot_list)
        self._log_outcome(refresh)
        return outcomes + [refresh]

    def refresh_snapshot_list(self) -> None:
        """Replace available_snapshots with the repository's current list."""
        self.tracker.update_state(available_snapshots=self.engine.list_snapshots())

    def _destroy(self, handle: SnapshotHandle) -> StepOutcome:
        return best_effort(
            f"destroy snapshot {handle}", self.snapshots.destroy_snapshot, handle
        )

    def _log_outcome(self, outcome: StepOutcome) -> None:
        if not outcome.ok:
            self.logger.warning(f"{outcome.step} failed: {outcome.error}")
