"""
Backup scheduling.

The scheduler polls at a fixed interval and decides whether a backup cycle
is due. With no backup_frequency configured a backup runs once per
maintenance window occurrence; otherwise it runs whenever the frequency has
elapsed since the last backup and a window is open.
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from core.config_loader import BackupServiceConfig, BackupServiceState
from core.errors import BackupError
from core.maintenance import MaintenanceSchedule
from lib.logger import get_logger
from lib.utils import parse_duration


@dataclass(frozen=True)
class ScheduleDecision:
    """Whether a backup should run now, and why."""

    run: bool
    reason: str
    window_id: Optional[str] = None
    config_error: bool = False


class BackupScheduler:
    """
    Periodic backup trigger.

    Attributes:
        service: Object providing tracker and run_backup(window_id)
        schedule: Maintenance windows
        poll_interval: Seconds between ticks
        clock: Source of the current time
    """

    def __init__(
        self,
        service,
        schedule: MaintenanceSchedule,
        poll_interval: float = 60,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.service = service
        self.schedule = schedule
        self.poll_interval = poll_interval
        self.clock = clock
        self.logger = get_logger()

    def decide(
        self, now: datetime, config: BackupServiceConfig, state: BackupServiceState
    ) -> ScheduleDecision:
        """
        Decide whether a backup is due at now.

        Example:
            >>> scheduler.decide(datetime(2024, 1, 15, 2, 0), config, state)
            ScheduleDecision(run=True, reason='no backup yet in window 20240115T0100', ...)
        """
        if not config.enabled:
            return ScheduleDecision(False, "service disabled")
        if state.in_progress:
            return ScheduleDecision(False, "a backup or restore is in progress")

        try:
            frequency = parse_duration(config.backup_frequency)
        except ValueError as e:
            return ScheduleDecision(False, f"Invalid backup_frequency: {e}", config_error=True)

        if not state.repository_connected:
            return ScheduleDecision(False, "repository not connected")

        if not self.schedule.is_active(now):
            return ScheduleDecision(False, "outside maintenance window")

        window_id = self.schedule.current_window_id(now)

        if frequency is None:
            if state.last_backup is not None and state.last_backup_window == window_id:
                return ScheduleDecision(False, f"already backed up in window {window_id}", window_id)
            return ScheduleDecision(True, f"no backup yet in window {window_id}", window_id)

        if state.last_backup is not None:
            elapsed = now - state.last_backup
            if elapsed < frequency:
                return ScheduleDecision(
                    False, f"next backup due at {state.last_backup + frequency}", window_id
                )

        return ScheduleDecision(True, f"backup frequency {config.backup_frequency} elapsed", window_id)

    def tick(self, now: Optional[datetime] = None) -> ScheduleDecision:
        """
        Evaluate the schedule once and run a backup if one is due.

        Never raises: failed cycles are already recorded in last_status.
        """
        now = now or self.clock()
        tracker = self.service.tracker

        try:
            record = tracker.load()
            decision = self.decide(now, record.config, record.state)
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.exception(f"Schedule evaluation failed: {e}")
            return ScheduleDecision(False, f"schedule evaluation failed: {e}")

        if decision.config_error:
            self.logger.error(decision.reason)
            if record.state.last_status != decision.reason:
                tracker.note(decision.reason)
            return decision

        if not decision.run:
            self.logger.debug(f"Skipping backup: {decision.reason}")
            return decision

        self.logger.info(f"Backup due: {decision.reason}")
        try:
            self.service.run_backup(decision.window_id)
        except BackupError as e:
            self.logger.error(f"Scheduled backup failed: {e}")
        except Exception as e:  # pylint: disable=broad-exception-caught
            self.logger.exception(f"Scheduled backup crashed: {e}")

        return decision

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick every poll_interval seconds until stop_event is set."""
        self.logger.info(f"Scheduler started (poll interval {self.poll_interval}s)")
        while not stop_event.is_set():
            self.tick()
            stop_event.wait(self.poll_interval)
        self.logger.info("Scheduler stopped")
