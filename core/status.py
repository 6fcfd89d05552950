"""
Persisted status of the backup service.

StatusTracker owns the service record in the state database. Every change is
a read-modify-write inside one database transaction and is written back
immediately, so the record on disk always reflects the latest step of a
running cycle.
"""

from typing import Callable, Optional

from core.config_loader import (
    BackupServiceConfig,
    BackupServiceRecord,
    BackupServiceState,
)
from lib.logger import get_logger
from lib.state_manager import StateManager

SERVICE_RECORD_KEY = "services.backup"


class StatusTracker:
    """
    Single-writer access to the backup service record.

    try_begin() is the only way to mark a cycle as running. It checks and
    sets in_progress in the same write transaction, so a scheduler tick and a
    restore trigger arriving together cannot both start a cycle, even when
    they come from different processes (the daemon and the CLI).

    Example:
        >>> tracker = StatusTracker(StateManager(Path("state.db")))
        >>> if tracker.try_begin("Creating ZFS snapshot"):
        ...     tracker.advance(25, "Creating Kopia snapshot")
    """

    def __init__(
        self,
        state_manager: StateManager,
        key: str = SERVICE_RECORD_KEY,
        initial_config: Optional[BackupServiceConfig] = None,
    ):
        self.state_manager = state_manager
        self.key = key
        self.logger = get_logger()

        def seed(current: Optional[BackupServiceRecord]) -> Optional[BackupServiceRecord]:
            if current is not None:
                return None
            return BackupServiceRecord(config=initial_config or BackupServiceConfig())

        self.state_manager.update_model(self.key, BackupServiceRecord, seed)

    def load(self) -> BackupServiceRecord:
        """Read the current record."""
        record = self.state_manager.get_model(self.key, BackupServiceRecord)
        return record if record is not None else BackupServiceRecord()

    def _transact(
        self, change: Callable[[BackupServiceRecord], bool]
    ) -> Optional[BackupServiceRecord]:
        """
        Run change against the stored record in one transaction.

        change edits the record in place and returns False to abandon the
        write. Returns the written record, or None if nothing was written.
        """

        def apply(current: Optional[BackupServiceRecord]) -> Optional[BackupServiceRecord]:
            record = current if current is not None else BackupServiceRecord()
            return record if change(record) else None

        return self.state_manager.update_model(self.key, BackupServiceRecord, apply)

    def mutate(self, change: Callable[[BackupServiceRecord], None]) -> BackupServiceRecord:
        """Apply change to the record and persist it atomically."""

        def always(record: BackupServiceRecord) -> bool:
            change(record)
            return True

        return self._transact(always)

    @property
    def state(self) -> BackupServiceState:
        return self.load().state

    @property
    def config(self) -> BackupServiceConfig:
        return self.load().config

    def update_state(self, **fields) -> BackupServiceRecord:
        """Set fields on the status part of the record."""

        def change(record: BackupServiceRecord) -> None:
            for name, value in fields.items():
                setattr(record.state, name, value)

        return self.mutate(change)

    def set_config(self, config: BackupServiceConfig) -> BackupServiceRecord:
        """Replace the configuration part of the record."""

        def change(record: BackupServiceRecord) -> None:
            record.config = config

        return self.mutate(change)

    def note(self, status: str) -> None:
        """Record status without touching progress."""
        self.update_state(last_status=status)

    def try_begin(self, status: str) -> bool:
        """
        Mark a cycle as running unless one already is.

        Returns:
            True if the caller now owns the cycle, False if one was running
        """

        def claim(record: BackupServiceRecord) -> bool:
            if record.state.in_progress:
                return False
            record.state.in_progress = True
            record.state.progress = 0
            record.state.last_status = status
            return True

        return self._transact(claim) is not None

    def advance(self, progress: float, status: str) -> None:
        """Move a running cycle forward. Progress never decreases."""

        def change(record: BackupServiceRecord) -> None:
            record.state.progress = max(record.state.progress, progress)
            record.state.last_status = status

        self.mutate(change)

    def fail(self, status: str) -> None:
        """End the running cycle with an error."""
        self.update_state(in_progress=False, progress=0, last_status=status)

    def finish(self, status: str, **fields) -> None:
        """End the running cycle successfully."""
        self.update_state(in_progress=False, progress=100, last_status=status, **fields)

    def recover_interrupted(self) -> bool:
        """
        Clear an in_progress flag left behind by a process that died
        mid-cycle.

        Returns:
            True if a stale flag was cleared
        """

        def clear(record: BackupServiceRecord) -> bool:
            if not record.state.in_progress:
                return False
            self.logger.warning(
                f"Clearing interrupted operation (last status: {record.state.last_status!r})"
            )
            record.state.in_progress = False
            record.state.progress = 0
            record.state.last_status = "Previous operation interrupted"
            return True

        return self._transact(clear) is not None
