"""
Error types for backup and restore operations.

Every failure the control logic can surface is a BackupError subclass so the
service facade can record it in last_status and return it to the caller
without crashing the hosting daemon.
"""

from dataclasses import dataclass
from typing import Any, Callable, Optional


class BackupError(Exception):
    """
    Base exception for backup and restore failures.

    The message is surfaced verbatim in the service's last_status.
    """


class ConfigInvalidError(BackupError):
    """Backend settings, password or schedule are missing or malformed."""


class CycleInProgressError(ConfigInvalidError):
    """A backup or restore cycle is already running."""


class RepositoryUnavailableError(BackupError):
    """Connecting to and creating the repository both failed."""


class SnapshotOperationError(BackupError):
    """A filesystem snapshot could not be created, resolved or destroyed."""


class SnapshotPathMissingError(SnapshotOperationError):
    """The read-only view of a snapshot is not materialized yet."""


class BackupEngineError(BackupError):
    """The backup engine exited with an error."""


class BackupPreconditionError(BackupError):
    """A backup cycle was requested while it is not allowed to run."""


class RestorePreconditionError(BackupError):
    """A restore was requested while the repository or pool is unavailable."""


class RestoreStepError(BackupError):
    """A hard step of the restore cycle failed (safety snapshot, stage, apply)."""


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of a best-effort step.

    Best-effort steps (retention, transient snapshot cleanup, stopping and
    starting dependents) never abort the parent cycle. The caller receives
    the outcome and decides how to log it.
    """

    step: str
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def best_effort(step: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> StepOutcome:
    """
    Run func and capture any failure in a StepOutcome instead of raising.

    Example:
        >>> outcome = best_effort("destroy snapshot", snapshots.destroy_snapshot, handle)
        >>> if not outcome.ok:
        ...     logger.warning(f"{outcome.step} failed: {outcome.error}")
    """
    try:
        func(*args, **kwargs)
    except Exception as e:  # pylint: disable=broad-exception-caught
        return StepOutcome(step=step, error=e)
    return StepOutcome(step=step)
