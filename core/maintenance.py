"""
Maintenance window evaluation.

Backups and restores only run while a maintenance window is open. A window
occurrence is identified by the date and time it opened, which lets the
scheduler run at most one backup per occurrence.
"""

from datetime import datetime, time, timedelta
from typing import List, Optional, Sequence

from core.config_loader import WEEKDAYS, MaintenanceWindowConfig


def _parse_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def occurrence_start(window: MaintenanceWindowConfig, now: datetime) -> Optional[datetime]:
    """
    Return when the occurrence of window containing now opened, or None.

    The days list applies to the day an occurrence opens, so a Friday
    22:00-02:00 window is still open early on Saturday.
    """
    start = _parse_time(window.start)
    end = _parse_time(window.end)

    length = datetime.combine(now.date(), end) - datetime.combine(now.date(), start)
    if length <= timedelta(0):
        length += timedelta(days=1)

    offsets = (0, -1) if end <= start else (0,)
    for offset in offsets:
        opened = datetime.combine(now.date() + timedelta(days=offset), start, tzinfo=now.tzinfo)
        if window.days and WEEKDAYS[opened.weekday()] not in window.days:
            continue
        if opened <= now < opened + length:
            return opened

    return None


class MaintenanceSchedule:
    """
    Maintenance windows configured on the host.

    With no windows configured every moment is allowed.

    Example:
        >>> schedule = MaintenanceSchedule([MaintenanceWindowConfig(start="01:00", end="05:00")])
        >>> schedule.is_active(datetime(2024, 1, 15, 2, 0))
        True
        >>> schedule.current_window_id(datetime(2024, 1, 15, 2, 0))
        '20240115T0100'
    """

    def __init__(self, windows: Optional[Sequence[MaintenanceWindowConfig]] = None):
        self.windows: List[MaintenanceWindowConfig] = list(windows or [])

    def _active_start(self, now: datetime) -> Optional[datetime]:
        for window in self.windows:
            opened = occurrence_start(window, now)
            if opened is not None:
                return opened
        return None

    def is_active(self, now: datetime) -> bool:
        """True if a backup or restore may run at now."""
        if not self.windows:
            return True
        return self._active_start(now) is not None

    def current_window_id(self, now: datetime) -> Optional[str]:
        """
        Identifier of the window occurrence open at now.

        Without configured windows the identifier is the calendar day, so the
        default policy becomes "once per day". Returns None when no window is
        open.
        """
        if not self.windows:
            return f"always-{now.strftime('%Y%m%d')}"

        opened = self._active_start(now)
        if opened is None:
            return None
        return opened.strftime("%Y%m%dT%H%M")


def is_active(now: datetime, windows: Sequence[MaintenanceWindowConfig]) -> bool:
    """Return whether any of windows is open at now; no windows means always."""
    return MaintenanceSchedule(windows).is_active(now)
