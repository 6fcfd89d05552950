"""
Utility functions for Pool Backup Autopilot.

Helpers for path handling, duration parsing and timestamp formatting that
are shared by the scheduler, the executors and the tool adapters.
"""

import re
import shutil
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Union

# Path Operations


def ensure_directory(path: Union[str, Path], mode: int = 0o755) -> Path:
    """
    Create directory if it doesn't exist.

    Args:
        path: Directory path to create
        mode: Directory permissions (default: 0o755)

    Returns:
        Path object of the directory

    Raises:
        ValueError: If path is empty
        OSError: If directory creation fails
    """
    if not path:
        raise ValueError("Path cannot be empty")

    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True, mode=mode)
    return path_obj


def safe_remove(path: Union[str, Path], missing_ok: bool = True) -> bool:
    """
    Remove a file or directory tree.

    Args:
        path: Path to remove
        missing_ok: If True, don't raise error if path doesn't exist

    Returns:
        True if path was removed, False if it didn't exist

    Raises:
        FileNotFoundError: If missing_ok=False and path doesn't exist
        OSError: If removal fails for other reasons
    """
    path_obj = Path(path)

    if not path_obj.exists() and not path_obj.is_symlink():
        if missing_ok:
            return False
        raise FileNotFoundError(f"Path does not exist: {path}")

    if path_obj.is_dir() and not path_obj.is_symlink():
        shutil.rmtree(path_obj)
    else:
        path_obj.unlink()

    return True


# Date/Time Utilities

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_duration(value: Optional[str]) -> Optional[timedelta]:
    """
    Parse a duration string such as "6h", "1h30m" or "2d".

    Accepts a sequence of <number><unit> parts with units ms, s, m, h, d, w.
    Empty or None returns None (no duration configured).

    Raises:
        ValueError: If the string is malformed or the duration is not positive

    Example:
        >>> parse_duration("1h30m")
        datetime.timedelta(seconds=5400)
        >>> parse_duration("") is None
        True
    """
    if value is None:
        return None

    text = str(value).strip().lower()
    if not text:
        return None

    position = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")

    if total <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")

    return timedelta(seconds=total)


def snapshot_timestamp(moment: Optional[datetime] = None) -> str:
    """
    Format a timestamp for snapshot names (YYYYmmdd-HHMMSS, sortable).

    Example:
        >>> snapshot_timestamp(datetime(2024, 1, 15, 10, 30, 45))
        '20240115-103045'
    """
    return (moment or datetime.now()).strftime("%Y%m%d-%H%M%S")


def parse_engine_timestamp(timestamp_str: str) -> datetime:
    """
    Parse an RFC 3339 timestamp as printed by the backup engine.

    Handles a trailing "Z" and fractional seconds longer than microseconds
    (the engine prints nanoseconds), which datetime.fromisoformat rejects.

    Raises:
        ValueError: If timestamp string is invalid
    """
    if not timestamp_str or not isinstance(timestamp_str, str):
        raise ValueError(f"Invalid timestamp format: {timestamp_str!r}")

    text = timestamp_str.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"

    match = re.match(r"^(.*T\d{2}:\d{2}:\d{2})(\.\d+)?(.*)$", text)
    if match:
        fraction = match.group(2)
        if fraction:
            fraction = "." + (fraction[1:] + "000000")[:6]
        text = f"{match.group(1)}{fraction or ''}{match.group(3)}"

    try:
        return datetime.fromisoformat(text)
    except ValueError as e:
        raise ValueError(f"Invalid timestamp format: {timestamp_str}") from e


def human_readable_duration(seconds: Union[int, float]) -> str:
    """
    Convert seconds to human-readable duration.

    Example:
        >>> human_readable_duration(3665)
        '1h 1m 5s'
    """
    if seconds < 0:
        raise ValueError("Duration cannot be negative")

    seconds = int(seconds)

    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)


# Format Helpers


def format_bytes(bytes_value: Union[int, float], precision: int = 2) -> str:
    """
    Convert bytes to human-readable size.

    Example:
        >>> format_bytes(1536)
        '1.50 KB'
    """
    if bytes_value < 0:
        raise ValueError("Bytes value cannot be negative")

    units = ["B", "KB", "MB", "GB", "TB", "PB"]
    size = float(bytes_value)
    unit_index = 0

    while size >= 1024.0 and unit_index < len(units) - 1:
        size /= 1024.0
        unit_index += 1

    return f"{size:.{precision}f} {units[unit_index]}"
