"""
Logging setup for Pool Backup Autopilot.

Thin wrapper around loguru that configures console and rotating file sinks
once at startup. Modules obtain the shared logger through get_logger().
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger

VALID_LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]

DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)

# Handler ids added by setup_logger(), kept so set_log_level() can rebuild them
_handlers: Dict[str, Dict[str, Any]] = {}


def _normalize_level(log_level: str) -> str:
    level = str(log_level).upper()
    if level not in VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {log_level}. Must be one of {VALID_LOG_LEVELS}"
        )
    return level


def setup_logger(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    console: bool = True,
    rotation: Union[str, int] = "10 MB",
    retention: Union[str, int] = "30 days",
    compression: Optional[str] = "gz",
    format_string: Optional[str] = None,
) -> None:
    """
    Configure loguru sinks.

    Removes any previously configured handlers, so calling it again
    reconfigures logging rather than duplicating output.

    Args:
        log_level: Minimum level (case-insensitive)
        log_file: Optional log file path; parent directories are created
        console: Log to stderr when True
        rotation: Size or time based rotation passed to loguru
        retention: How long rotated files are kept
        compression: Compression format for rotated files (None to disable)
        format_string: Custom loguru format string

    Raises:
        ValueError: If log_level is not a valid level
    """
    level = _normalize_level(log_level)
    fmt = format_string or DEFAULT_FORMAT

    logger.remove()
    _handlers.clear()

    if console:
        options = {"sink": sys.stderr, "level": level, "format": fmt, "colorize": True}
        _handlers["console"] = {"id": logger.add(**options), "options": options}

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        options = {
            "sink": str(log_path),
            "level": level,
            "format": fmt,
            "rotation": rotation,
            "retention": retention,
            "compression": compression,
            "encoding": "utf-8",
            "enqueue": False,
        }
        _handlers["file"] = {"id": logger.add(**options), "options": options}


def get_logger():
    """
    Return the shared loguru logger.

    Works before setup_logger() is called (loguru's default stderr sink).
    """
    return logger


def set_log_level(log_level: str) -> None:
    """
    Change the level of all configured sinks at runtime.

    Raises:
        ValueError: If log_level is not a valid level
    """
    level = _normalize_level(log_level)

    for name, handler in list(_handlers.items()):
        try:
            logger.remove(handler["id"])
        except ValueError:
            # Handler was removed outside of this module
            pass
        options = dict(handler["options"])
        options["level"] = level
        _handlers[name] = {"id": logger.add(**options), "options": options}


def log_context(**kwargs: Any) -> Dict[str, Any]:
    """
    Build a context dict for logger.bind().

    Example:
        >>> log = get_logger().bind(**log_context(pool="local", action="backup"))
    """
    return dict(kwargs)
