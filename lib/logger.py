"""
Logging setup for Backup Autopilot.

Thin wrapper around loguru. The logger is configured once from the parsed
command line (verbosity) and the configuration file (log file, rotation),
then handed to components through get_logger().
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger

VALID_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]

# Ladder walked by repeated -v flags
VERBOSITY_LADDER = ["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"]

DEFAULT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"
)

_handler_ids: Dict[str, int] = {}
_settings: Dict[str, Any] = {}


def _normalize_level(log_level: str) -> str:
    level = str(log_level).upper()
    if level not in VALID_LEVELS:
        raise ValueError(
            f"Invalid log level '{log_level}'. Must be one of: {', '.join(VALID_LEVELS)}"
        )
    return level


def setup_logger(
    log_level: str = "WARNING",
    log_file: Optional[Path] = None,
    console: bool = True,
    format_string: Optional[str] = None,
    rotation: Optional[Union[str, int]] = "1 month",
    retention: Optional[Union[str, int]] = None,
    compression: Optional[str] = None,
) -> None:
    """
    Configure the global loguru logger.

    Removes any previously installed handlers so the function can be called
    more than once (e.g. after the configuration file has been read).

    Args:
        log_level: Minimum level to emit (case-insensitive)
        log_file: Optional file sink; parent directories are created
        console: Emit to stderr
        format_string: Custom loguru format string
        rotation: File rotation rule (size in bytes, "10 MB", "1 month", ...)
        retention: How long rotated files are kept
        compression: Compression for rotated files (e.g. "zip", "gz")

    Raises:
        ValueError: If log_level is not a known level name
    """
    level = _normalize_level(log_level)
    fmt = format_string or DEFAULT_FORMAT

    logger.remove()
    _handler_ids.clear()

    if console:
        _handler_ids["console"] = logger.add(sys.stderr, level=level, format=fmt)

    if log_file is not None:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _handler_ids["file"] = logger.add(
            str(log_path),
            level=level,
            format=fmt,
            rotation=rotation,
            retention=retention,
            compression=compression,
            encoding="utf-8",
        )

    _settings.update(
        {
            "log_file": log_file,
            "console": console,
            "format_string": fmt,
            "rotation": rotation,
            "retention": retention,
            "compression": compression,
        }
    )


def get_logger():
    """Return the shared loguru logger."""
    return logger


def set_log_level(log_level: str) -> None:
    """
    Change the level of all installed handlers at runtime.

    loguru handlers are immutable, so this re-runs setup_logger with the
    settings of the last call.
    """
    level = _normalize_level(log_level)
    setup_logger(
        log_level=level,
        log_file=_settings.get("log_file"),
        console=_settings.get("console", True),
        format_string=_settings.get("format_string"),
        rotation=_settings.get("rotation", "1 month"),
        retention=_settings.get("retention"),
        compression=_settings.get("compression"),
    )


def verbosity_to_level(verbosity: int, base: str = "WARNING") -> str:
    """
    Translate a count of -v flags into a level name.

    Example:
        >>> verbosity_to_level(0)
        'WARNING'
        >>> verbosity_to_level(1)
        'INFO'
        >>> verbosity_to_level(5)
        'DEBUG'
    """
    base = _normalize_level(base)
    if base not in VERBOSITY_LADDER:
        return base
    index = VERBOSITY_LADDER.index(base) + max(verbosity, 0)
    return VERBOSITY_LADDER[min(index, len(VERBOSITY_LADDER) - 1)]


def log_context(**kwargs: Any) -> Dict[str, Any]:
    """Build a context dict suitable for logger.bind()."""
    return dict(kwargs)
