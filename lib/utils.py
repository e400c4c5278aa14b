"""
Utility functions for Backup Autopilot.

This module provides common helper functions used throughout the project
for path handling and duration formatting.
"""

from pathlib import Path
from typing import Optional, Union

# Path Operations


def expand_path(path: Union[str, Path], relative_to: Optional[Path] = None) -> Path:
    """
    Expand "~" and resolve a relative path against a base directory.

    Args:
        path: Path to expand
        relative_to: Directory that relative paths are resolved against

    Returns:
        Expanded Path object

    Example:
        >>> expand_path("excludes.txt", Path("/etc/backup-autopilot"))
        PosixPath('/etc/backup-autopilot/excludes.txt')
    """
    path_obj = Path(path).expanduser()
    if relative_to is not None and not path_obj.is_absolute():
        path_obj = relative_to / path_obj
    return path_obj


def validate_path(
    path: Union[str, Path], must_exist: bool = False, must_be_absolute: bool = False
) -> Path:
    """
    Validate and sanitize a filesystem path.

    Args:
        path: Path to validate (string or Path object)
        must_exist: If True, raise error if path doesn't exist
        must_be_absolute: If True, raise error if path is not absolute

    Returns:
        Validated Path object

    Raises:
        ValueError: If path is invalid or doesn't meet requirements
        FileNotFoundError: If must_exist=True and path doesn't exist
    """
    if not path:
        raise ValueError("Path cannot be empty")

    path_obj = Path(path)

    if must_be_absolute and not path_obj.is_absolute():
        raise ValueError(f"Path must be absolute: {path}")

    if must_exist and not path_obj.exists():
        raise FileNotFoundError(f"Path does not exist: {path}")

    return path_obj


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
    path_obj = validate_path(path)
    path_obj.mkdir(parents=True, exist_ok=True, mode=mode)
    return path_obj


# Date/Time Utilities


def human_readable_duration(seconds: Union[int, float]) -> str:
    """
    Convert seconds to human-readable duration.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "2h 30m 15s", "45s", "1d 3h")

    Example:
        >>> human_readable_duration(3665)
        '1h 1m 5s'
        >>> human_readable_duration(45)
        '45s'
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
