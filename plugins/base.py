"""
Plugin base classes for Backup Autopilot.

Everything that shells out to an external program sits behind one of these
interfaces:

- VolumePlugin: reports and changes the attach/mount state of a volume
- BackupEnginePlugin: runs backup, prune and listing against a repository
- NotificationPlugin: tells the operator how a run went

The core state machine and orchestrator only ever see the typed values
defined here (VolumeState, ProbeResult, RetentionPolicy), never raw tool
output.
"""

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from lib.logger import get_logger


class VolumeState(Enum):
    """Attach/mount state of a volume."""

    UNKNOWN = "unknown"
    UNMOUNTED = "unmounted"
    MOUNTED = "mounted"


@dataclass(frozen=True)
class ProbeResult:
    """Tagged probe value: a state plus the mount path when mounted."""

    state: VolumeState
    path: Optional[Path] = None

    def __post_init__(self) -> None:
        if (self.state is VolumeState.MOUNTED) != (self.path is not None):
            raise ValueError(
                f"Mount path must be set if and only if state is mounted "
                f"(state={self.state.value}, path={self.path})"
            )

    @classmethod
    def unknown(cls) -> "ProbeResult":
        return cls(VolumeState.UNKNOWN)

    @classmethod
    def unmounted(cls) -> "ProbeResult":
        return cls(VolumeState.UNMOUNTED)

    @classmethod
    def mounted(cls, path: Path) -> "ProbeResult":
        return cls(VolumeState.MOUNTED, Path(path))


@dataclass(frozen=True)
class RetentionPolicy:
    """How many snapshots of each granularity restic forget should keep."""

    hourly: int
    daily: int
    weekly: int
    monthly: int

    def to_args(self) -> List[str]:
        """
        Render as restic forget flags.

        Example:
            >>> RetentionPolicy(1, 6, 4, 4).to_args()
            ['--keep-hourly', '1', '--keep-daily', '6', '--keep-weekly', '4', '--keep-monthly', '4']
        """
        return [
            "--keep-hourly",
            str(self.hourly),
            "--keep-daily",
            str(self.daily),
            "--keep-weekly",
            str(self.weekly),
            "--keep-monthly",
            str(self.monthly),
        ]


class PluginBase(ABC):
    """
    Base class for all plugins.

    Attributes:
        config: Plugin-specific configuration dictionary
        logger: Logger instance
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize plugin.

        Args:
            config: Plugin-specific configuration dictionary
        """
        self.config = config
        self.logger = get_logger()

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the plugin name."""

    @abstractmethod
    def matches(self, target: Any) -> bool:
        """Return True if this plugin handles the given target."""

    def run_command(
        self,
        args: Sequence[str],
        timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
        capture: bool = True,
    ) -> Optional[subprocess.CompletedProcess]:
        """
        Run an external command without raising.

        Args:
            args: Command and arguments
            timeout: Seconds before the command is killed (None waits forever)
            env: Full environment for the child process
            capture: Capture stdout/stderr as text

        Returns:
            The completed process, or None if it could not be started or
            timed out
        """
        self.logger.debug(f"{self.name}: running {' '.join(str(a) for a in args)}")
        try:
            return subprocess.run(
                [str(a) for a in args],
                capture_output=capture,
                text=True,
                check=False,
                timeout=timeout,
                env=dict(env) if env is not None else None,
            )
        except subprocess.TimeoutExpired:
            self.logger.error(
                f"{self.name}: '{args[0]}' timed out after {timeout} seconds"
            )
            return None
        except OSError as e:
            self.logger.error(f"{self.name}: could not run '{args[0]}': {e}")
            return None


class VolumePlugin(PluginBase):
    """
    Abstract base class for volume probing/mounting backends.

    Implementations wrap a platform utility (diskutil, lsblk + udisksctl)
    and translate its output into ProbeResult values.
    """

    @abstractmethod
    def probe(self, uuid: str) -> ProbeResult:
        """
        Report the current state of a volume.

        Args:
            uuid: Stable volume identifier

        Returns:
            ProbeResult; UNKNOWN when the volume is not attached
        """

    @abstractmethod
    def mount(self, uuid: str) -> bool:
        """
        Issue a physical mount of the volume.

        Returns:
            True if the mount command succeeded
        """

    @abstractmethod
    def unmount(self, uuid: str) -> bool:
        """
        Issue a physical unmount of the volume.

        Returns:
            True if the unmount command succeeded
        """


class BackupEnginePlugin(PluginBase):
    """Abstract base class for the external backup engine."""

    @abstractmethod
    def backup(
        self,
        repository: Path,
        host: str,
        exclude_files: Sequence[Path],
        target: Path,
    ) -> bool:
        """
        Back up one directory into a repository.

        Args:
            repository: Repository location
            host: Host identifier recorded in the snapshot
            exclude_files: Exclusion rule files to apply
            target: Directory to back up

        Returns:
            True if the engine reported success
        """

    @abstractmethod
    def forget(self, repository: Path, policy: RetentionPolicy) -> bool:
        """
        Apply a retention policy and prune unreferenced data.

        Returns:
            True if the engine reported success
        """

    @abstractmethod
    def snapshots(self, repository: Path) -> Optional[str]:
        """
        List snapshots in a repository.

        Returns:
            The engine's listing text, or None on failure
        """


class NotificationPlugin(PluginBase):
    """Abstract base class for notification plugins."""

    @abstractmethod
    def send_notification(
        self,
        title: str,
        message: str,
        level: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a notification.

        Args:
            title: Notification title
            message: Notification body
            level: One of success, info, warning, error
            metadata: Extra key/value pairs appended to the body

        Returns:
            True if the notification was delivered
        """

    @abstractmethod
    def test_connection(self) -> bool:
        """Return True if the notification channel is usable."""

    def format_message(
        self,
        title: str,
        message: str,
        level: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Render title, body and metadata as plain text."""
        lines = [f"{self.get_emoji_for_level(level)} {title}", "", message]
        if metadata:
            lines.append("")
            for key, value in metadata.items():
                lines.append(f"{key}: {value}")
        return "\n".join(lines)

    def get_emoji_for_level(self, level: str) -> str:
        emojis = {
            "success": "✅",
            "info": "ℹ️",
            "warning": "⚠️",
            "error": "❌",
        }
        return emojis.get(level.lower(), "\U0001f4e2")
