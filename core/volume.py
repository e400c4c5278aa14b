"""
Removable volume lifecycle for Backup Autopilot.

A Volume wraps one physical storage unit identified by its UUID. It keeps
an in-process mount reference count, so several backup jobs living on the
same disk share a single mount/unmount bracket, and a lock marker file,
so that two runs of the tool never write to the same disk at the same
time. restic locks individual repositories; the marker here is
volume-wide.

State is never persisted: it is probed when the Volume is created and
again after every physical mount or unmount.
"""

import os
import time
from pathlib import Path
from typing import Callable, Optional

from core.config_loader import ConfigError
from lib.logger import get_logger
from plugins.base import VolumePlugin, VolumeState


class LockFileError(ConfigError):
    """
    Raised when the lock marker filesystem state is inconsistent.

    The marker could not be created or removed even though the operation
    reported no error. This is unrecoverable and aborts the run.
    """


class Volume:
    """
    Reference-counted, lockable removable volume.

    Attributes:
        uuid: Stable volume identifier
        plugin: Volume plugin used to probe, mount and unmount
        lock_file: Path of the lock marker for this volume
        state: Last probed VolumeState
        path: Mount path (set only while MOUNTED)
        mount_count: Number of holders that need the volume mounted

    Example:
        >>> volume = Volume("0142FD6F-...", DiskutilPlugin(), Path("/var/run/backup"))
        >>> if volume.mount() and volume.acquire_lock():
        ...     ...  # write to volume.path
        ...     volume.release_lock()
        ...     volume.unmount()
    """

    def __init__(
        self,
        uuid: str,
        plugin: VolumePlugin,
        lock_dir: Path,
        settle_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        logger=None,
    ):
        """
        Probe the volume and clear any lock left behind by a crashed run.

        Args:
            uuid: Stable volume identifier
            plugin: Volume plugin for the current platform
            lock_dir: Directory holding lock markers (created if missing)
            settle_seconds: Pause after a physical mount/unmount before re-probing
            sleep: Sleep function (injectable for tests)
            logger: Logger instance (default: shared loguru logger)
        """
        self.uuid = uuid
        self.plugin = plugin
        self.lock_file = Path(lock_dir) / f"{uuid}.lock"
        self.settle_seconds = settle_seconds
        self._sleep = sleep
        self.logger = logger or get_logger()

        self.state = VolumeState.UNKNOWN
        self.path: Optional[Path] = None
        self.mount_count = 0
        self._owns_lock = False

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)

        self.probe_state()
        # A volume found mounted belongs to whoever mounted it
        self.mount_count = 1 if self.is_mounted else 0
        self.reconcile()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def probe_state(self) -> VolumeState:
        """Query the plugin and refresh state and path."""
        result = self.plugin.probe(self.uuid)
        self.state = result.state
        self.path = result.path
        self.logger.debug(f"Volume {self.uuid}: probed state {self.state.value}")
        return self.state

    @property
    def is_mounted(self) -> bool:
        return self.state is VolumeState.MOUNTED

    @property
    def is_attached(self) -> bool:
        return self.state is not VolumeState.UNKNOWN

    # ------------------------------------------------------------------
    # Lock marker
    # ------------------------------------------------------------------

    def is_locked(self) -> bool:
        return self.lock_file.exists()

    @property
    def owns_lock(self) -> bool:
        """True if this instance created the current lock marker."""
        return self._owns_lock

    def acquire_lock(self) -> bool:
        """
        Create the lock marker.

        Returns:
            True if this call created the marker, False if it already existed

        Raises:
            LockFileError: If the marker is missing right after creation
        """
        if self.is_locked():
            self.logger.info(f"Volume {self.uuid} is locked by another run")
            return False

        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            self.logger.info(f"Volume {self.uuid} was locked by another run")
            return False
        except OSError as e:
            raise LockFileError(f"Could not create lock file {self.lock_file}: {e}") from e
        os.close(fd)

        if not self.lock_file.exists():
            raise LockFileError(f"Could not create lock file {self.lock_file}")

        self._owns_lock = True
        self.logger.debug(f"Volume {self.uuid}: lock acquired")
        return True

    def release_lock(self) -> None:
        """
        Remove the lock marker if present.

        Raises:
            LockFileError: If the marker is still present after removal
        """
        if not self.is_locked():
            self._owns_lock = False
            return

        try:
            self.lock_file.unlink(missing_ok=True)
        except OSError as e:
            raise LockFileError(f"Could not remove lock file {self.lock_file}: {e}") from e

        if self.lock_file.exists():
            raise LockFileError(f"Could not remove lock file {self.lock_file}")

        self._owns_lock = False
        self.logger.debug(f"Volume {self.uuid}: lock released")

    def reconcile(self) -> None:
        """Drop a lock marker that cannot belong to a live run."""
        if self.is_locked() and (not self.is_attached or not self.is_mounted):
            self.logger.warning(
                f"Volume {self.uuid} is {self.state.value} but locked; removing stale lock"
            )
            self.release_lock()

    # ------------------------------------------------------------------
    # Mounting
    # ------------------------------------------------------------------

    def _settle(self) -> None:
        if self.settle_seconds > 0:
            self._sleep(self.settle_seconds)

    def mount(self) -> bool:
        """
        Take a mount reference, mounting the volume if needed.

        Returns:
            True if the volume is mounted and the reference was taken
        """
        if self.state is VolumeState.UNKNOWN:
            self.logger.info(f"Volume {self.uuid} is not attached")
            return False

        if self.is_mounted:
            self.mount_count += 1
            self.logger.debug(f"Volume {self.uuid}: mount count {self.mount_count}")
            return True

        self.logger.info(f"Mounting volume {self.uuid}")
        if not self.plugin.mount(self.uuid):
            self.mount_count = 0
            return False

        self._settle()
        self.probe_state()

        if not self.is_mounted:
            self.logger.error(f"Volume {self.uuid} did not come up after mount")
            self.mount_count = 0
            return False

        self.mount_count = 1
        self.logger.info(f"Volume {self.uuid} mounted at {self.path}")
        return True

    def unmount(self) -> bool:
        """
        Drop a mount reference, unmounting when the last one goes.

        A volume locked by another run is left mounted.

        Returns:
            True unless the physical unmount was attempted and failed
        """
        if not self.is_mounted:
            return True

        self.mount_count = max(self.mount_count - 1, 0)
        if self.mount_count > 0:
            self.logger.debug(
                f"Volume {self.uuid}: still needed (mount count {self.mount_count})"
            )
            return True

        if self.is_locked() and not self._owns_lock:
            self.logger.info(
                f"Volume {self.uuid} is locked by another run; leaving it mounted"
            )
            return True

        return self._unmount_now()

    def force_unmount(self) -> bool:
        """Unmount regardless of outstanding references."""
        ok = self._unmount_now()
        if ok:
            self.mount_count = 0
        return ok

    def _unmount_now(self) -> bool:
        if not self.is_mounted:
            return True

        if self._owns_lock:
            self.release_lock()

        self.logger.info(f"Unmounting volume {self.uuid}")
        if not self.plugin.unmount(self.uuid):
            return False

        self._settle()
        self.probe_state()
        if self.state is not VolumeState.UNMOUNTED:
            self.logger.error(
                f"Volume {self.uuid} is {self.state.value} after unmount"
            )
            return False
        return True

    def __str__(self) -> str:
        lock = "locked" if self.is_locked() else "not locked"
        return f"{self.uuid} / {self.state.value} / {lock}"

    def __repr__(self) -> str:
        return (
            f"Volume(uuid={self.uuid!r}, state={self.state.value}, "
            f"path={self.path}, mount_count={self.mount_count})"
        )
