"""
macOS volume plugin built on diskutil.

Volumes are looked up by VolumeUUID in the property list printed by
`diskutil list -plist external`. Both APFS volumes and plain partitions
(e.g. HFS+ Time Machine disks) carry a VolumeUUID key; a matching entry
without a MountPoint means the disk is attached but not mounted.
"""

import plistlib
from pathlib import Path
from typing import Any, Dict, Iterator, Optional
from xml.parsers.expat import ExpatError

from plugins.base import ProbeResult, VolumePlugin


class DiskutilPlugin(VolumePlugin):
    """Probe, mount and unmount external volumes with diskutil."""

    DEFAULT_TIMEOUT = 60

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.binary = self.config.get("binary", "diskutil")
        self.timeout = self.config.get("timeout", self.DEFAULT_TIMEOUT)

    @property
    def name(self) -> str:
        return "DiskutilPlugin"

    def matches(self, target: Any) -> bool:
        return str(target).lower() == "diskutil"

    def _list_external(self) -> Optional[Dict[str, Any]]:
        result = self.run_command(
            [self.binary, "list", "-plist", "external"], timeout=self.timeout
        )
        if result is None or result.returncode != 0:
            if result is not None:
                self.logger.error(f"diskutil list failed: {result.stderr.strip()}")
            return None

        try:
            return plistlib.loads(result.stdout.encode("utf-8"))
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            self.logger.error(f"Could not parse diskutil output: {e}")
            return None

    @staticmethod
    def _iter_volumes(node: Any) -> Iterator[Dict[str, Any]]:
        """Yield every dict in the plist tree that describes a volume."""
        if isinstance(node, dict):
            if "VolumeUUID" in node:
                yield node
            for value in node.values():
                yield from DiskutilPlugin._iter_volumes(value)
        elif isinstance(node, list):
            for item in node:
                yield from DiskutilPlugin._iter_volumes(item)

    def parse_state(self, listing: Dict[str, Any], uuid: str) -> ProbeResult:
        """
        Find a volume in a parsed `diskutil list -plist` document.

        Args:
            listing: Parsed property list
            uuid: VolumeUUID to look for (case-insensitive)

        Returns:
            ProbeResult for the volume
        """
        wanted = uuid.upper()
        for volume in self._iter_volumes(listing):
            if str(volume.get("VolumeUUID", "")).upper() != wanted:
                continue
            mount_point = volume.get("MountPoint")
            if mount_point:
                return ProbeResult.mounted(Path(mount_point))
            return ProbeResult.unmounted()
        return ProbeResult.unknown()

    def probe(self, uuid: str) -> ProbeResult:
        listing = self._list_external()
        if listing is None:
            return ProbeResult.unknown()
        return self.parse_state(listing, uuid)

    def mount(self, uuid: str) -> bool:
        result = self.run_command(
            [self.binary, "quiet", "mount", uuid], timeout=self.timeout
        )
        if result is None:
            return False
        if result.returncode != 0:
            self.logger.warning(f"diskutil mount {uuid} failed: {result.stderr.strip()}")
            return False
        return True

    def unmount(self, uuid: str) -> bool:
        result = self.run_command(
            [self.binary, "quiet", "umount", uuid], timeout=self.timeout
        )
        if result is None:
            return False
        if result.returncode != 0:
            self.logger.warning(
                f"diskutil umount {uuid} failed: {result.stderr.strip()}"
            )
            return False
        return True
