"""
Linux volume plugin built on lsblk and udisksctl.

The block device list is NOT cached: every probe calls lsblk again, since
for a backup tool an up-to-date mount state matters more than runtime.
Mounting goes through udisks so that no root privileges are needed and the
volume lands in the usual /media or /run/media location.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from plugins.base import ProbeResult, VolumePlugin


class LsblkPlugin(VolumePlugin):
    """Probe volumes with lsblk, mount and unmount them with udisksctl."""

    DEFAULT_TIMEOUT = 60

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        super().__init__(config or {})
        self.lsblk = self.config.get("lsblk", "lsblk")
        self.udisksctl = self.config.get("udisksctl", "udisksctl")
        self.timeout = self.config.get("timeout", self.DEFAULT_TIMEOUT)

    @property
    def name(self) -> str:
        return "LsblkPlugin"

    def matches(self, target: Any) -> bool:
        return str(target).lower() == "lsblk"

    @staticmethod
    def _device(uuid: str) -> str:
        return f"/dev/disk/by-uuid/{uuid}"

    def _lsblk(self) -> Optional[Dict[str, Any]]:
        result = self.run_command(
            [self.lsblk, "--json", "--output", "UUID,MOUNTPOINT"],
            timeout=self.timeout,
        )
        if result is None or result.returncode != 0:
            if result is not None:
                self.logger.error(f"lsblk failed: {result.stderr.strip()}")
            return None

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            self.logger.error(f"Could not parse lsblk output: {e}")
            return None

    @staticmethod
    def _iter_devices(devices: List[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        for device in devices:
            yield device
            yield from LsblkPlugin._iter_devices(device.get("children") or [])

    def parse_state(self, listing: Dict[str, Any], uuid: str) -> ProbeResult:
        """Find a volume in parsed `lsblk --json --output UUID,MOUNTPOINT` output."""
        if "blockdevices" not in listing:
            self.logger.error("lsblk json structure unknown")
            return ProbeResult.unknown()

        for device in self._iter_devices(listing["blockdevices"]):
            if (device.get("uuid") or "").lower() != uuid.lower():
                continue
            mount_point = device.get("mountpoint")
            if mount_point:
                return ProbeResult.mounted(Path(mount_point))
            return ProbeResult.unmounted()
        return ProbeResult.unknown()

    def probe(self, uuid: str) -> ProbeResult:
        listing = self._lsblk()
        if listing is None:
            return ProbeResult.unknown()
        return self.parse_state(listing, uuid)

    def _udisks(self, action: str, uuid: str) -> bool:
        result = self.run_command(
            [
                self.udisksctl,
                action,
                "--block-device",
                self._device(uuid),
                "--no-user-interaction",
            ],
            timeout=self.timeout,
        )
        if result is None:
            return False
        if result.returncode != 0:
            self.logger.warning(
                f"udisksctl {action} {uuid} failed: {result.stderr.strip()}"
            )
            return False
        return True

    def mount(self, uuid: str) -> bool:
        return self._udisks("mount", uuid)

    def unmount(self, uuid: str) -> bool:
        return self._udisks("unmount", uuid)
