"""
Tests for the diskutil and lsblk volume plugins.

External tools are never run: subprocess.run is patched and fed canned
`diskutil list -plist` and `lsblk --json` output.
"""

import json
import plistlib
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from plugins.base import ProbeResult, VolumeState
from plugins.volumes.diskutil import DiskutilPlugin
from plugins.volumes.lsblk import LsblkPlugin

MOUNTED_UUID = "6A1B2C3D-0000-4E5F-8000-0000000000A1"
UNMOUNTED_UUID = "6A1B2C3D-0000-4E5F-8000-0000000000B2"
APFS_UUID = "6A1B2C3D-0000-4E5F-8000-0000000000C3"


def completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(["tool"], returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def diskutil_listing():
    """Parsed `diskutil list -plist external` document."""
    return {
        "AllDisks": ["disk4", "disk4s1", "disk4s2", "disk5"],
        "AllDisksAndPartitions": [
            {
                "DeviceIdentifier": "disk4",
                "Partitions": [
                    {"DeviceIdentifier": "disk4s1", "VolumeName": "EFI"},
                    {
                        "DeviceIdentifier": "disk4s2",
                        "MountPoint": "/Volumes/TimeMachine",
                        "VolumeName": "TimeMachine",
                        "VolumeUUID": MOUNTED_UUID,
                    },
                    {
                        "DeviceIdentifier": "disk4s3",
                        "VolumeName": "Archive",
                        "VolumeUUID": UNMOUNTED_UUID,
                    },
                ],
            },
            {
                "DeviceIdentifier": "disk5",
                "APFSVolumes": [
                    {
                        "DeviceIdentifier": "disk5s1",
                        "MountPoint": "/Volumes/Backup",
                        "VolumeName": "Backup",
                        "VolumeUUID": APFS_UUID,
                    }
                ],
            },
        ],
        "WholeDisks": ["disk4", "disk5"],
    }


@pytest.fixture
def diskutil_output(diskutil_listing):
    """The same document as diskutil prints it."""
    return plistlib.dumps(diskutil_listing).decode("utf-8")


@pytest.fixture
def lsblk_listing():
    """Parsed `lsblk --json --output UUID,MOUNTPOINT` document."""
    system_disk = {
        "uuid": None,
        "mountpoint": None,
        "children": [
            {"uuid": "2f3c-11aa", "mountpoint": "/boot/efi"},
            {"uuid": "c0ffee00-0000-4000-8000-000000000001", "mountpoint": "/"},
        ],
    }
    usb_disk = {
        "uuid": None,
        "mountpoint": None,
        "children": [
            {"uuid": "b4ckup00-0000-4000-8000-00000000000a", "mountpoint": "/media/backup"},
            {"uuid": "b4ckup00-0000-4000-8000-00000000000b", "mountpoint": None},
        ],
    }
    return {"blockdevices": [system_disk, usb_disk]}


# Tests for DiskutilPlugin


class TestDiskutilParsing:
    """Test parsing of diskutil property lists."""

    def test_mounted_partition(self, diskutil_listing):
        """Test a classic partition with a mount point."""
        result = DiskutilPlugin().parse_state(diskutil_listing, MOUNTED_UUID)
        assert result == ProbeResult.mounted(Path("/Volumes/TimeMachine"))

    def test_unmounted_partition(self, diskutil_listing):
        """Test a partition without a mount point."""
        result = DiskutilPlugin().parse_state(diskutil_listing, UNMOUNTED_UUID)
        assert result.state is VolumeState.UNMOUNTED

    def test_apfs_volume(self, diskutil_listing):
        """Test that APFS volumes are searched too."""
        result = DiskutilPlugin().parse_state(diskutil_listing, APFS_UUID)
        assert result.path == Path("/Volumes/Backup")

    def test_uuid_case_insensitive(self, diskutil_listing):
        """Test lowercase UUIDs from the config file."""
        result = DiskutilPlugin().parse_state(diskutil_listing, MOUNTED_UUID.lower())
        assert result.state is VolumeState.MOUNTED

    def test_absent_volume(self, diskutil_listing):
        """Test a UUID that is not attached."""
        result = DiskutilPlugin().parse_state(diskutil_listing, "NOT-PLUGGED-IN")
        assert result.state is VolumeState.UNKNOWN


class TestDiskutilCommands:
    """Test diskutil invocations."""

    def test_probe_runs_diskutil_list(self, diskutil_output):
        """Test the list command and its parsing."""
        with patch("plugins.base.subprocess.run", return_value=completed(diskutil_output)) as mock_run:
            result = DiskutilPlugin({"timeout": 12}).probe(MOUNTED_UUID)

        assert result.state is VolumeState.MOUNTED
        args, kwargs = mock_run.call_args
        assert args[0] == ["diskutil", "list", "-plist", "external"]
        assert kwargs["timeout"] == 12

    def test_probe_command_failure(self):
        """Test that a failing diskutil means unknown."""
        with patch("plugins.base.subprocess.run", return_value=completed(returncode=1, stderr="boom")):
            assert DiskutilPlugin().probe(MOUNTED_UUID).state is VolumeState.UNKNOWN

    def test_probe_garbage_output(self):
        """Test that unparsable output means unknown."""
        with patch("plugins.base.subprocess.run", return_value=completed("not a plist")):
            assert DiskutilPlugin().probe(MOUNTED_UUID).state is VolumeState.UNKNOWN

    def test_probe_timeout(self):
        """Test that a hung diskutil means unknown."""
        with patch(
            "plugins.base.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["diskutil"], 60),
        ):
            assert DiskutilPlugin().probe(MOUNTED_UUID).state is VolumeState.UNKNOWN

    def test_mount(self):
        """Test the mount command."""
        with patch("plugins.base.subprocess.run", return_value=completed()) as mock_run:
            assert DiskutilPlugin().mount(UNMOUNTED_UUID) is True

        assert mock_run.call_args[0][0] == ["diskutil", "quiet", "mount", UNMOUNTED_UUID]

    def test_unmount(self):
        """Test the unmount command."""
        with patch("plugins.base.subprocess.run", return_value=completed()) as mock_run:
            assert DiskutilPlugin().unmount(MOUNTED_UUID) is True

        assert mock_run.call_args[0][0] == ["diskutil", "quiet", "umount", MOUNTED_UUID]

    def test_mount_failure(self):
        """Test a refused mount."""
        with patch("plugins.base.subprocess.run", return_value=completed(returncode=1)):
            assert DiskutilPlugin().mount(UNMOUNTED_UUID) is False

    def test_unmount_timeout(self):
        """Test a hung unmount."""
        with patch(
            "plugins.base.subprocess.run",
            side_effect=subprocess.TimeoutExpired(["diskutil"], 60),
        ):
            assert DiskutilPlugin().unmount(MOUNTED_UUID) is False

    def test_matches(self):
        """Test backend name matching."""
        assert DiskutilPlugin().matches("diskutil")
        assert not DiskutilPlugin().matches("lsblk")


# Tests for LsblkPlugin


class TestLsblkParsing:
    """Test parsing of lsblk JSON."""

    def test_mounted_partition(self, lsblk_listing):
        """Test a mounted child partition."""
        result = LsblkPlugin().parse_state(lsblk_listing, "b4ckup00-0000-4000-8000-00000000000a")
        assert result == ProbeResult.mounted(Path("/media/backup"))

    def test_unmounted_partition(self, lsblk_listing):
        """Test an attached partition without mount point."""
        result = LsblkPlugin().parse_state(lsblk_listing, "b4ckup00-0000-4000-8000-00000000000b")
        assert result.state is VolumeState.UNMOUNTED

    def test_absent_volume(self, lsblk_listing):
        """Test a UUID that is not attached."""
        assert LsblkPlugin().parse_state(lsblk_listing, "missing").state is VolumeState.UNKNOWN

    def test_uuid_case_insensitive(self, lsblk_listing):
        """Test uppercase UUIDs from the config file."""
        result = LsblkPlugin().parse_state(lsblk_listing, "B4CKUP00-0000-4000-8000-00000000000A")
        assert result.state is VolumeState.MOUNTED

    def test_empty_mountpoint_is_unmounted(self):
        """Test that an empty mountpoint string counts as unmounted."""
        listing = {"blockdevices": [{"uuid": "aa", "mountpoint": ""}]}

        assert LsblkPlugin().parse_state(listing, "aa").state is VolumeState.UNMOUNTED

    def test_unknown_structure(self):
        """Test output without blockdevices."""
        assert LsblkPlugin().parse_state({"devices": []}, "aa").state is VolumeState.UNKNOWN


class TestLsblkCommands:
    """Test lsblk and udisksctl invocations."""

    def test_probe_runs_lsblk(self, lsblk_listing):
        """Test the lsblk command and its parsing."""
        output = json.dumps(lsblk_listing)
        with patch("plugins.base.subprocess.run", return_value=completed(output)) as mock_run:
            result = LsblkPlugin().probe("b4ckup00-0000-4000-8000-00000000000a")

        assert result.state is VolumeState.MOUNTED
        assert mock_run.call_args[0][0] == ["lsblk", "--json", "--output", "UUID,MOUNTPOINT"]

    def test_probe_is_not_cached(self, lsblk_listing):
        """Test that every probe asks lsblk again."""
        output = json.dumps(lsblk_listing)
        with patch("plugins.base.subprocess.run", return_value=completed(output)) as mock_run:
            plugin = LsblkPlugin()
            plugin.probe("aa")
            plugin.probe("aa")

        assert mock_run.call_count == 2

    def test_probe_invalid_json(self):
        """Test that unparsable output means unknown."""
        with patch("plugins.base.subprocess.run", return_value=completed("{oops")):
            assert LsblkPlugin().probe("aa").state is VolumeState.UNKNOWN

    def test_probe_missing_lsblk(self):
        """Test that a missing lsblk binary means unknown."""
        with patch("plugins.base.subprocess.run", side_effect=FileNotFoundError("lsblk")):
            assert LsblkPlugin().probe("aa").state is VolumeState.UNKNOWN

    def test_mount_uses_udisksctl(self):
        """Test the mount command."""
        with patch("plugins.base.subprocess.run", return_value=completed()) as mock_run:
            assert LsblkPlugin().mount("aa") is True

        assert mock_run.call_args[0][0] == [
            "udisksctl",
            "mount",
            "--block-device",
            "/dev/disk/by-uuid/aa",
            "--no-user-interaction",
        ]

    def test_unmount_uses_udisksctl(self):
        """Test the unmount command."""
        with patch("plugins.base.subprocess.run", return_value=completed()) as mock_run:
            assert LsblkPlugin({"udisksctl": "/usr/bin/udisksctl"}).unmount("aa") is True

        assert mock_run.call_args[0][0][:2] == ["/usr/bin/udisksctl", "unmount"]

    def test_mount_failure(self):
        """Test a refused mount."""
        with patch(
            "plugins.base.subprocess.run",
            return_value=completed(returncode=1, stderr="Not authorized"),
        ):
            assert LsblkPlugin().mount("aa") is False

    def test_matches(self):
        """Test backend name matching."""
        assert LsblkPlugin().matches("LSBLK")
        assert not LsblkPlugin().matches("diskutil")
