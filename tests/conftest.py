"""
Shared pytest fixtures and configuration for Backup Autopilot tests.

This module provides fake plugins for the external tools (volume probing,
restic) plus a controllable clock, so that the volume state machine, the
scheduler and the orchestrator can be exercised without real disks.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from core.volume import Volume
from lib.ledger import LastRunLedger
from plugins.base import (
    BackupEnginePlugin,
    ProbeResult,
    RetentionPolicy,
    VolumePlugin,
    VolumeState,
)

UUID_A = "0142FD6F-0000-4A8B-9C1D-00000000000A"
UUID_B = "0142FD6F-0000-4A8B-9C1D-00000000000B"


class FakeClock:
    """Clock returning a fixed time until advanced."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 15, 10, 30, 45, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeVolumePlugin(VolumePlugin):
    """
    In-memory volume backend.

    Attributes:
        states: UUID -> VolumeState; missing UUIDs are not attached
        fail_mount: UUIDs whose mount command fails
        fail_unmount: UUIDs whose unmount command fails
        stuck: UUIDs whose commands succeed without changing state
        calls: (action, uuid) tuples in call order
    """

    def __init__(self, mount_root: Path, states: Optional[Dict[str, VolumeState]] = None):
        super().__init__({})
        self.mount_root = mount_root
        self.states: Dict[str, VolumeState] = dict(states or {})
        self.fail_mount = set()
        self.fail_unmount = set()
        self.stuck = set()
        self.calls: List[tuple] = []

    @property
    def name(self) -> str:
        return "FakeVolumePlugin"

    def matches(self, target: Any) -> bool:
        return target == "fake"

    def probe(self, uuid: str) -> ProbeResult:
        self.calls.append(("probe", uuid))
        state = self.states.get(uuid, VolumeState.UNKNOWN)
        if state is VolumeState.MOUNTED:
            return ProbeResult.mounted(self.mount_root / uuid)
        return ProbeResult(state)

    def mount(self, uuid: str) -> bool:
        self.calls.append(("mount", uuid))
        if uuid in self.fail_mount:
            return False
        if uuid not in self.stuck:
            self.states[uuid] = VolumeState.MOUNTED
        return True

    def unmount(self, uuid: str) -> bool:
        self.calls.append(("unmount", uuid))
        if uuid in self.fail_unmount:
            return False
        if uuid not in self.stuck:
            self.states[uuid] = VolumeState.UNMOUNTED
        return True

    def count(self, action: str, uuid: Optional[str] = None) -> int:
        return sum(
            1 for a, u in self.calls if a == action and (uuid is None or u == uuid)
        )


class FakeEngine(BackupEnginePlugin):
    """
    Backup engine double recording every call.

    Attributes:
        failing_targets: Target directories whose backup fails
        prune_ok: Result returned by forget()
        listing: Text returned by snapshots()
        observer: Called with the repository on every backup
    """

    def __init__(
        self,
        failing_targets: Sequence[Path] = (),
        prune_ok: bool = True,
        listing: Optional[str] = "snapshots",
        observer: Optional[Callable[[Path], None]] = None,
    ):
        super().__init__({})
        self.failing_targets = {Path(t) for t in failing_targets}
        self.prune_ok = prune_ok
        self.listing = listing
        self.observer = observer
        self.backups: List[Dict[str, Any]] = []
        self.forgets: List[tuple] = []
        self.snapshot_calls: List[Path] = []

    @property
    def name(self) -> str:
        return "FakeEngine"

    def matches(self, target: Any) -> bool:
        return target == "fake"

    def backup(self, repository, host, exclude_files, target) -> bool:
        if self.observer is not None:
            self.observer(repository)
        self.backups.append(
            {
                "repository": repository,
                "host": host,
                "exclude_files": list(exclude_files),
                "target": Path(target),
            }
        )
        return Path(target) not in self.failing_targets

    def forget(self, repository, policy: RetentionPolicy) -> bool:
        self.forgets.append((repository, policy))
        return self.prune_ok

    def snapshots(self, repository) -> Optional[str]:
        self.snapshot_calls.append(repository)
        return self.listing

    @property
    def backed_up(self) -> List[Path]:
        return [call["target"] for call in self.backups]


# Core fixtures


@pytest.fixture
def fake_clock():
    """Controllable clock starting at a fixed UTC time."""
    return FakeClock()


@pytest.fixture
def ledger(fake_clock):
    """In-memory ledger driven by the fake clock."""
    return LastRunLedger(None, clock=fake_clock)


@pytest.fixture
def lock_dir(tmp_path):
    """Directory holding lock markers."""
    return tmp_path / "state"


@pytest.fixture
def volume_plugin(tmp_path):
    """Fake volume backend mounting under tmp_path/Volumes."""
    return FakeVolumePlugin(tmp_path / "Volumes")


@pytest.fixture
def engine():
    """Fake backup engine where everything succeeds."""
    return FakeEngine()


@pytest.fixture
def make_volume(volume_plugin, lock_dir):
    """Factory creating a Volume with the given initial state."""

    def _make(uuid: str = UUID_A, state: VolumeState = VolumeState.UNMOUNTED, **kwargs):
        if state is not VolumeState.UNKNOWN:
            volume_plugin.states[uuid] = state
        kwargs.setdefault("settle_seconds", 0)
        return Volume(uuid, volume_plugin, lock_dir, **kwargs)

    return _make


@pytest.fixture
def source_dir(tmp_path):
    """Base directory with a few unit directories."""
    base = tmp_path / "home"
    for unit in ("Documents", "Photos", "Music"):
        (base / unit).mkdir(parents=True)
    return base


# Pytest configuration


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
