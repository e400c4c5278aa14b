"""
Backup jobs and their schedule.

A Repo is one restic repository on a volume plus the list of directories
(units) backed up into it. Each unit is scheduled on its own: it is due
when more than the job's interval has elapsed since its last successful
backup. There is no calendar alignment; an hourly job run at 10:59 and
again at 11:01 will not back up twice.
"""

from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Sequence

from lib.ledger import LastRunLedger
from lib.logger import get_logger
from plugins.base import RetentionPolicy

if TYPE_CHECKING:
    from core.volume import Volume


class Frequency(str, Enum):
    """How often a job's units should be backed up."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def interval(self) -> int:
        """Due interval in seconds."""
        return INTERVALS[self]

    @property
    def retention(self) -> RetentionPolicy:
        """Retention policy, falling back to the daily one."""
        return RETENTION_POLICIES.get(self, RETENTION_POLICIES[Frequency.DAILY])

    @classmethod
    def parse(cls, value: Optional[str]) -> "Frequency":
        """
        Map a configuration string to a Frequency.

        Unknown or missing values fall back to DAILY.

        Example:
            >>> Frequency.parse("Hourly")
            <Frequency.HOURLY: 'hourly'>
            >>> Frequency.parse("fortnightly")
            <Frequency.DAILY: 'daily'>
        """
        if value is None:
            return cls.DAILY
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            get_logger().warning(
                f"Unknown frequency '{value}', using '{cls.DAILY.value}'"
            )
            return cls.DAILY


# Average Gregorian year in seconds
_YEAR = 31556952

INTERVALS: Dict[Frequency, int] = {
    Frequency.HOURLY: 3600,
    Frequency.DAILY: 3600 * 24,
    Frequency.WEEKLY: 3600 * 24 * 7,
    Frequency.MONTHLY: _YEAR // 12,
    Frequency.YEARLY: _YEAR,
}

RETENTION_POLICIES: Dict[Frequency, RetentionPolicy] = {
    Frequency.HOURLY: RetentionPolicy(hourly=18, daily=6, weekly=4, monthly=4),
    Frequency.DAILY: RetentionPolicy(hourly=1, daily=6, weekly=4, monthly=4),
    Frequency.WEEKLY: RetentionPolicy(hourly=0, daily=1, weekly=4, monthly=4),
}


class Repo:
    """
    A backup job bound to a volume.

    Attributes:
        name: Unique job name, also the repository directory on the volume
        volume: Volume holding the repository
        frequency: Frequency class
        base: Directory the unit names are relative to
        units: Directory names backed up, in order
        ledger: Last-run ledger used for scheduling
    """

    def __init__(
        self,
        name: str,
        volume: "Volume",
        frequency: Frequency,
        base: Path,
        units: Sequence[str],
        ledger: LastRunLedger,
    ):
        self.name = name
        self.volume = volume
        self.frequency = frequency
        self.base = Path(base)
        self.units = tuple(units)
        self.ledger = ledger

    @property
    def interval(self) -> int:
        return self.frequency.interval

    @property
    def retention(self) -> RetentionPolicy:
        return self.frequency.retention

    @property
    def location(self) -> Optional[Path]:
        """Repository path on the volume, or None while unmounted."""
        if self.volume.path is None:
            return None
        return self.volume.path / self.name

    def unit_path(self, unit: str) -> Path:
        return self.base / unit

    def due_units(self) -> List[str]:
        """Units whose last success is older than the job interval."""
        return [
            unit
            for unit in self.units
            if self.ledger.elapsed_seconds(self.name, unit) > self.interval
        ]

    def has_due_work(self) -> bool:
        return bool(self.due_units())

    def __str__(self) -> str:
        lines = [self.frequency.value]
        lines += [f"- {self.unit_path(unit)}" for unit in self.units]
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"Repo(name={self.name!r}, volume={self.volume.uuid!r}, "
            f"frequency={self.frequency.value}, units={list(self.units)})"
        )
