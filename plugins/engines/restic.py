"""
restic backup engine plugin.

Runs the restic binary as a child process. The repository password is
handed over through RESTIC_PASSWORD in the child environment only; it never
appears on the command line.
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from plugins.base import BackupEnginePlugin, RetentionPolicy


class ResticPlugin(BackupEnginePlugin):
    """
    Backup engine plugin driving restic.

    Config keys:
        binary: Path to the restic executable (default: "restic")
        password: Repository password
        timeouts: Dict with "backup", "prune" and "snapshots" seconds
    """

    DEFAULT_TIMEOUTS = {"backup": 6 * 3600, "prune": 3600, "snapshots": 300}

    def __init__(
        self,
        config: Dict[str, Any],
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize restic plugin.

        Args:
            config: Plugin configuration (see class docstring)
            environ: Base environment for child processes (default: os.environ)
        """
        super().__init__(config)
        self.binary = config.get("binary", "restic")
        self.timeouts = {**self.DEFAULT_TIMEOUTS, **(config.get("timeouts") or {})}
        self._environ = dict(os.environ if environ is None else environ)
        password = config.get("password")
        if password:
            self._environ["RESTIC_PASSWORD"] = password

    @property
    def name(self) -> str:
        return "ResticPlugin"

    def matches(self, target: Any) -> bool:
        return str(target).lower() == "restic"

    def _base_args(self, repository: Path) -> List[str]:
        return [self.binary, "--repo", str(repository)]

    def build_backup_command(
        self,
        repository: Path,
        host: str,
        exclude_files: Sequence[Path],
        target: Path,
    ) -> List[str]:
        args = self._base_args(repository) + ["backup", f"--host={host}"]
        args += [f"--exclude-file={path}" for path in exclude_files]
        args.append(str(target))
        return args

    def build_forget_command(
        self, repository: Path, policy: RetentionPolicy
    ) -> List[str]:
        return self._base_args(repository) + ["forget", "--prune"] + policy.to_args()

    def backup(
        self,
        repository: Path,
        host: str,
        exclude_files: Sequence[Path],
        target: Path,
    ) -> bool:
        args = self.build_backup_command(repository, host, exclude_files, target)
        result = self.run_command(
            args, timeout=self.timeouts["backup"], env=self._environ
        )
        if result is None:
            return False
        if result.returncode != 0:
            self.logger.error(
                f"restic backup of {target} failed (exit {result.returncode}): "
                f"{result.stderr.strip()}"
            )
            return False
        return True

    def forget(self, repository: Path, policy: RetentionPolicy) -> bool:
        args = self.build_forget_command(repository, policy)
        result = self.run_command(
            args, timeout=self.timeouts["prune"], env=self._environ
        )
        if result is None:
            return False
        if result.returncode != 0:
            self.logger.error(
                f"restic forget on {repository} failed (exit {result.returncode}): "
                f"{result.stderr.strip()}"
            )
            return False
        return True

    def snapshots(self, repository: Path) -> Optional[str]:
        args = self._base_args(repository) + ["snapshots"]
        result = self.run_command(
            args, timeout=self.timeouts["snapshots"], env=self._environ
        )
        if result is None:
            return None
        if result.returncode != 0:
            self.logger.error(
                f"restic snapshots on {repository} failed: {result.stderr.strip()}"
            )
            return None
        return result.stdout
