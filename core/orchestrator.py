"""
Backup orchestrator for Backup Autopilot.

This module sequences one run of the tool: it works out which units are
due, brings up only the volumes that host due work, runs restic once per
due unit, prunes each repository, and releases the volumes again.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.repo import Repo
from core.volume import Volume
from lib.ledger import LastRunLedger
from lib.logger import get_logger
from lib.utils import human_readable_duration
from plugins.base import BackupEnginePlugin, NotificationPlugin


class BackupError(Exception):
    """
    Exception raised for invalid orchestration setups.

    Used when the repos handed to the orchestrator reference volumes it
    does not manage.
    """


class BackupOrchestrator:
    """
    Runs due backups for a set of repos sharing a set of volumes.

    Failure handling:
    - a volume that cannot be mounted or locked fails only the repos on it
    - a failing unit is logged and stays due for the next run
    - a failing prune is logged and does not stop the volume release
    - LockFileError and StateError propagate and abort the run

    Attributes:
        volumes: Volume name -> Volume
        repos: Repos to consider, in processing order
        engine: Backup engine plugin
        ledger: Last-run ledger, updated after every successful unit
        host: Host identifier passed to the engine
        exclude_file: Exclude file applied to every job (if it exists)
        notifiers: Plugins receiving the end-of-run summary
        logger: Logger instance
    """

    def __init__(
        self,
        volumes: Dict[str, Volume],
        repos: Sequence[Repo],
        engine: BackupEnginePlugin,
        ledger: LastRunLedger,
        host: str,
        exclude_file: Optional[Path] = None,
        notifiers: Optional[Sequence[NotificationPlugin]] = None,
        title: str = "Backup Autopilot",
        logger=None,
    ):
        """
        Initialize BackupOrchestrator.

        Raises:
            BackupError: If a repo is bound to a volume not in volumes
        """
        self.volumes = volumes
        self.repos = list(repos)
        self.engine = engine
        self.ledger = ledger
        self.host = host
        self.exclude_file = exclude_file
        self.notifiers = list(notifiers or [])
        self.title = title
        self.logger = logger or get_logger()

        known = {id(volume) for volume in self.volumes.values()}
        for repo in self.repos:
            if id(repo.volume) not in known:
                raise BackupError(
                    f"Repo '{repo.name}' is bound to volume {repo.volume.uuid}, "
                    f"which is not managed by this orchestrator"
                )

    # ========================================================================
    # Main Orchestration Methods
    # ========================================================================

    def has_due_work(self) -> bool:
        return any(repo.has_due_work() for repo in self.repos)

    def run_backup(self) -> Dict[str, bool]:
        """
        Back up every repo that has due units.

        Volumes hosting due work are held mounted for the whole run so that
        repos sharing a disk do not mount and unmount it once each. Volumes
        without due work are never touched.

        Repos on a volume that could not be mounted fail without another
        mount attempt.

        Returns:
            Dict mapping repo name -> success, for the repos that ran.
            Empty when nothing was due.
        """
        due = {repo.name: repo.due_units() for repo in self.repos}
        if not any(due.values()):
            self.logger.debug("Nothing to do yet.")
            return {}

        self.logger.info("Running backup")

        held: List[Volume] = []
        for volume in self._volumes_with_due_work(due):
            if volume.mount():
                held.append(volume)
            else:
                self.logger.warning(f"Volume {volume.uuid} is not available")

        results: Dict[str, bool] = {}
        try:
            for repo in self.repos:
                if not due[repo.name]:
                    self.logger.debug(f"Backup {repo.name}: nothing due")
                    continue
                if all(repo.volume is not volume for volume in held):
                    self.logger.error(
                        f"Backup {repo.name}: volume {repo.volume.uuid} is not available"
                    )
                    results[repo.name] = False
                    continue
                results[repo.name] = self.backup_repo(repo)
        finally:
            for volume in held:
                if not volume.unmount():
                    self.logger.warning(f"Could not unmount volume {volume.uuid}")

        return results

    def backup_repo(self, repo: Repo) -> bool:
        """
        Back up the due units of one repo and prune it.

        Args:
            repo: Repo to back up

        Returns:
            True if there was nothing to do, or if every due unit, the prune
            and the volume release succeeded
        """
        due_units = repo.due_units()
        self.logger.debug(
            f"Backup {repo.name}: {len(due_units)}/{len(repo.units)} due directories"
        )
        if not due_units:
            return True

        volume = repo.volume
        if not volume.mount():
            self.logger.error(
                f"Backup {repo.name}: could not mount volume {volume.uuid}"
            )
            return False

        if not volume.acquire_lock():
            self.logger.error(
                f"Backup {repo.name}: volume {volume.uuid} is locked by another run"
            )
            volume.unmount()
            return False

        self.logger.debug(f"Backup {repo.name}: volume ok")

        units_ok = True
        prune_ok = False
        try:
            location = repo.location
            for unit in due_units:
                if self._backup_unit(repo, unit, location):
                    self.ledger.record_success(repo.name, unit)
                else:
                    units_ok = False

            prune_ok = self.engine.forget(location, repo.retention)
            self.logger.info(
                f"Cleaning of {repo.name}. {'Done.' if prune_ok else 'Error!'}"
            )
        finally:
            volume.release_lock()
            released = volume.unmount()

        return units_ok and prune_ok and released

    def _volumes_with_due_work(self, due: Dict[str, List[str]]) -> List[Volume]:
        volumes: List[Volume] = []
        for repo in self.repos:
            if due[repo.name] and all(repo.volume is not v for v in volumes):
                volumes.append(repo.volume)
        return volumes

    def _exclude_files(self, repo: Repo, unit: str) -> List[Path]:
        """Job-wide exclude file plus the unit's own .excludes, when present."""
        files = []
        if self.exclude_file is not None and self.exclude_file.is_file():
            files.append(self.exclude_file)
        unit_excludes = repo.unit_path(unit) / ".excludes"
        if unit_excludes.is_file():
            files.append(unit_excludes)
        return files

    def _backup_unit(self, repo: Repo, unit: str, location: Path) -> bool:
        target = repo.unit_path(unit)
        ok = self.engine.backup(
            location, self.host, self._exclude_files(repo, unit), target
        )
        if ok:
            self.logger.info(f"Backup of {target} into {repo.name}. Done.")
        else:
            self.logger.error(f"Backup of {target} into {repo.name}. Error!")
        return ok

    # ========================================================================
    # Listing and Inspection
    # ========================================================================

    def describe_volumes(self) -> List[str]:
        return [f"{name}: {volume}" for name, volume in self.volumes.items()]

    def describe_repos(self) -> List[str]:
        """Repos with their units and the last success of each unit."""
        lines = []
        for repo in self.repos:
            volume_name = next(
                (n for n, v in self.volumes.items() if v is repo.volume), "?"
            )
            lines.append(f"{repo.name}: {repo.frequency.value} on {volume_name}")
            for unit in repo.units:
                last = self.ledger.last_run(repo.name, unit)
                stamp = last.strftime("%Y-%m-%d %H:%M:%S") if last else "never"
                lines.append(f"  - {repo.unit_path(unit)} (last backup: {stamp})")
        return lines

    def snapshots(self, repo: Repo) -> Optional[str]:
        """
        List the snapshots of one repo.

        Returns:
            Engine listing, or None if the volume could not be mounted or
            the engine failed
        """
        if not repo.volume.mount():
            return None
        try:
            return self.engine.snapshots(repo.location)
        finally:
            repo.volume.unmount()

    def inspect(self) -> Dict[str, str]:
        """
        Mount every volume and collect snapshot listings.

        Returns:
            Dict mapping repo name -> listing or a short reason it is missing
        """
        held = [volume for volume in self.volumes.values() if volume.mount()]
        listings: Dict[str, str] = {}
        try:
            for repo in self.repos:
                if not repo.volume.is_mounted:
                    listings[repo.name] = "volume not mounted"
                    continue
                listing = self.snapshots(repo)
                listings[repo.name] = (
                    listing if listing is not None else "could not list snapshots"
                )
        finally:
            for volume in held:
                volume.unmount()
        return listings

    def force_unmount_all(self) -> bool:
        """Unmount every volume regardless of reference counts."""
        ok = True
        for name, volume in self.volumes.items():
            if not volume.force_unmount():
                self.logger.warning(f"Could not force unmount {name} ({volume.uuid})")
                ok = False
        return ok

    # ========================================================================
    # Summary
    # ========================================================================

    def summarize(self, results: Dict[str, bool], duration_seconds: float) -> str:
        all_ok = all(results.values())
        message = f"Done backup {'without errors' if all_ok else 'with some error'}"
        failed = [name for name, ok in results.items() if not ok]
        if failed:
            message += f" (failed: {', '.join(failed)})"
        return f"{message} in {human_readable_duration(duration_seconds)}"

    def send_summary(self, results: Dict[str, bool], duration_seconds: float) -> None:
        """
        Send the run summary to every notifier.

        Notification failures are logged and never fail the run.
        """
        if not self.notifiers:
            return

        level = "success" if all(results.values()) else "error"
        message = self.summarize(results, duration_seconds)
        for notifier in self.notifiers:
            try:
                if not notifier.send_notification(self.title, message, level=level):
                    self.logger.warning(f"{notifier.name}: notification not delivered")
            except Exception as e:  # pylint: disable=broad-exception-caught
                self.logger.warning(f"{notifier.name}: notification failed: {e}")
