"""
Command line entry point for Backup Autopilot.

Usage:
    backup-autopilot [options] [backup|list|inspect]

Meant to be run from cron or launchd every hour: a run where nothing is
due returns immediately without waking any disk.
"""

import argparse
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.config_loader import DEFAULT_CONFIG_PATH, ConfigError, ConfigLoader
from core.orchestrator import BackupError, BackupOrchestrator
from core.repo import Repo
from core.volume import Volume
from lib.ledger import LastRunLedger, StateError
from lib.logger import get_logger, log_context, setup_logger, verbosity_to_level
from lib.utils import ensure_directory
from plugins.base import NotificationPlugin, VolumePlugin
from plugins.engines.restic import ResticPlugin
from plugins.notifiers.desktop import DesktopNotificationPlugin
from plugins.notifiers.webhook import WebhookNotificationPlugin
from plugins.volumes.diskutil import DiskutilPlugin
from plugins.volumes.lsblk import LsblkPlugin

COMMANDS = ["backup", "list", "inspect"]
LEDGER_FILE = "lastrun.db"

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_FAILURES = 2
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="backup-autopilot",
        description="Back up due directories into restic repositories on removable volumes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  backup    perform the backup of due configured paths (default)
  list      show the configured volumes and repos
  inspect   like list but with the restic snapshots of every repo
        """,
    )

    parser.add_argument("command", nargs="?", default="backup", choices=COMMANDS)
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity level (repeatable)",
    )
    parser.add_argument(
        "-n", "--notify", action="store_true", help="Send notification when done"
    )
    parser.add_argument(
        "-d",
        "--device",
        action="append",
        default=[],
        metavar="NAME",
        help="Limit to the given volume (repeatable)",
    )
    parser.add_argument(
        "-r",
        "--repo",
        action="append",
        default=[],
        metavar="NAME",
        help="Limit to the given repo (repeatable)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        metavar="PATH",
        help=f"Read config from PATH instead of {DEFAULT_CONFIG_PATH}",
    )
    parser.add_argument(
        "-u",
        "--umount",
        action="store_true",
        help="Force unmount of every volume when done",
    )

    return parser.parse_args(argv)


def setup_logging(loader: ConfigLoader, verbosity: int) -> None:
    """Configure logging from the config file and the -v count."""
    logging_config = loader.config.logging
    setup_logger(
        log_level=verbosity_to_level(verbosity, base=logging_config.level),
        log_file=loader.log_file(),
        rotation=logging_config.rotation,
        retention=logging_config.retention,
    )


def get_volume_plugin(backend: str, timeout: int) -> VolumePlugin:
    """
    Pick the volume plugin for a backend name.

    Raises:
        ConfigError: If no plugin handles the backend
    """
    for plugin in (DiskutilPlugin({"timeout": timeout}), LsblkPlugin({"timeout": timeout})):
        if plugin.matches(backend):
            return plugin
    raise ConfigError(f"Unsupported volume backend '{backend}'")


def build_volumes(
    loader: ConfigLoader,
    plugin: VolumePlugin,
    devices: Sequence[str],
) -> Dict[str, Volume]:
    """Create (and thereby probe and reconcile) the selected volumes."""
    lock_dir = ensure_directory(loader.state_dir)
    volumes = {}
    for name, uuid in loader.get_volumes().items():
        if devices and name not in devices:
            continue
        volumes[name] = Volume(
            uuid,
            plugin,
            lock_dir,
            settle_seconds=loader.config.settle_seconds,
        )
    return volumes


def build_repos(
    loader: ConfigLoader,
    volumes: Dict[str, Volume],
    ledger: LastRunLedger,
    repo_names: Sequence[str],
) -> List[Repo]:
    """Create the selected repos whose volume was selected too."""
    repos = []
    for name, repo_config in loader.get_repos().items():
        volume = volumes.get(repo_config.volume)
        if volume is None:
            continue
        if repo_names and name not in repo_names:
            continue
        repos.append(
            Repo(
                name=name,
                volume=volume,
                frequency=repo_config.freq,
                base=repo_config.base,
                units=repo_config.dirs,
                ledger=ledger,
            )
        )
    return repos


def build_notifiers(loader: ConfigLoader) -> List[NotificationPlugin]:
    notification = loader.config.notification
    notifiers: List[NotificationPlugin] = []
    if notification.desktop:
        notifiers.append(DesktopNotificationPlugin())
    if notification.webhook_url:
        notifiers.append(
            WebhookNotificationPlugin(
                {"url": notification.webhook_url, "timeout": notification.webhook_timeout}
            )
        )
    return notifiers


def _trim_listing(listing: str) -> str:
    """Drop restic's table header and footer lines."""
    lines = listing.splitlines()
    if len(lines) > 4:
        lines = lines[2:-2]
    return "\n".join(lines)


def _indent(text: str, prefix: str = "    ") -> str:
    return "\n".join(prefix + line for line in text.splitlines())


def run_list(orchestrator: BackupOrchestrator) -> int:
    print("\nConfigured Volumes:")
    for line in orchestrator.describe_volumes():
        print(f"  {line}")

    print("\nConfigured backups:")
    for line in orchestrator.describe_repos():
        print(f"  {line}")
    return EXIT_OK


def run_inspect(orchestrator: BackupOrchestrator) -> int:
    print("\nConfigured Volumes:")
    for line in orchestrator.describe_volumes():
        print(f"  {line}")

    print("\nConfigured backups:")
    for name, listing in orchestrator.inspect().items():
        print(f"\n  {name}:")
        print(_indent(_trim_listing(listing)))
    return EXIT_OK


def run_backup(orchestrator: BackupOrchestrator, notify: bool) -> int:
    logger = get_logger()
    start_time = time.time()

    results = orchestrator.run_backup()
    if not results:
        return EXIT_OK

    duration = time.time() - start_time
    summary = orchestrator.summarize(results, duration)
    all_ok = all(results.values())
    if all_ok:
        logger.info(summary)
    else:
        logger.warning(summary)

    if notify:
        orchestrator.send_summary(results, duration)

    return EXIT_OK if all_ok else EXIT_FAILURES


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main application entry point."""
    args = parse_arguments(argv)
    setup_logger(log_level=verbosity_to_level(args.verbose))
    logger = get_logger()

    try:
        loader = ConfigLoader(args.config)
        setup_logging(loader, args.verbose)
        logger = get_logger().bind(**log_context(command=args.command))

        password = None
        if args.command in ("backup", "inspect"):
            password = loader.resolve_password()

        cfg = loader.config
        plugin = get_volume_plugin(cfg.volume_backend, cfg.timeouts.mount)
        ledger = LastRunLedger(ensure_directory(loader.state_dir) / LEDGER_FILE)
        volumes = build_volumes(loader, plugin, args.device)
        repos = build_repos(loader, volumes, ledger, args.repo)

        logger.debug(f"Volumes: {volumes}")
        logger.debug(f"Repos:   {repos}")
        logger.debug(f"Cmd:     {args.command}")

        engine = ResticPlugin(
            {
                "binary": cfg.restic_binary,
                "password": password,
                "timeouts": {
                    "backup": cfg.timeouts.backup,
                    "prune": cfg.timeouts.prune,
                    "snapshots": cfg.timeouts.snapshots,
                },
            }
        )
        orchestrator = BackupOrchestrator(
            volumes,
            repos,
            engine,
            ledger,
            host=cfg.host,
            exclude_file=loader.exclude_file,
            notifiers=build_notifiers(loader) if args.notify else None,
            title=cfg.notification.title,
            logger=logger,
        )

        if args.command == "list":
            exit_code = run_list(orchestrator)
        elif args.command == "inspect":
            exit_code = run_inspect(orchestrator)
        else:
            exit_code = run_backup(orchestrator, args.notify)

        if args.umount and not orchestrator.force_unmount_all():
            exit_code = exit_code or EXIT_FAILURES

        return exit_code

    except FileNotFoundError as e:
        logger.critical(f"Configuration file error: {e}")
        return EXIT_FATAL

    except (ConfigError, StateError, BackupError) as e:
        logger.critical(f"{type(e).__name__}: {e}")
        return EXIT_FATAL

    except KeyboardInterrupt:
        logger.warning("Backup process interrupted by user")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
