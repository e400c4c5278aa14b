"""
Desktop notification plugin.

Uses osascript on macOS and notify-send (libnotify) everywhere else.
"""

import shutil
import sys
from typing import Any, Dict, List, Optional

from plugins.base import NotificationPlugin


class DesktopNotificationPlugin(NotificationPlugin):
    """Show a desktop notification at the end of a run."""

    def __init__(
        self, config: Optional[Dict[str, Any]] = None, platform: Optional[str] = None
    ):
        super().__init__(config or {})
        self.platform = platform or sys.platform

    @property
    def name(self) -> str:
        return "DesktopNotificationPlugin"

    def matches(self, target: Any) -> bool:
        return str(target).lower() == "desktop"

    @property
    def binary(self) -> str:
        return "osascript" if self.platform == "darwin" else "notify-send"

    @staticmethod
    def _quote(text: str) -> str:
        return text.replace("\\", "\\\\").replace('"', '\\"')

    def build_command(self, title: str, message: str, level: str = "info") -> List[str]:
        if self.platform == "darwin":
            script = (
                f'display notification "{self._quote(message)}" '
                f'with title "{self._quote(title)}"'
            )
            return [self.binary, "-e", script]

        urgency = "critical" if level.lower() == "error" else "normal"
        return [self.binary, f"--urgency={urgency}", title, message]

    def send_notification(
        self,
        title: str,
        message: str,
        level: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if metadata:
            message = message + "\n" + ", ".join(f"{k}: {v}" for k, v in metadata.items())

        result = self.run_command(self.build_command(title, message, level), timeout=30)
        if result is None:
            return False
        if result.returncode != 0:
            self.logger.warning(f"Desktop notification failed: {result.stderr.strip()}")
            return False
        return True

    def test_connection(self) -> bool:
        return shutil.which(self.binary) is not None
