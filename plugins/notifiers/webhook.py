"""
Webhook notification plugin.

Pushes the run result to a monitoring endpoint (Uptime Kuma, healthchecks
and similar push monitors) with a single HTTP GET carrying status and msg
query parameters.
"""

from typing import Any, Dict, Optional

import requests

from plugins.base import NotificationPlugin


class WebhookNotificationPlugin(NotificationPlugin):
    """
    Push run status to a URL.

    Config keys:
        url: Push endpoint
        timeout: Request timeout in seconds (default: 10)
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.url = config.get("url")
        self.timeout = config.get("timeout", 10)

    @property
    def name(self) -> str:
        return "WebhookNotificationPlugin"

    def matches(self, target: Any) -> bool:
        return str(target).lower() == "webhook"

    def send_notification(
        self,
        title: str,
        message: str,
        level: str = "info",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        if not self.url:
            self.logger.warning("Webhook notification skipped: no URL configured")
            return False

        status = "down" if level.lower() in ("warning", "error") else "up"
        params = {
            "status": status,
            "msg": self.format_message(title, message, level, metadata),
        }

        try:
            response = requests.get(self.url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout:
            self.logger.warning(
                f"Webhook notification timed out after {self.timeout} seconds"
            )
            return False
        except requests.exceptions.RequestException as e:
            self.logger.warning(f"Webhook notification failed: {e}")
            return False

        self.logger.debug(f"Webhook notification sent: status={status}")
        return True

    def test_connection(self) -> bool:
        return bool(self.url)
