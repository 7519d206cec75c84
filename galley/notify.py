"""Best-effort notifications through the apprise CLI.

Notifications are fire-and-forget: a missing binary, a non-zero exit or a
timeout is logged and never propagated to the calling phase.
"""

from __future__ import annotations

import logging
import subprocess

logger = logging.getLogger(__name__)

BUILD_TITLE = "The Galley"
MONITOR_TITLE = "The Galley Monitor"

NOTIFY_TIMEOUT = 60


def parse_urls(value: str) -> list[str]:
    """Split an APPRISE_URLS value into individual endpoints."""
    return [u for u in value.replace(",", " ").split() if u]


class Notifier:
    """Send notifications to a configured set of apprise endpoints."""

    def __init__(
        self,
        urls: str | list[str],
        title: str = BUILD_TITLE,
        timeout: int = NOTIFY_TIMEOUT,
    ) -> None:
        self.urls = parse_urls(urls) if isinstance(urls, str) else list(urls)
        self.title = title
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.urls)

    def notify(self, message: str) -> bool:
        """Post a message to every endpoint.

        Args:
            message: Notification body.

        Returns:
            True if apprise reported success, False otherwise (including when
            no endpoints are configured).
        """
        if not self.enabled:
            logger.debug("Notification skipped (no endpoints): %s", message)
            return False

        cmd = ["apprise", "-t", self.title, "-b", message, *self.urls]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Notification failed: %s", e)
            return False

        if result.returncode != 0:
            logger.warning("Notification failed with exit code %d", result.returncode)
            return False
        return True


__all__ = ["BUILD_TITLE", "MONITOR_TITLE", "Notifier", "parse_urls"]
