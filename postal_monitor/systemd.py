"""
Systemd integration (sd_notify status and watchdog pings)

sdnotify is a no-op when NOTIFY_SOCKET is not set, so this is safe to use
from cron or an interactive shell.
"""
import sdnotify

from .logging_setup import get_logger

log = get_logger("systemd")


class SystemdNotifier:
    """Wrapper for systemd notifications"""

    def __init__(self, notifier=None):
        self.notifier = notifier if notifier is not None else sdnotify.SystemdNotifier()

    def notify(self, message: str):
        """Send notification to systemd"""
        try:
            self.notifier.notify(message)
        except Exception as e:
            log.warning("Failed to send systemd notification: %s", e)

    def ready(self):
        """Signal that service is ready"""
        self.notify("READY=1")

    def watchdog(self):
        """Send watchdog ping"""
        self.notify("WATCHDOG=1")

    def status(self, status: str):
        """Update service status"""
        self.notify(f"STATUS={status}")

    def stopping(self):
        """Signal that service is stopping"""
        self.notify("STOPPING=1")
