# =============================================================================
# Notification Sink
# =============================================================================
# Where the sync engine reports conditions the user has to act on:
#   - authentication failures (raised by a failed sync, cleared by the next
#     successful one)
#   - missing battery-optimization exemption, without which push
#     connections cannot be re-established while the device sleeps
#
# The default sink logs and keeps state so callers (and tests) can ask what
# is currently being shown. A UI can subclass it.
# =============================================================================

import logging

from osprey.config import NotificationsConfig
from osprey.core import Account

logger = logging.getLogger(__name__)


class NotificationSink:
    """
    Receives user-facing signals from the sync engine.

    Attributes:
        settings: [notifications] configuration section.
    """

    def __init__(self, settings: NotificationsConfig | None = None) -> None:
        self.settings = settings or NotificationsConfig()
        self._login_failed: set[int] = set()
        self.exemption_requests = 0

    @property
    def is_battery_exempt(self) -> bool:
        return self.settings.battery_exempt

    def login_failed(self, account_id: int) -> bool:
        """True while an auth-failure signal is raised for the account."""
        return account_id in self._login_failed

    def show_login_failed(self, account: Account, reason: str = "") -> None:
        if account.id in self._login_failed:
            return
        self._login_failed.add(account.id)
        logger.error(f"Login failed for {account.name}: {reason or 'check the password'}")

    def cancel_login_failed(self, account: Account) -> None:
        if account.id in self._login_failed:
            self._login_failed.discard(account.id)
            logger.info(f"Login for {account.name} works again")

    def check_battery_exemption(self) -> bool:
        """
        Ask for the exemption if it is missing.

        Returns:
            True if push connections may run in the background.
        """
        if self.is_battery_exempt:
            return True
        self.exemption_requests += 1
        logger.warning(
            "Push sync needs a battery-optimization exemption to reconnect "
            "while the device sleeps"
        )
        return False
