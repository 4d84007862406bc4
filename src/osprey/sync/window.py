# =============================================================================
# Sync Window Planner
# =============================================================================
# Decides how far back in time a sync pass looks at the server.
#
# Key responsibilities:
#   - Choose between a quick sync (last 24h) and a full sync (the mailbox's
#     lookback window)
#   - Widen the window backward when a full sync or "load more" finds too
#     few messages
#
# Design notes:
#   - Full sync is forced after the full-sync interval, measured on the
#     monotonic clock; a negative interval (clock reset) also forces one
#   - Expansion re-lists the whole widened range [end_date, start_date]
#     each round with a doubling step, so it reaches the epoch in a bounded
#     number of rounds even if the server never has enough messages
# =============================================================================

import logging
from dataclasses import dataclass

from osprey.clock import Clock
from osprey.config import SyncConfig
from osprey.core import DAY_MS, Account, Mailbox
from osprey.imap.folder import RemoteFolder, RemoteMessage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncPlan:
    """
    Attributes:
        end_date: Oldest date (epoch ms) the pass looks at.
        full_sync: True for a full-window pass.
        load_more: True when the user asked for older messages.
    """
    end_date: int
    full_sync: bool
    load_more: bool = False


@dataclass
class SyncWindow:
    """
    Result of listing (and possibly widening) the window.

    Attributes:
        messages: Remote messages in the window, oldest first.
        end_date: Final window floor, used by the local deletion pass.
    """
    messages: list[RemoteMessage]
    end_date: int


class SyncWindowPlanner:
    """
    Plans the time window of a sync pass.

    Usage:
        >>> planner = SyncWindowPlanner(config.sync, Clock())
        >>> plan = planner.plan(account, mailbox, load_more=False, ui_refresh=True)
        >>> window = await planner.expand_window(folder, plan)
    """

    # First backward step of the window expansion
    INITIAL_WINDOW_STEP = DAY_MS

    def __init__(self, settings: SyncConfig, clock: Clock) -> None:
        self.settings = settings
        self.clock = clock

    def needs_full_sync(self, mailbox: Mailbox) -> bool:
        """True once the full-sync interval has elapsed (or the clock went backwards)."""
        elapsed = self.clock.elapsed_ms() - mailbox.last_full_sync_time
        return elapsed >= self.settings.full_sync_interval_ms or elapsed < 0

    def lookback_end_date(self, account: Account, mailbox: Mailbox) -> int:
        """Oldest date covered by the mailbox's full lookback window."""
        return self.clock.now_ms() - mailbox.lookback_days(account) * DAY_MS

    def plan(
        self,
        account: Account,
        mailbox: Mailbox,
        load_more: bool = False,
        ui_refresh: bool = False,
    ) -> SyncPlan:
        """
        Decide the window of a pass.

        Args:
            account: Owning account (for the lookback default).
            mailbox: Mailbox being synced.
            load_more: User asked for older messages.
            ui_refresh: User asked for a refresh.

        Returns:
            The SyncPlan for this pass.
        """
        full_sync = ui_refresh or load_more or self.needs_full_sync(mailbox)
        if full_sync:
            end_date = self.lookback_end_date(account, mailbox)
        else:
            end_date = self.clock.now_ms() - self.settings.quick_sync_window_ms
        logger.debug(
            f"Planned {'full' if full_sync else 'quick'} sync of {mailbox.server_id} "
            f"back to {end_date}"
        )
        return SyncPlan(end_date=end_date, full_sync=full_sync, load_more=load_more)

    def target_count(self, plan: SyncPlan, returned: int) -> int:
        """How many messages the pass wants to see in total."""
        if plan.load_more:
            return returned + self.settings.load_more_min_increment
        if plan.full_sync:
            return max(returned, self.settings.minimum_messages_to_sync)
        return returned

    async def expand_window(self, folder: RemoteFolder, plan: SyncPlan) -> SyncWindow:
        """
        List the planned window and widen it backward if it holds too few messages.

        Each round moves end_date back by a doubling step (clamped at the
        epoch) and re-lists everything between the new end_date and the
        original one. Only the most recent additional messages are kept,
        at most load_more_max_increment of them.

        Returns:
            The messages to reconcile and the final window floor.
        """
        messages = await folder.get_messages_in_window(plan.end_date)
        needed = self.target_count(plan, len(messages)) - len(messages)
        end_date = plan.end_date
        if needed <= 0 or end_date <= 0:
            return SyncWindow(messages=messages, end_date=end_date)

        start_date = end_date - 1
        step = self.INITIAL_WINDOW_STEP
        listed = {m.uid for m in messages}
        additional: list[RemoteMessage] = []
        while len(additional) < needed and end_date > 0:
            end_date = max(end_date - step, 0)
            found = await folder.get_messages_in_window(end_date, start_date)
            additional = [m for m in found if m.uid not in listed]
            step *= 2

        if len(additional) < needed:
            logger.error(
                f"Window expansion of {folder.server_id} reached the epoch with "
                f"{len(additional)} of {needed} additional messages"
            )

        keep = min(len(additional), self.settings.load_more_max_increment)
        tail = additional[len(additional) - keep:] if keep else []
        logger.debug(f"Window of {folder.server_id} widened to {end_date}, keeping {keep} more")
        return SyncWindow(messages=tail + messages, end_date=end_date)
