# =============================================================================
# IDLE Connection Supervisor
# =============================================================================
# Keeps IMAP IDLE connections open on the push mailboxes of push accounts.
#
# Key responsibilities:
#   - Track which mailbox is idling on which folder handle
#   - React to IDLE events: kick long-lived connections, retry failed ones
#     with exponential backoff, hand server changes to the orchestrator
#   - Tear connections down when connectivity is lost and bring them back
#     after a randomized delay once it returns
#
# Design notes:
#   - The idled-folder table is guarded by an asyncio.Lock. Stopping IDLE
#     talks to the server, so it always happens after the lock is released.
#   - A failed or timed-out mailbox leaves the table. The ping alarm later
#     asks for a quick sync, and the sync re-registers IDLE when it is done.
#   - Servers drop IDLE after ~30 minutes, so every idling mailbox gets a
#     kick alarm that restarts IDLE a little before that.
# =============================================================================

import asyncio
import logging
from typing import TYPE_CHECKING

from osprey.config import IdleConfig
from osprey.connectivity import ConnectivityMonitor
from osprey.core import Account, Mailbox, MailboxType, MessagingError
from osprey.imap.folder import IdleEvent, IdleEventKind, OpenMode, RemoteFolder, RemoteStore
from osprey.notifications import NotificationSink
from osprey.scheduling import ALL_MAILBOXES, AlarmAction, AlarmScheduler, WorkerPool
from osprey.storage.repository import Repository

if TYPE_CHECKING:
    from typing import Callable

    from osprey.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class ImapIdleListener:
    """
    Receives the IDLE events of one mailbox.

    Bound to the account and mailbox it was registered for, so a late event
    from a replaced connection still refers to the right mailbox.
    """

    def __init__(
        self, supervisor: "IdleConnectionSupervisor", account: Account, mailbox: Mailbox
    ) -> None:
        self.supervisor = supervisor
        self.account = account
        self.mailbox = mailbox

    async def __call__(self, event: IdleEvent) -> None:
        handler = {
            IdleEventKind.IDLED: self.on_idled,
            IdleEventKind.IDLING_DONE: self.on_idling_done,
            IdleEventKind.NEW_CHANGES: self.on_new_changes,
            IdleEventKind.TIMEOUT: self.on_timeout,
            IdleEventKind.EXCEPTION: self.on_exception,
        }[event.kind]
        await handler(event)

    async def on_idled(self, event: IdleEvent) -> None:
        self.supervisor.schedule_kick(self.mailbox.id)

    async def on_idling_done(self, event: IdleEvent) -> None:
        supervisor = self.supervisor
        supervisor.cancel_kick(self.mailbox.id)
        supervisor.cancel_ping(self.mailbox.id)
        supervisor.reset_ping_delay(self.mailbox.id)

    async def on_new_changes(self, event: IdleEvent) -> None:
        supervisor = self.supervisor
        supervisor.cancel_kick(self.mailbox.id)
        supervisor.cancel_ping(self.mailbox.id)
        supervisor.reset_ping_delay(self.mailbox.id)
        logger.debug(
            f"Server changes on {self.mailbox.server_id}: "
            f"need_sync={event.need_sync}, {len(event.uids)} uids"
        )
        supervisor.process_changes(self.account, self.mailbox, event.need_sync, event.uids)

    async def on_timeout(self, event: IdleEvent) -> None:
        supervisor = self.supervisor
        supervisor.cancel_kick(self.mailbox.id)
        await supervisor.forget_mailbox(self.mailbox.id)
        logger.debug(f"IDLE timed out on {self.mailbox.server_id}")
        supervisor.reschedule_ping(self.mailbox.id, supervisor.settings.ping_base_delay_ms)
        supervisor.reset_ping_delay(self.mailbox.id)

    async def on_exception(self, event: IdleEvent) -> None:
        supervisor = self.supervisor
        supervisor.cancel_kick(self.mailbox.id)
        await supervisor.forget_mailbox(self.mailbox.id)
        logger.warning(f"IDLE failed on {self.mailbox.server_id}: {event.error}")
        supervisor.reschedule_ping(self.mailbox.id, supervisor.next_ping_delay(self.mailbox.id))


class IdleConnectionSupervisor:
    """
    Owns every IDLE connection of the application.

    Usage:
        >>> supervisor = IdleConnectionSupervisor(repo, stores, alarms, pool,
        ...                                       connectivity, notifications, settings)
        >>> supervisor.bind_orchestrator(orchestrator)
        >>> await supervisor.register_account_for_idle(account)

    Attributes:
        repo: Local store, for looking up accounts and mailboxes.
        stores: Callable returning the RemoteStore of an account.
        alarms: Scheduler for the kick, ping and restart alarms.
        pool: Worker pool for background work.
        connectivity: Network state, consulted before (re)connecting.
        notifications: Sink for the battery-exemption request.
        settings: [idle] configuration section.
    """

    def __init__(
        self,
        repo: Repository,
        stores: "Callable[[Account], RemoteStore]",
        alarms: AlarmScheduler,
        pool: WorkerPool,
        connectivity: ConnectivityMonitor,
        notifications: NotificationSink,
        settings: IdleConfig | None = None,
    ) -> None:
        self.repo = repo
        self.stores = stores
        self.alarms = alarms
        self.pool = pool
        self.connectivity = connectivity
        self.notifications = notifications
        self.settings = settings or IdleConfig()
        self.orchestrator: "SyncOrchestrator | None" = None

        self._idled: dict[int, RemoteFolder] = {}  # mailbox_id -> folder
        self._lock = asyncio.Lock()
        self._ping_delays: dict[int, int] = {}     # mailbox_id -> next delay (ms)

        connectivity.add_listener(self.on_connectivity_changed)

    def bind_orchestrator(self, orchestrator: "SyncOrchestrator") -> None:
        """Connect the orchestrator that runs the syncs IDLE asks for."""
        self.orchestrator = orchestrator

    # =========================================================================
    # Table Queries
    # =========================================================================

    def is_mailbox_idled(self, mailbox_id: int) -> bool:
        folder = self._idled.get(mailbox_id)
        return folder is not None and folder.is_idling

    def get_idled_folder(self, mailbox_id: int) -> RemoteFolder | None:
        """The folder handle registered for a mailbox, idling or not."""
        return self._idled.get(mailbox_id)

    @property
    def idled_mailbox_ids(self) -> list[int]:
        return [mailbox_id for mailbox_id in self._idled if self.is_mailbox_idled(mailbox_id)]

    # =========================================================================
    # Registration
    # =========================================================================

    async def register_mailbox_for_idle(self, account: Account, mailbox: Mailbox) -> bool:
        """
        Start IDLE on a mailbox.

        Args:
            account: Owning account, must be a push account.
            mailbox: Mailbox to idle on.

        Returns:
            True if the mailbox is idling afterwards.
        """
        async with self._lock:
            return await self._register_locked(account, mailbox)

    async def _register_locked(self, account: Account, mailbox: Mailbox) -> bool:
        if not mailbox.can_idle or mailbox.mailbox_type == MailboxType.SEARCH:
            return False
        if not account.is_push:
            return False
        if self.is_mailbox_idled(mailbox.id):
            return True
        if not self.connectivity.is_connected:
            logger.debug(f"Not registering {mailbox.server_id} for IDLE: no connectivity")
            return False

        # A suspended handle is reused; a new one only enters the table once idling
        folder = self._idled.get(mailbox.id)
        if folder is None:
            folder = self.stores(account).get_folder(mailbox.server_id)
        try:
            await folder.open(OpenMode.READ_WRITE)
            await folder.start_idling(ImapIdleListener(self, account, mailbox))
        except MessagingError as e:
            logger.info(f"Could not register {mailbox.server_id} ({account.name}) for IDLE: {e}")
            self._idled.pop(mailbox.id, None)
            await self._stop_idling(folder, disconnect=True)
            return False

        self._idled[mailbox.id] = folder
        logger.info(f"Registered {mailbox.server_id} ({account.name}) for IDLE")
        return True

    async def register_account_for_idle(self, account: Account) -> None:
        """
        Register every push mailbox of an account. When none of them could
        be registered the inbox is tried instead.
        """
        if not account.is_push or not account.enabled:
            return
        async with self._lock:
            await self._register_account_locked(account)

    async def _register_account_locked(self, account: Account) -> None:
        registered = False
        for mailbox in await self.repo.get_sync_mailboxes(account.id):
            if self.is_mailbox_idled(mailbox.id):
                registered = True
                continue
            registered = await self._register_locked(account, mailbox) or registered

        if not registered:
            inbox = await self.repo.get_mailbox_by_type(account.id, MailboxType.INBOX)
            if inbox is not None and not self.is_mailbox_idled(inbox.id):
                await self._register_locked(account, inbox)

    # =========================================================================
    # Unregistration
    # =========================================================================

    def _unregister_locked(self, mailbox_id: int, remove: bool) -> RemoteFolder | None:
        """
        Detach a folder from the table. Caller stops it.

        Suspending only touches idling folders. Removing drops the entry
        whatever its state, so a stale handle still gets disconnected.
        """
        if remove:
            return self._idled.pop(mailbox_id, None)
        folder = self._idled.get(mailbox_id)
        if folder is None or not folder.is_idling:
            return None
        return folder

    async def unregister_idled_mailbox(self, mailbox_id: int, remove: bool) -> None:
        """
        Stop IDLE on a mailbox.

        Args:
            mailbox_id: Mailbox to stop.
            remove: Also drop the table entry and disconnect. With False the
                    folder stays open and registered, ready to be reused.
        """
        async with self._lock:
            folder = self._unregister_locked(mailbox_id, remove)
        if folder is not None:
            await self._stop_idling(folder, disconnect=remove)

    async def unregister_account_idled_mailboxes(self, account_id: int, remove: bool) -> None:
        """Stop IDLE on every mailbox of an account (and on orphaned entries)."""
        async with self._lock:
            folders = await self._unregister_account_locked(account_id, remove)
        self._stop_in_background(folders)

    async def _unregister_account_locked(self, account_id: int, remove: bool) -> list[RemoteFolder]:
        folders = []
        for mailbox_id in list(self._idled):
            mailbox = await self.repo.get_mailbox(mailbox_id)
            if mailbox is not None and mailbox.account_id != account_id:
                continue
            folder = self._unregister_locked(mailbox_id, remove)
            if folder is not None:
                folders.append(folder)
        return folders

    async def unregister_all_idled_mailboxes(self, disconnect: bool) -> None:
        """
        Forget every IDLE connection.

        Args:
            disconnect: Also disconnect every registered folder. Without it the table is
                        just cleared, for when the sockets are dead anyway.
        """
        async with self._lock:
            folders = list(self._idled.values()) if disconnect else []
            self._idled.clear()
        self._stop_in_background(folders)

    async def forget_mailbox(self, mailbox_id: int) -> None:
        """Drop a failed mailbox from the table without touching its folder."""
        async with self._lock:
            self._idled.pop(mailbox_id, None)

    async def _stop_idling(self, folder: RemoteFolder, disconnect: bool) -> None:
        try:
            await folder.stop_idling(disconnect)
        except MessagingError as e:
            logger.warning(f"Error stopping IDLE on {folder.server_id}: {e}")

    def _stop_in_background(self, folders: list[RemoteFolder]) -> None:
        for folder in folders:
            self.pool.spawn(
                self._stop_idling(folder, disconnect=True),
                name=f"idle-stop-{folder.server_id}",
            )

    # =========================================================================
    # Kicking
    # =========================================================================

    async def kick_idled_mailbox(self, account: Account, mailbox: Mailbox) -> None:
        """Restart IDLE on the live handle of a mailbox."""
        folder = self._idled.get(mailbox.id)
        if folder is None or not folder.is_idling:
            return
        logger.debug(f"Kicking IDLE on {mailbox.server_id}")
        try:
            await folder.stop_idling(False)
            await folder.start_idling(ImapIdleListener(self, account, mailbox))
        except MessagingError as e:
            logger.warning(f"Could not restart IDLE on {mailbox.server_id}: {e}")
            await self.forget_mailbox(mailbox.id)
            await self._stop_idling(folder, disconnect=True)
            self.reschedule_ping(mailbox.id, self.next_ping_delay(mailbox.id))

    async def kick_account_idled_mailboxes(self, account: Account) -> None:
        """Tear down and re-register every IDLE connection of an account."""
        async with self._lock:
            folders = await self._unregister_account_locked(account.id, remove=True)
        # Old listeners must be done before new ones schedule their alarms
        for folder in folders:
            await self._stop_idling(folder, disconnect=True)
        await self.register_account_for_idle(account)

    # =========================================================================
    # Alarms
    # =========================================================================

    def schedule_kick(self, mailbox_id: int) -> None:
        self.alarms.set_window(
            AlarmAction.KICK,
            mailbox_id,
            self.settings.kick_timeout_minutes * 60_000,
            self.settings.kick_window_minutes * 60_000,
            lambda: self._on_kick_alarm(mailbox_id),
        )

    def cancel_kick(self, mailbox_id: int) -> None:
        self.alarms.cancel(AlarmAction.KICK, mailbox_id)

    def cancel_ping(self, mailbox_id: int) -> None:
        self.alarms.cancel(AlarmAction.PING, mailbox_id)

    def reset_ping_delay(self, mailbox_id: int) -> None:
        self._ping_delays.pop(mailbox_id, None)

    def next_ping_delay(self, mailbox_id: int) -> int:
        """
        Delay for the next retry of a failing mailbox.

        Starts at the base delay and doubles with every call, up to the
        maximum. reset_ping_delay() starts over.
        """
        delay = max(self.settings.ping_base_delay_ms, self._ping_delays.get(mailbox_id, 0))
        self._ping_delays[mailbox_id] = min(self.settings.ping_max_delay_ms, delay * 2)
        return delay

    def reschedule_ping(self, mailbox_id: int, delay_ms: int) -> None:
        if not self.connectivity.is_connected:
            # Connectivity restored will bring everything back
            self.cancel_ping(mailbox_id)
            self.notifications.check_battery_exemption()
            return
        self.alarms.set(
            AlarmAction.PING, mailbox_id, delay_ms,
            lambda: self.restart_idle_connection(mailbox_id),
        )

    async def _on_kick_alarm(self, mailbox_id: int) -> None:
        mailbox = await self.repo.get_mailbox(mailbox_id)
        if mailbox is None:
            return
        account = await self.repo.get_account(mailbox.account_id)
        if account is None:
            return
        await self.kick_idled_mailbox(account, mailbox)

    async def restart_idle_connection(self, mailbox_id: int) -> None:
        """Ping alarm: ask for a quick sync, which re-registers IDLE."""
        mailbox = await self.repo.get_mailbox(mailbox_id)
        if mailbox is None:
            return
        account = await self.repo.get_account(mailbox.account_id)
        if account is None or not account.is_push:
            return
        self._request_sync(account, mailbox_id)

    # =========================================================================
    # Connectivity
    # =========================================================================

    async def on_connectivity_changed(self, connected: bool) -> None:
        if connected:
            await self.on_connectivity_restored()
        else:
            await self.on_connectivity_lost()

    async def on_connectivity_lost(self) -> None:
        # The sockets are gone already, nothing to close
        await self.unregister_all_idled_mailboxes(disconnect=False)
        self.alarms.cancel(AlarmAction.RESTART, ALL_MAILBOXES)

    async def on_connectivity_restored(self) -> None:
        settings = self.settings
        self.alarms.set_window(
            AlarmAction.RESTART,
            ALL_MAILBOXES,
            settings.restart_delay_min_seconds * 1000,
            (settings.restart_delay_max_seconds - settings.restart_delay_min_seconds) * 1000,
            self.restart_all_idle_connections,
        )

    async def restart_all_idle_connections(self) -> None:
        """Ask for a quick sync of every push mailbox that is not idling."""
        accounts = [a for a in await self.repo.get_all_accounts() if a.is_push and a.enabled]
        if not accounts or not self.notifications.check_battery_exemption():
            return

        for account in accounts:
            for mailbox in await self.repo.get_sync_mailboxes(account.id):
                if not self.is_mailbox_idled(mailbox.id):
                    self._request_sync(account, mailbox.id)

    # =========================================================================
    # Orchestrator Hand-off
    # =========================================================================

    def process_changes(
        self, account: Account, mailbox: Mailbox, need_sync: bool, uids: list[str]
    ) -> None:
        if self.orchestrator is None:
            logger.warning(f"Dropping IDLE changes for {mailbox.server_id}: no orchestrator")
            return
        self.pool.spawn(
            self.orchestrator.process_idle_changes(account, mailbox, need_sync, uids),
            name=f"idle-changes-{mailbox.id}",
        )

    def _request_sync(self, account: Account, mailbox_id: int) -> None:
        if self.orchestrator is None:
            logger.warning(f"Cannot request a sync of mailbox {mailbox_id}: no orchestrator")
            return
        self.orchestrator.request_sync(account, mailbox_id, full=False)
