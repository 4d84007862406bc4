# =============================================================================
# Sync Orchestrator
# =============================================================================
# Entry points that sequence a mailbox sync.
#
# Key responsibilities:
#   - synchronize_mailbox_synchronous(): suspend IDLE, upsync, reconcile,
#     re-register IDLE, all under one lock
#   - process_idle_changes(): what happens after IDLE reported changes
#   - sync_mailbox()/sync_account(): the outer layer that turns errors into
#     a SyncStatus and keeps the mailbox's ui sync status current
#   - request_sync(): run a sync in the background
#
# Design notes:
#   - One sync at a time. The lock is not reentrant, so code running under
#     it calls the upsyncer and the engine directly, never the public
#     entry points.
#   - IDLE is suspended with remove=False: the folder stays registered and
#     open, and is reused when IDLE is registered again afterwards.
# =============================================================================

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING

from osprey.clock import Clock
from osprey.config import SyncConfig
from osprey.core import Account, ErrorKind, Mailbox, MailboxType, MessagingError, UiSyncStatus
from osprey.notifications import NotificationSink
from osprey.scheduling import WorkerPool
from osprey.storage.repository import Repository
from osprey.sync.folders import FolderListSynchronizer
from osprey.sync.reconcile import ReconcileResult, ReconciliationEngine, StoreProvider
from osprey.sync.upsync import PendingChangeUpsyncer, UpsyncResult
from osprey.sync.window import SyncWindowPlanner

if TYPE_CHECKING:
    from osprey.imap.idle import IdleConnectionSupervisor

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Outcome of a mailbox sync."""
    SUCCESS = auto()
    IO_ERROR = auto()
    AUTH_ERROR = auto()
    SERVER_ERROR = auto()
    INTERNAL_ERROR = auto()

    @classmethod
    def from_error(cls, error: MessagingError) -> "SyncStatus":
        return {
            ErrorKind.IO_ERROR: cls.IO_ERROR,
            ErrorKind.AUTHENTICATION_FAILED: cls.AUTH_ERROR,
            ErrorKind.SERVER_ERROR: cls.SERVER_ERROR,
        }.get(error.kind, cls.INTERNAL_ERROR)


@dataclass
class SyncResult:
    """
    Result of one mailbox sync.

    Attributes:
        mailbox_id: Mailbox that was synced.
        status: How it ended.
        error: Error message if status is not SUCCESS.
        reconcile: Local changes, when reconciliation ran.
    """
    mailbox_id: int
    status: SyncStatus = SyncStatus.SUCCESS
    error: str | None = None
    reconcile: ReconcileResult | None = None

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SUCCESS


@dataclass
class AccountSyncResult:
    """Results of an account sync, one per mailbox."""
    account_id: int
    mailboxes: list[SyncResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.mailboxes) and all(r.success for r in self.mailboxes)


class SyncOrchestrator:
    """
    Runs mailbox syncs, one at a time.

    Usage:
        >>> orchestrator = SyncOrchestrator(repo, stores, upsyncer, engine, planner,
        ...                                 folders, notifications, pool, settings)
        >>> orchestrator.bind_supervisor(supervisor)
        >>> result = await orchestrator.sync_mailbox(inbox.id, ui_refresh=True)

    Attributes:
        repo: Local message store.
        stores: Callable returning the RemoteStore of an account.
        upsyncer: Pushes pending local changes.
        engine: Pulls server state.
        planner: Decides when a full sync is due.
        folders: Refreshes the folder list before account syncs.
        notifications: Sink for the auth-failure signal.
        pool: Worker pool for requested syncs.
        settings: [sync] configuration section.
        supervisor: IDLE supervisor, None when push is not running.
    """

    def __init__(
        self,
        repo: Repository,
        stores: StoreProvider,
        upsyncer: PendingChangeUpsyncer,
        engine: ReconciliationEngine,
        planner: SyncWindowPlanner,
        folders: FolderListSynchronizer,
        notifications: NotificationSink,
        pool: WorkerPool,
        settings: SyncConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.repo = repo
        self.stores = stores
        self.upsyncer = upsyncer
        self.engine = engine
        self.planner = planner
        self.folders = folders
        self.notifications = notifications
        self.pool = pool
        self.settings = settings or SyncConfig()
        self.clock = clock or Clock()
        self.supervisor: "IdleConnectionSupervisor | None" = None

        self._lock = asyncio.Lock()

    def bind_supervisor(self, supervisor: "IdleConnectionSupervisor") -> None:
        """Connect the IDLE supervisor, in both directions."""
        self.supervisor = supervisor
        supervisor.bind_orchestrator(self)

    @property
    def sync_in_progress(self) -> bool:
        return self._lock.locked()

    # =========================================================================
    # Locked Entry Points
    # =========================================================================

    async def synchronize_mailbox_synchronous(
        self,
        account: Account,
        mailbox: Mailbox,
        load_more: bool = False,
        ui_refresh: bool = False,
    ) -> SyncStatus:
        """
        Upsync and reconcile one mailbox.

        Args:
            account: Owning account.
            mailbox: Mailbox to sync.
            load_more: The user asked for older messages.
            ui_refresh: The user asked for a refresh.

        Returns:
            SyncStatus.SUCCESS.

        Raises:
            MessagingError: If reconciliation failed. Authentication
                            failures also raise the login-failed signal.
        """
        await self._synchronize(account, mailbox, load_more, ui_refresh)
        return SyncStatus.SUCCESS

    async def _synchronize(
        self, account: Account, mailbox: Mailbox, load_more: bool, ui_refresh: bool
    ) -> ReconcileResult:
        async with self._lock:
            try:
                await self._suspend_idle(account, mailbox)
                await self.upsyncer.upsync(account, manual_sync=ui_refresh)
                result = await self.engine.reconcile(
                    account, mailbox, load_more=load_more, ui_refresh=ui_refresh
                )
                self.notifications.cancel_login_failed(account)
            except MessagingError as e:
                logger.debug(f"Sync of {mailbox.server_id} ({account.name}) failed: {e}")
                if e.is_auth_failure:
                    self.notifications.show_login_failed(account, str(e))
                raise
            finally:
                await self.stores(account).close_connections()
                if account.is_push and self.supervisor is not None:
                    await self.supervisor.register_mailbox_for_idle(account, mailbox)
        return result

    async def process_pending_actions_synchronous(
        self, account: Account, manual_sync: bool = False
    ) -> UpsyncResult:
        """Push pending local changes of an account to the server."""
        async with self._lock:
            try:
                return await self.upsyncer.upsync(account, manual_sync=manual_sync)
            finally:
                await self.stores(account).close_connections()

    async def process_idle_changes(
        self,
        account: Account,
        mailbox: Mailbox,
        need_sync: bool,
        uids: list[str],
    ) -> None:
        """
        Handle the changes an IDLE connection reported.

        Small sets of changed uids are fetched directly. Anything else, or a
        due full sync, turns into a sync request. When no sync is requested
        IDLE is registered again right away.
        """
        async with self._lock:
            mailbox = await self.repo.get_mailbox(mailbox.id) or mailbox
            try:
                await self.upsyncer.upsync(account)
            finally:
                await self.stores(account).close_connections()

            if self.planner.needs_full_sync(mailbox):
                need_sync = True
                uids = []

            if uids:
                if not need_sync and len(uids) <= self.settings.max_messages_to_fetch:
                    need_sync = not await self._fetch_changes(account, mailbox, uids)
                else:
                    need_sync = True

            if need_sync:
                self.request_sync(account, mailbox.id, full=True)
            elif account.is_push and self.supervisor is not None:
                await self.supervisor.register_mailbox_for_idle(account, mailbox)

    async def _fetch_changes(self, account: Account, mailbox: Mailbox, uids: list[str]) -> bool:
        """Fast path for IDLE changes. Returns False when a sync is needed instead."""
        folder = self.supervisor.get_idled_folder(mailbox.id) if self.supervisor else None
        try:
            await self.engine.reconcile_uids(account, mailbox, uids, folder)
        except MessagingError as e:
            logger.warning(f"Could not fetch IDLE changes of {mailbox.server_id}: {e}")
            return False
        finally:
            await self.stores(account).close_connections()
        return True

    async def _suspend_idle(self, account: Account, mailbox: Mailbox) -> None:
        if self.supervisor is None:
            return
        if account.is_push:
            await self.supervisor.unregister_idled_mailbox(mailbox.id, remove=False)
        else:
            await self.supervisor.unregister_account_idled_mailboxes(account.id, remove=False)

    # =========================================================================
    # Sync Requests
    # =========================================================================

    async def sync_mailbox(
        self,
        mailbox_id: int,
        ui_refresh: bool = False,
        delta_message_count: int = 0,
    ) -> SyncResult:
        """
        Sync one mailbox and report how it went.

        Args:
            mailbox_id: Mailbox to sync.
            ui_refresh: The user asked for a refresh.
            delta_message_count: Non-zero asks for more (older) messages.

        Returns:
            SyncResult. Errors are reported in it, not raised.
        """
        result = SyncResult(mailbox_id=mailbox_id)
        mailbox = await self.repo.get_mailbox(mailbox_id)
        account = await self.repo.get_account(mailbox.account_id) if mailbox else None
        if mailbox is None or account is None:
            result.status = SyncStatus.INTERNAL_ERROR
            result.error = f"Mailbox {mailbox_id} not found"
            return result

        if not mailbox.loads_from_server:
            # Changes in a non-syncing mailbox never reach the server
            await self.repo.remove_pending_updates_for_mailbox(mailbox.id)
            return result

        logger.debug(f"About to sync mailbox {mailbox.server_id} ({account.name})")
        status = UiSyncStatus.USER if ui_refresh else UiSyncStatus.BACKGROUND
        await self.repo.update_mailbox_sync_status(mailbox.id, status)
        try:
            result.reconcile = await self._synchronize(
                account, mailbox, load_more=delta_message_count != 0, ui_refresh=ui_refresh
            )
        except MessagingError as e:
            result.status = SyncStatus.from_error(e)
            result.error = str(e)
            logger.warning(
                f"Sync of {mailbox.server_id} ({account.name}) ended with "
                f"{result.status.name}: {e}"
            )
        finally:
            await self.repo.update_mailbox_sync_status(
                mailbox.id, UiSyncStatus.NONE, sync_time=self.clock.now_ms()
            )
        return result

    async def sync_account(self, account_id: int, ui_refresh: bool = False) -> AccountSyncResult:
        """
        Refresh the folder list, then sync every push mailbox of an account
        (the inbox when there are none).
        """
        result = AccountSyncResult(account_id=account_id)
        account = await self.repo.get_account(account_id)
        if account is None or not account.enabled:
            return result

        try:
            await self.folders.sync_folders(account)
            # Search results may now resolve to mailboxes that did not exist before
            self.upsyncer.mailboxes.clear()
        except MessagingError as e:
            logger.warning(f"Could not refresh folders of {account.name}: {e}")
        finally:
            await self.stores(account).close_connections()

        mailbox_ids = [m.id for m in await self.repo.get_sync_mailboxes(account.id)]
        if not mailbox_ids:
            inbox = await self.repo.get_mailbox_by_type(account.id, MailboxType.INBOX)
            if inbox is not None:
                mailbox_ids = [inbox.id]

        for mailbox_id in mailbox_ids:
            result.mailboxes.append(await self.sync_mailbox(mailbox_id, ui_refresh=ui_refresh))
        return result

    async def sync_pending_updates(self, account_id: int) -> list[SyncResult]:
        """Sync every mailbox that holds pending local updates."""
        mailbox_ids: list[int] = []
        for message in await self.repo.get_pending_updates(account_id):
            if message.mailbox_id not in mailbox_ids:
                mailbox_ids.append(message.mailbox_id)
        return [await self.sync_mailbox(mailbox_id) for mailbox_id in mailbox_ids]

    def request_sync(self, account: Account, mailbox_id: int, full: bool) -> asyncio.Task:
        """Run sync_mailbox() in the background. `full` forces a full sync."""
        logger.debug(f"Sync requested for mailbox {mailbox_id} ({account.name}, full={full})")
        return self.pool.spawn(
            self.sync_mailbox(mailbox_id, ui_refresh=full),
            name=f"sync-{mailbox_id}",
        )
