# =============================================================================
# Sync Service
# =============================================================================
# Builds the sync engine out of its parts and owns their lifetime.
#
# Key responsibilities:
#   - Wire repository, stores, planner, engine, upsyncer, orchestrator and
#     IDLE supervisor together
#   - Import the configured accounts into the database
#   - Start and stop push
#
# Design notes:
#   - Everything is created here and handed down, nothing reaches for
#     globals. Tests build a SyncService over a fake store provider.
#   - The change observer is attached only while push runs, so a one-shot
#     sync does not react to its own account import.
# =============================================================================

import logging

from osprey.clock import Clock
from osprey.config import Config
from osprey.connectivity import ConnectivityMonitor
from osprey.core import Account, Mailbox, MailboxType
from osprey.imap.idle import IdleConnectionSupervisor
from osprey.imap.store import StoreCache
from osprey.notifications import NotificationSink
from osprey.observer import ChangeObserver
from osprey.scheduling import AlarmScheduler, WorkerPool
from osprey.storage import AttachmentStore, Database, Repository
from osprey.sync.folders import FolderListSynchronizer
from osprey.sync.loader import MessageLoader
from osprey.sync.orchestrator import SyncOrchestrator
from osprey.sync.reconcile import ReconciliationEngine
from osprey.sync.search import RemoteSearcher
from osprey.sync.upsync import PendingChangeUpsyncer
from osprey.sync.window import SyncWindowPlanner

logger = logging.getLogger(__name__)

# Server path of the local mailbox that receives search results
SEARCH_MAILBOX_ID = "__search__"


class SyncService:
    """
    The assembled sync engine.

    Usage:
        >>> service = SyncService(Config.load())
        >>> await service.start()
        >>> await service.orchestrator.sync_account(account.id)
        >>> await service.close()

    Attributes:
        config: Loaded configuration.
        repo: Local message store.
        stores: Per-account RemoteStore cache.
        orchestrator: Sync entry points.
        supervisor: IDLE connections.
        searcher: Remote search.
    """

    def __init__(
        self,
        config: Config,
        db: Database | None = None,
        stores: StoreCache | None = None,
        attachments: AttachmentStore | None = None,
        connectivity: ConnectivityMonitor | None = None,
        notifications: NotificationSink | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or Clock()
        self.db = db or Database()
        self.repo = Repository(self.db)
        self.stores = stores or StoreCache()
        self.attachments = attachments or AttachmentStore()
        self.connectivity = connectivity or ConnectivityMonitor()
        self.notifications = notifications or NotificationSink(config.notifications)

        self.pool = WorkerPool()
        self.alarms = AlarmScheduler(self.pool)

        self.planner = SyncWindowPlanner(config.sync, self.clock)
        self.loader = MessageLoader(self.repo)
        self.engine = ReconciliationEngine(
            self.repo, self.stores, self.planner, self.loader,
            self.attachments, config.sync, self.clock,
        )
        self.upsyncer = PendingChangeUpsyncer(self.repo, self.stores)
        self.folders = FolderListSynchronizer(self.repo, self.stores)
        self.searcher = RemoteSearcher(self.repo, self.stores, self.loader)

        self.orchestrator = SyncOrchestrator(
            self.repo, self.stores, self.upsyncer, self.engine, self.planner,
            self.folders, self.notifications, self.pool, config.sync, self.clock,
        )
        self.supervisor = IdleConnectionSupervisor(
            self.repo, self.stores, self.alarms, self.pool,
            self.connectivity, self.notifications, config.idle,
        )
        self.orchestrator.bind_supervisor(self.supervisor)
        self.observer = ChangeObserver(self.repo, self.supervisor, self.orchestrator, self.pool)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Open the database and import the configured accounts."""
        await self.db.connect()
        await self.import_accounts()

    async def close(self) -> None:
        """Stop push, wait for background work and close everything."""
        self.repo.change_listener = None
        self.alarms.cancel_all()
        await self.supervisor.unregister_all_idled_mailboxes(disconnect=True)
        await self.pool.drain()
        await self.stores.close_all()
        await self.db.close()

    async def import_accounts(self) -> list[Account]:
        """
        Insert or update the accounts from the configuration.

        Returns:
            The stored accounts, with ids.
        """
        accounts = []
        for name, account in self.config.accounts.items():
            existing = await self.repo.get_account_by_name(name)
            if existing is not None:
                account.id = existing.id
            accounts.append(await self.repo.save_account(account))
        return accounts

    async def start_push(self) -> None:
        """Follow local changes and register IDLE on every push account."""
        self.repo.change_listener = self.observer.on_change
        for account in await self.repo.get_all_accounts():
            if account.is_push and account.enabled:
                await self.supervisor.register_account_for_idle(account)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def get_search_mailbox(self, account: Account) -> Mailbox:
        """The account's search-results mailbox, created on first use."""
        mailbox = await self.repo.get_mailbox_by_type(account.id, MailboxType.SEARCH)
        if mailbox is None:
            mailbox = await self.repo.save_mailbox(Mailbox(
                server_id=SEARCH_MAILBOX_ID,
                account_id=account.id,
                display_name="Search",
                mailbox_type=MailboxType.SEARCH,
            ))
        return mailbox
