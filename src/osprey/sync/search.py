# =============================================================================
# Remote Search
# =============================================================================
# Runs a server-side search over one mailbox and stores the hits in a local
# SEARCH mailbox.
#
# Design notes:
#   - The first page (offset 0) runs the search and caches the hits per
#     account, newest first. Later pages ("load more") page through the
#     cache instead of searching again.
#   - Hits are stored in the search mailbox but remember where they really
#     live (main_mailbox_id, protocol_search_info), so upsync can apply
#     changes to the right server folder.
# =============================================================================

import logging

from osprey.core import Account, Mailbox, Message, MessagingError, UiSyncStatus
from osprey.imap.folder import (
    FetchItem,
    FetchProfile,
    OpenMode,
    RemoteMessage,
    SearchParams,
)
from osprey.storage.repository import Repository
from osprey.sync.loader import MessageLoader, copy_remote_fields
from osprey.sync.reconcile import StoreProvider

logger = logging.getLogger(__name__)


class RemoteSearcher:
    """
    Server-side search with a per-account result cache.

    Usage:
        >>> searcher = RemoteSearcher(repo, stores, loader)
        >>> total = await searcher.search_mailbox(
        ...     account.id, SearchParams("invoice"), inbox.id, search_box.id)
    """

    def __init__(self, repo: Repository, stores: StoreProvider, loader: MessageLoader) -> None:
        self.repo = repo
        self.stores = stores
        self.loader = loader
        self._results: dict[int, list[RemoteMessage]] = {}  # account_id -> hits

    def cached_results(self, account_id: int) -> list[RemoteMessage]:
        return list(self._results.get(account_id, []))

    async def search_mailbox(
        self,
        account_id: int,
        params: SearchParams,
        mailbox_id: int,
        dest_mailbox_id: int,
    ) -> int:
        """
        Search a mailbox on the server and load one page of hits.

        Args:
            account_id: Account to search in.
            params: Query plus the page to load.
            mailbox_id: Mailbox whose server folder is searched.
            dest_mailbox_id: SEARCH mailbox receiving the hits.

        Returns:
            Total number of hits, 0 if the search could not run.
        """
        account = await self.repo.get_account(account_id)
        mailbox = await self.repo.get_mailbox(mailbox_id)
        dest = await self.repo.get_mailbox(dest_mailbox_id)
        if account is None or mailbox is None or dest is None:
            logger.debug(f"Search skipped: account or mailbox missing ({params.query!r})")
            return 0

        await self.repo.update_mailbox_sync_status(dest.id, UiSyncStatus.LIVE_QUERY)
        store = self.stores(account)
        try:
            return await self._search(account, mailbox, dest, params)
        except MessagingError as e:
            logger.warning(f"Search in {mailbox.server_id} ({account.name}) failed: {e}")
            return 0
        finally:
            await store.close_connections()
            await self.repo.update_mailbox_sync_status(dest.id, UiSyncStatus.NONE)

    async def _search(
        self, account: Account, mailbox: Mailbox, dest: Mailbox, params: SearchParams
    ) -> int:
        folder = self.stores(account).get_folder(mailbox.server_id)
        await folder.open(OpenMode.READ_WRITE)
        try:
            if params.offset == 0:
                hits = await folder.search(params)
                hits.sort(key=lambda remote: int(remote.uid), reverse=True)
                self._results[account.id] = hits
                for row in await self.repo.get_messages(dest.id):
                    await self.repo.delete_message(row.id)
            else:
                # An empty first page leaves nothing cached to page through
                hits = self._results.get(account.id, [])

            total = len(hits)
            await self.repo.update_mailbox_message_count(dest.id, total)
            page = hits[params.offset:params.offset + params.limit]
            if not page:
                return total

            await folder.fetch(page, FetchProfile.of(FetchItem.FLAGS, FetchItem.ENVELOPE))
            for remote in page:
                row = await self.repo.get_message_by_server_id(dest.id, remote.uid)
                if row is None:
                    row = Message(account_id=account.id, mailbox_id=dest.id)
                copy_remote_fields(row, remote)
                row.main_mailbox_id = mailbox.id
                row.protocol_search_info = mailbox.server_id
                await self.repo.save_message(row)

            await self.loader.load_unsynced_messages(folder, account, page, dest)
            logger.info(
                f"Search {params.query!r} in {mailbox.server_id}: {total} hits, "
                f"loaded {len(page)} from offset {params.offset}"
            )
            return total
        finally:
            await folder.close()
