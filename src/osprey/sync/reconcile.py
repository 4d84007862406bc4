# =============================================================================
# Reconciliation Engine
# =============================================================================
# Brings one local mailbox in line with its server folder.
#
# Sync strategy (one pass):
#   1. Make sure TRASH/SENT exist on the server
#   2. Open the folder, record its message count
#   3. List the planned time window, widening it if needed
#   4. Diff the listing against a fresh local snapshot keyed by server id
#   5. Download envelopes for unsynced messages, newest first
#   6. Refresh flags for the rest and copy server flag changes down
#   7. Delete local rows inside the window that the server no longer has
#   8. Load bodies for the unsynced messages
#   9. Stamp the full-sync time
#
# Design notes:
#   - Local-only rows (no server id yet) are never part of the diff, so
#     reconciliation neither overwrites nor deletes them
#   - Rows older than the window floor are never deleted, even if the
#     server listing does not mention them
#   - Remote errors propagate and end the pass. Whatever was already
#     written stays written; the next pass diffs against server truth again.
# =============================================================================

import logging
from dataclasses import dataclass, field
from typing import Callable

import aiosqlite

from osprey.clock import Clock
from osprey.config import SyncConfig
from osprey.core import (
    LOCAL_SERVER_ID_PREFIX,
    Account,
    LoadState,
    LocalMessageInfo,
    Mailbox,
    MailboxType,
    Message,
    MessageFlags,
    MessagingError,
)
from osprey.imap.folder import (
    FetchItem,
    FetchProfile,
    Flag,
    OpenMode,
    RemoteFolder,
    RemoteMessage,
    RemoteStore,
)
from osprey.storage.attachments import AttachmentStore
from osprey.storage.repository import Repository
from osprey.sync.loader import MessageLoader, copy_remote_fields
from osprey.sync.window import SyncWindowPlanner

logger = logging.getLogger(__name__)

# Hands out the RemoteStore of an account
StoreProvider = Callable[[Account], RemoteStore]

# Mailboxes that are created on the server when missing
_AUTO_CREATED_TYPES = (MailboxType.TRASH, MailboxType.SENT)

# Local rows in these states still need their envelope and body
_NEEDS_LOAD = (LoadState.UNLOADED, LoadState.PARTIAL)


@dataclass
class ReconcileResult:
    """
    What a reconciliation pass changed locally.

    Attributes:
        skipped: The mailbox was not reconciled at all.
        full_sync: The pass used the full lookback window.
        new_messages: Rows created from the server.
        updated_messages: Rows whose flags were changed to match the server.
        deleted_messages: Rows removed because the server lost them.
        loaded_messages: Rows whose body was downloaded.
        unseen_ids: Ids of newly created unread rows.
    """
    skipped: bool = False
    full_sync: bool = False
    new_messages: int = 0
    updated_messages: int = 0
    deleted_messages: int = 0
    loaded_messages: int = 0
    unseen_ids: list[int] = field(default_factory=list)


class ReconciliationEngine:
    """
    Pulls server state into the local store.

    Usage:
        >>> engine = ReconciliationEngine(repo, stores, planner, loader, attachments, settings)
        >>> result = await engine.reconcile(account, inbox, ui_refresh=True)
        >>> await engine.reconcile_uids(account, inbox, ["4711", "4712"])

    Attributes:
        repo: Local message store.
        stores: Callable returning the RemoteStore of an account.
    """

    def __init__(
        self,
        repo: Repository,
        stores: StoreProvider,
        planner: SyncWindowPlanner,
        loader: MessageLoader,
        attachments: AttachmentStore,
        settings: SyncConfig,
        clock: Clock | None = None,
    ) -> None:
        self.repo = repo
        self.stores = stores
        self.planner = planner
        self.loader = loader
        self.attachments = attachments
        self.settings = settings
        self.clock = clock or Clock()

    async def reconcile(
        self,
        account: Account,
        mailbox: Mailbox,
        load_more: bool = False,
        ui_refresh: bool = False,
    ) -> ReconcileResult:
        """
        Run one reconciliation pass over a mailbox.

        Args:
            account: Owning account.
            mailbox: Mailbox to reconcile.
            load_more: The user asked for older messages.
            ui_refresh: The user asked for a refresh (forces a full sync).

        Returns:
            ReconcileResult describing the local changes.

        Raises:
            MessagingError: On any remote failure. Progress already stored
                            is kept.
        """
        result = ReconcileResult()
        if not mailbox.loads_from_server:
            logger.debug(f"Not reconciling {mailbox.mailbox_type.name} mailbox {mailbox.server_id}")
            result.skipped = True
            return result

        store = self.stores(account)
        folder = store.get_folder(mailbox.server_id)

        if mailbox.mailbox_type in _AUTO_CREATED_TYPES and not await folder.exists():
            if not await folder.create():
                logger.error(f"Could not create {mailbox.server_id} on the server, skipping sync")
                result.skipped = True
                return result

        await folder.open(OpenMode.READ_WRITE)
        try:
            count = await folder.get_message_count()
            await self.repo.update_mailbox_message_count(mailbox.id, count)
            mailbox.total_messages = count

            plan = self.planner.plan(account, mailbox, load_more=load_more, ui_refresh=ui_refresh)
            window = await self.planner.expand_window(folder, plan)
            result.full_sync = plan.full_sync

            index = await self._local_index(account, mailbox)

            # Newest first, so the most recent mail shows up first
            unsynced = [
                remote for remote in reversed(window.messages)
                if self._needs_sync(index.get(remote.uid))
            ]
            logger.debug(
                f"{mailbox.server_id}: {len(window.messages)} remote, {len(index)} local, "
                f"{len(unsynced)} unsynced"
            )

            if unsynced:
                await folder.fetch(unsynced, FetchProfile.of(FetchItem.FLAGS, FetchItem.ENVELOPE))
                created, unseen = await self._store_envelopes(account, mailbox, unsynced, index)
                result.new_messages = created
                result.unseen_ids = unseen

            unsynced_uids = {remote.uid for remote in unsynced}
            remaining = [remote for remote in window.messages if remote.uid not in unsynced_uids]
            chunk = self.settings.max_messages_to_fetch
            for i in range(0, len(remaining), chunk):
                await folder.fetch(remaining[i:i + chunk], FetchProfile.of(FetchItem.FLAGS))

            result.updated_messages = await self._sync_flags(folder, remaining, index)

            # Server-deleted messages are treated as gone
            remote_uids = {
                remote.uid for remote in window.messages if not remote.is_set(Flag.DELETED)
            }
            unsynced = [remote for remote in unsynced if remote.uid in remote_uids]

            for info in index.values():
                if info.timestamp >= window.end_date and info.server_id not in remote_uids:
                    await self._delete_local(account, info)
                    result.deleted_messages += 1

            result.loaded_messages = await self.loader.load_unsynced_messages(
                folder, account, unsynced, mailbox
            )

            if plan.full_sync:
                mailbox.last_full_sync_time = self.clock.elapsed_ms()
                await self.repo.update_last_full_sync_time(mailbox.id, mailbox.last_full_sync_time)
        finally:
            await self._close(folder)

        logger.info(
            f"Reconciled {mailbox.server_id} ({account.name}): {result.new_messages} new, "
            f"{result.updated_messages} updated, {result.deleted_messages} deleted"
        )
        return result

    async def reconcile_uids(
        self,
        account: Account,
        mailbox: Mailbox,
        uids: list[str],
        folder: RemoteFolder | None = None,
    ) -> ReconcileResult:
        """
        Reconcile only the given uids (the IDLE fast path).

        Args:
            account: Owning account.
            mailbox: Mailbox holding the uids.
            uids: Server ids reported as changed.
            folder: The idled folder handle, reused when it is no longer
                    idling.

        Returns:
            ReconcileResult describing the local changes.

        Raises:
            MessagingError: On any remote failure.
        """
        result = ReconcileResult()
        owned = folder is None or folder.is_idling
        if owned:
            folder = self.stores(account).get_folder(mailbox.server_id)

        await folder.open(OpenMode.READ_WRITE)
        try:
            remote_messages = await folder.get_messages_by_uids(uids)
            await folder.fetch(remote_messages, FetchProfile.of(FetchItem.FLAGS))

            index: dict[str, LocalMessageInfo] = {}
            for uid in uids:
                info = await self.repo.get_local_message_info(account.id, mailbox.id, uid)
                if info is not None:
                    index[uid] = info

            unsynced = [
                remote for remote in reversed(remote_messages)
                if self._needs_sync(index.get(remote.uid))
            ]
            if unsynced:
                await folder.fetch(unsynced, FetchProfile.of(FetchItem.ENVELOPE))
                created, unseen = await self._store_envelopes(account, mailbox, unsynced, index)
                result.new_messages = created
                result.unseen_ids = unseen

            unsynced_uids = {remote.uid for remote in unsynced}
            remaining = [remote for remote in remote_messages if remote.uid not in unsynced_uids]
            result.updated_messages = await self._sync_flags(folder, remaining, index)

            # Gone from the server or marked deleted there
            live = {remote.uid for remote in remote_messages if not remote.is_set(Flag.DELETED)}
            for uid, info in index.items():
                if uid not in live:
                    await self._delete_local(account, info)
                    result.deleted_messages += 1
            unsynced = [remote for remote in unsynced if remote.uid in live]

            result.loaded_messages = await self.loader.load_unsynced_messages(
                folder, account, unsynced, mailbox
            )

            # Changes can concern messages older than what this mailbox keeps
            floor = self.planner.lookback_end_date(account, mailbox)
            for uid in live:
                info = await self.repo.get_local_message_info(account.id, mailbox.id, uid)
                if info is not None and info.timestamp < floor:
                    await self._delete_local(account, info)
                    result.deleted_messages += 1
        finally:
            if owned:
                await self._close(folder)

        logger.info(
            f"Fetched changes for {len(uids)} uids in {mailbox.server_id}: "
            f"{result.new_messages} new, {result.updated_messages} updated, "
            f"{result.deleted_messages} deleted"
        )
        return result

    # =========================================================================
    # Steps
    # =========================================================================

    async def _local_index(self, account: Account, mailbox: Mailbox) -> dict[str, LocalMessageInfo]:
        """Snapshot of the mailbox keyed by server id, local-only rows left out."""
        # Floor at 0 rather than the window: legacy rows may carry timestamp 0
        infos = await self.repo.get_local_message_infos(account.id, mailbox.id, min_timestamp=0)
        return {
            info.server_id: info for info in infos
            if info.server_id and not info.server_id.startswith(LOCAL_SERVER_ID_PREFIX)
        }

    @staticmethod
    def _needs_sync(info: LocalMessageInfo | None) -> bool:
        return info is None or info.load_state in _NEEDS_LOAD

    async def _store_envelopes(
        self,
        account: Account,
        mailbox: Mailbox,
        unsynced: list[RemoteMessage],
        index: dict[str, LocalMessageInfo],
    ) -> tuple[int, list[int]]:
        """
        Create or refresh rows for fetched envelopes.

        Returns:
            (rows created, ids of new unread rows)
        """
        created = 0
        unseen: list[int] = []
        for remote in unsynced:
            info = index.get(remote.uid)
            if info is None and remote.is_set(Flag.DELETED):
                continue

            try:
                row = await self.repo.get_message(info.id) if info is not None else None
                if row is None:
                    row = Message(account_id=account.id, mailbox_id=mailbox.id)
                copy_remote_fields(row, remote)
                is_new = row.id is None
                await self.repo.save_message(row)
            except aiosqlite.Error as e:
                logger.error(f"Could not store message {remote.uid} of {mailbox.server_id}: {e}")
                continue

            if is_new:
                created += 1
                if not row.flag_read:
                    unseen.append(row.id)
        return created, unseen

    async def _sync_flags(
        self,
        folder: RemoteFolder,
        messages: list[RemoteMessage],
        index: dict[str, LocalMessageInfo],
    ) -> int:
        """
        Copy server flag changes onto local rows.

        A flag is only synced when the folder reports it as permanent.

        Returns:
            Number of rows changed.
        """
        if not messages:
            return 0
        permanent = await folder.get_permanent_flags()
        sync_read = Flag.SEEN in permanent
        sync_favorite = Flag.FLAGGED in permanent
        sync_answered = Flag.ANSWERED in permanent

        updated = 0
        for remote in messages:
            info = index.get(remote.uid)
            if info is None or remote.is_set(Flag.DELETED):
                continue

            changes = {}
            read = remote.is_set(Flag.SEEN)
            if sync_read and read != info.flag_read:
                changes["flag_read"] = read
            favorite = remote.is_set(Flag.FLAGGED)
            if sync_favorite and favorite != info.flag_favorite:
                changes["flag_favorite"] = favorite
            answered = remote.is_set(Flag.ANSWERED)
            if sync_answered and answered != bool(info.flags & MessageFlags.REPLIED_TO):
                if answered:
                    changes["flags"] = info.flags | MessageFlags.REPLIED_TO
                else:
                    changes["flags"] = info.flags & ~MessageFlags.REPLIED_TO

            if changes:
                await self.repo.update_message(info.id, **changes)
                updated += 1
        return updated

    async def _delete_local(self, account: Account, info: LocalMessageInfo) -> None:
        """Remove a row the server no longer has, with its files and shadow rows."""
        logger.debug(f"Deleting local message {info.id} (server id {info.server_id})")
        self.attachments.delete_all_attachment_files(account.id, info.id)
        await self.repo.delete_message_and_shadows(info.id)

    async def _close(self, folder: RemoteFolder) -> None:
        try:
            await folder.close(expunge=False)
        except MessagingError as e:
            logger.warning(f"Could not close {folder.server_id}: {e}")
