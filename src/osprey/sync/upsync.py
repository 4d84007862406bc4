# =============================================================================
# Pending Change Upsync
# =============================================================================
# Replays local edits against the server before anything is downloaded, so a
# sync never overwrites what the user just did.
#
# Phases, always in this order:
#   1. Deletes: rows the user deleted (message_deletes shadow table)
#   2. Uploads: local-only messages sitting in SENT mailboxes
#   3. Updates: rows the user changed (message_updates shadow table)
#
# Design notes:
#   - Deletes run first so nothing is flag-synced that is about to vanish
#   - A MessagingError ends the phase it happened in; the shadow rows of the
#     unprocessed messages stay and are retried on the next pass. Each phase
#     reports its outcome in an UpsyncResult instead of raising.
#   - Uploads are judged per message: a server rejection skips the message,
#     a connection or login failure ends the phase
#   - Search results live in a SEARCH mailbox locally; their real server
#     folder is found through protocol_search_info
# =============================================================================

import logging
from dataclasses import dataclass, field
from enum import Enum, auto

from osprey.core import (
    Account,
    ErrorKind,
    Mailbox,
    MailboxType,
    Message,
    MessageFlags,
    MessagingError,
)
from osprey.imap.folder import (
    CopyStatus,
    FetchItem,
    FetchProfile,
    Flag,
    OpenMode,
    RemoteFolder,
    RemoteStore,
)
from osprey.storage.repository import Repository
from osprey.sync.reconcile import StoreProvider

logger = logging.getLogger(__name__)

# Mailboxes whose messages are never appended to the server
_NO_UPLOAD_TYPES = (MailboxType.DRAFTS, MailboxType.OUTBOX, MailboxType.TRASH)

# Mailboxes whose changes are never pushed to the server
_LOCAL_ONLY_TYPES = (MailboxType.DRAFTS, MailboxType.OUTBOX)


class UpsyncPhase(Enum):
    DELETES = auto()
    UPLOADS = auto()
    UPDATES = auto()


@dataclass
class PhaseResult:
    """
    Outcome of one upsync phase.

    Attributes:
        phase: Which phase this is.
        processed: Pending rows handled (and removed).
        skipped: Messages left in place for a later pass.
        error: Kind of the failure that ended the phase early, if any.
    """
    phase: UpsyncPhase
    processed: int = 0
    skipped: int = 0
    error: ErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class UpsyncResult:
    """Per-phase results of one upsync, in execution order."""
    phases: list[PhaseResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(phase.ok for phase in self.phases)

    def get(self, phase: UpsyncPhase) -> PhaseResult | None:
        for result in self.phases:
            if result.phase == phase:
                return result
        return None


@dataclass(frozen=True)
class MessageChanges:
    """What differs between a pending-update snapshot and the current row."""
    move_to_trash: bool = False
    mailbox: bool = False
    read: bool = False
    favorite: bool = False
    answered: bool = False

    @property
    def data_changed(self) -> bool:
        return self.mailbox or self.read or self.favorite or self.answered

    @classmethod
    def diff(cls, old: Message, new: Message, new_mailbox: Mailbox) -> "MessageChanges":
        moved = old.mailbox_id != new.mailbox_id
        to_trash = moved and new_mailbox.mailbox_type == MailboxType.TRASH
        return cls(
            move_to_trash=to_trash,
            mailbox=moved and not to_trash,
            read=old.flag_read != new.flag_read,
            favorite=old.flag_favorite != new.flag_favorite,
            answered=old.is_answered != new.is_answered,
        )


class RemoteMailboxCache:
    """
    Resolves the mailbox a message really lives in on the server.

    Search results are looked up by (account, server path), and those
    lookups are cached for the lifetime of the upsyncer.
    """

    def __init__(self, repo: Repository) -> None:
        self.repo = repo
        self._search_mailboxes: dict[tuple[int, str], Mailbox | None] = {}

    async def resolve(self, message: Message) -> Mailbox | None:
        if not message.protocol_search_info:
            return await self.repo.get_mailbox(message.mailbox_id)

        key = (message.account_id, message.protocol_search_info)
        if key not in self._search_mailboxes:
            self._search_mailboxes[key] = await self.repo.get_mailbox_by_server_id(*key)
        return self._search_mailboxes[key]

    def clear(self) -> None:
        self._search_mailboxes.clear()


class PendingChangeUpsyncer:
    """
    Pushes pending local changes of an account to the server.

    Usage:
        >>> upsyncer = PendingChangeUpsyncer(repo, stores)
        >>> result = await upsyncer.upsync(account)
        >>> result.ok
        True

    Attributes:
        repo: Local message store holding the pending rows.
        stores: Callable returning the RemoteStore of an account.
        mailboxes: Cache for resolving search results to real mailboxes.
    """

    def __init__(self, repo: Repository, stores: StoreProvider) -> None:
        self.repo = repo
        self.stores = stores
        self.mailboxes = RemoteMailboxCache(repo)

    async def upsync(self, account: Account, manual_sync: bool = False) -> UpsyncResult:
        """
        Replay deletes, uploads and updates of an account, in that order.

        Args:
            account: Account to upsync.
            manual_sync: The user triggered this sync.

        Returns:
            UpsyncResult with one PhaseResult per phase.
        """
        store = self.stores(account)
        result = UpsyncResult()
        result.phases.append(await self._process_deletes(account, store))
        result.phases.append(await self._process_uploads(account, store, manual_sync))
        result.phases.append(await self._process_updates(account, store))

        for phase in result.phases:
            if not phase.ok:
                logger.warning(
                    f"Upsync of {account.name}: {phase.phase.name.lower()} stopped "
                    f"after {phase.processed} ({phase.error.name})"
                )
        return result

    # =========================================================================
    # Deletes
    # =========================================================================

    async def _process_deletes(self, account: Account, store: RemoteStore) -> PhaseResult:
        result = PhaseResult(UpsyncPhase.DELETES)
        try:
            for old in await self.repo.get_pending_deletes(account.id):
                mailbox = await self.mailboxes.resolve(old)
                # Messages deleted anywhere but the trash already went
                # through a move-to-trash update
                if mailbox is not None and mailbox.mailbox_type == MailboxType.TRASH:
                    await self._delete_from_trash(store, mailbox, old)
                await self.repo.remove_pending_delete(old.id)
                result.processed += 1
        except MessagingError as e:
            logger.debug(f"Pending deletes of {account.name} stopped: {e}")
            result.error = e.kind
        return result

    async def _delete_from_trash(self, store: RemoteStore, trash: Mailbox, old: Message) -> None:
        if old.is_local_only:
            return
        folder = store.get_folder(trash.server_id)
        if not await folder.exists():
            return
        await folder.open(OpenMode.READ_WRITE)
        try:
            remote = await folder.get_message(old.server_id)
            if remote is None:
                return
            await folder.set_flags([remote], {Flag.DELETED}, True)
            await folder.expunge()
            logger.debug(f"Deleted message {old.server_id} from {trash.server_id}")
        finally:
            await folder.close(expunge=False)

    # =========================================================================
    # Uploads
    # =========================================================================

    async def _process_uploads(
        self, account: Account, store: RemoteStore, manual_sync: bool,
    ) -> PhaseResult:
        result = PhaseResult(UpsyncPhase.UPLOADS)
        try:
            for mailbox in await self.repo.get_mailboxes_by_type(account.id, MailboxType.SENT):
                try:
                    for pending in await self.repo.get_local_only_messages(mailbox.id):
                        try:
                            if await self._upload_message(store, mailbox, pending.id, manual_sync):
                                result.processed += 1
                            else:
                                result.skipped += 1
                        except MessagingError as e:
                            if e.kind != ErrorKind.SERVER_ERROR:
                                raise
                            logger.warning(f"Upload of message {pending.id} rejected: {e}")
                            result.skipped += 1
                finally:
                    await store.close_connections()
        except MessagingError as e:
            logger.debug(f"Pending uploads of {account.name} stopped: {e}")
            result.error = e.kind
        return result

    async def _upload_message(
        self, store: RemoteStore, mailbox: Mailbox, message_id: int, manual_sync: bool,
    ) -> bool:
        """
        Upload one message and clear its pending update.

        Returns:
            False if the message was left alone for a later pass.
        """
        message = await self.repo.get_message(message_id)
        if message is None:
            logger.debug(f"Upload of message {message_id} dropped, the row is gone")
            await self.repo.remove_pending_update(message_id)
            return True
        if mailbox.mailbox_type in _NO_UPLOAD_TYPES:
            logger.debug(f"Upload of message {message_id} skipped for {mailbox.mailbox_type.name}")
            return False
        if message.mailbox_id != mailbox.id:
            # Left for the updates phase, which sees it as a move
            logger.debug(f"Upload of message {message_id} skipped, mailbox changed")
            return False

        logger.debug(f"Uploading message {message_id} to {mailbox.server_id}")
        if not await self._append(store, mailbox, message, manual_sync):
            return False
        await self.repo.remove_pending_update(message_id)
        return True

    async def _append(
        self, store: RemoteStore, mailbox: Mailbox, message: Message, manual_sync: bool,
    ) -> bool:
        """
        Append a message to its server folder.

        Uploads only pass messages without a server id. A message that does
        carry one keeps whichever copy has the later internal date: a newer
        server copy wins and the local row is dropped, otherwise the message
        is appended again and the stale server copy flagged deleted.

        Returns:
            False if the folder could not be created.
        """
        folder = store.get_folder(mailbox.server_id)
        if not await folder.exists() and not await folder.create():
            return False
        await folder.open(OpenMode.READ_WRITE)
        try:
            remote = None
            if not message.is_local_only:
                remote = await folder.get_message(message.server_id)

            if remote is None:
                message.server_id = await folder.append_message(message)
            else:
                await folder.fetch([remote], FetchProfile.of(FetchItem.ENVELOPE))
                remote_ms = (
                    int(remote.internal_date.timestamp() * 1000) if remote.internal_date else 0
                )
                if remote.internal_date is not None and remote_ms > message.server_timestamp:
                    # The server copy is newer; the next sync brings it down
                    logger.debug(f"Server copy of message {message.id} is newer, dropping ours")
                    await self.repo.delete_message(message.id)
                    return True
                message.server_id = await folder.append_message(message)
                await folder.set_flags([remote], {Flag.DELETED}, True)

            await self._capture_internal_date(folder, message)
            await self.repo.update_message(
                message.id,
                server_id=message.server_id,
                server_timestamp=message.server_timestamp,
            )
            if manual_sync:
                logger.info(f"Uploaded message {message.id} as {message.server_id}")
            return True
        finally:
            await folder.close(expunge=False)

    async def _capture_internal_date(self, folder: RemoteFolder, message: Message) -> None:
        """Best effort: the upload works without it."""
        if not message.server_id:
            return
        try:
            remote = await folder.get_message(message.server_id)
            if remote is None:
                return
            await folder.fetch([remote], FetchProfile.of(FetchItem.ENVELOPE))
        except MessagingError as e:
            logger.debug(f"No internal date for uploaded message {message.id}: {e}")
            return
        if remote.internal_date is not None:
            message.server_timestamp = int(remote.internal_date.timestamp() * 1000)

    # =========================================================================
    # Updates
    # =========================================================================

    async def _process_updates(self, account: Account, store: RemoteStore) -> PhaseResult:
        result = PhaseResult(UpsyncPhase.UPDATES)
        try:
            for old in await self.repo.get_pending_updates(account.id):
                new = await self.repo.get_message(old.id)
                mailbox = await self.repo.get_mailbox(new.mailbox_id) if new else None
                if new is not None and mailbox is not None:
                    changes = MessageChanges.diff(old, new, mailbox)
                    if changes.move_to_trash:
                        await self._move_to_trash(store, mailbox, old, new)
                    elif changes.data_changed:
                        await self._apply_data_change(store, mailbox, changes, old, new)
                await self.repo.remove_pending_update(old.id)
                result.processed += 1
        except MessagingError as e:
            logger.debug(f"Pending updates of {account.name} stopped: {e}")
            result.error = e.kind
        return result

    async def _apply_data_change(
        self,
        store: RemoteStore,
        new_mailbox: Mailbox,
        changes: MessageChanges,
        old: Message,
        new: Message,
    ) -> None:
        """Push flag changes and plain moves of one message."""
        source = await self.mailboxes.resolve(old)
        if new.is_local_only or source is None:
            return
        if source.mailbox_type in _LOCAL_ONLY_TYPES:
            return

        folder = store.get_folder(source.server_id)
        if not await folder.exists():
            return
        await folder.open(OpenMode.READ_WRITE)
        try:
            remote = await folder.get_message(new.server_id)
            if remote is None:
                return
            logger.debug(
                f"Update for message {new.id}: read={new.flag_read} "
                f"favorite={new.flag_favorite} answered={new.is_answered} "
                f"mailbox={new.mailbox_id}"
            )
            if changes.read:
                await folder.set_flags([remote], {Flag.SEEN}, new.flag_read)
            if changes.favorite:
                await folder.set_flags([remote], {Flag.FLAGGED}, new.flag_favorite)
            if changes.answered:
                await folder.set_flags(
                    [remote], {Flag.ANSWERED}, bool(new.flags & MessageFlags.REPLIED_TO)
                )
            if changes.mailbox:
                destination = store.get_folder(new_mailbox.server_id)
                # The destination may have to be searched by Message-ID
                remote.message_id = new.message_id
                for copied in await folder.copy_messages([remote], destination):
                    if copied.status == CopyStatus.UID_CHANGED:
                        await self.repo.update_message(new.id, server_id=copied.new_uid)
                await folder.set_flags([remote], {Flag.DELETED}, True)
                await folder.expunge()
        finally:
            await folder.close(expunge=False)

    async def _move_to_trash(
        self, store: RemoteStore, trash: Mailbox, old: Message, new: Message,
    ) -> None:
        """Copy a message into the server trash and delete it at its source."""
        if new.is_local_only:
            return
        source = await self.mailboxes.resolve(old)
        if source is None or source.mailbox_type == MailboxType.TRASH:
            return

        folder = store.get_folder(source.server_id)
        if not await folder.exists():
            return
        await folder.open(OpenMode.READ_WRITE)
        try:
            remote = await folder.get_message(old.server_id)
            if remote is None:
                return

            trash_folder = store.get_folder(trash.server_id)
            if not await trash_folder.exists():
                await trash_folder.create()
            if await trash_folder.exists():
                await trash_folder.open(OpenMode.READ_WRITE)
                try:
                    for copied in await folder.copy_messages([remote], trash_folder):
                        if copied.status == CopyStatus.UID_CHANGED:
                            await self.repo.update_message(new.id, server_id=copied.new_uid)
                        elif copied.status == CopyStatus.NOT_FOUND:
                            # Already gone on the server
                            await self.repo.delete_message(new.id)
                finally:
                    await trash_folder.close(expunge=False)

            await folder.set_flags([remote], {Flag.DELETED}, True)
            await folder.expunge()
            logger.debug(f"Moved message {new.id} from {source.server_id} to {trash.server_id}")
        finally:
            await folder.close(expunge=False)
