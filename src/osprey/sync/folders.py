# =============================================================================
# Folder List Sync
# =============================================================================
# Mirrors the server's folder list into local mailboxes before an account
# sync: new folders become mailboxes, vanished ones are removed.
#
# Local-only mailboxes (drafts, outbox, search) never appear on the server
# and are left alone. So are TRASH and SENT, which reconciliation creates on
# the server when they are missing.
# =============================================================================

import logging

from osprey.core import Account, Mailbox, MailboxType
from osprey.storage.repository import Repository
from osprey.sync.reconcile import StoreProvider

logger = logging.getLogger(__name__)

# Mailboxes kept even when the server does not list them
_KEPT_TYPES = (
    MailboxType.DRAFTS,
    MailboxType.OUTBOX,
    MailboxType.SEARCH,
    MailboxType.TRASH,
    MailboxType.SENT,
)

# An account holds at most one mailbox of each of these
_SINGLE_TYPES = (MailboxType.INBOX, MailboxType.TRASH)


class FolderListSynchronizer:
    """
    Keeps an account's mailboxes in line with the server folder list.

    Usage:
        >>> folders = FolderListSynchronizer(repo, stores)
        >>> mailboxes = await folders.sync_folders(account)
    """

    def __init__(self, repo: Repository, stores: StoreProvider) -> None:
        self.repo = repo
        self.stores = stores

    async def sync_folders(self, account: Account) -> list[Mailbox]:
        """
        Create, update and remove local mailboxes to match the server.

        Returns:
            The account's mailboxes afterwards.

        Raises:
            MessagingError: If the folder list cannot be read.
        """
        server_folders = await self.stores(account).list_folders()
        local_mailboxes = await self.repo.get_mailboxes(account.id)
        local_by_path = {m.server_id: m for m in local_mailboxes}
        server_paths = {f.server_id for f in server_folders}
        taken = {m.mailbox_type for m in local_mailboxes if m.mailbox_type in _SINGLE_TYPES}

        for info in server_folders:
            local = local_by_path.get(info.server_id)
            mailbox_type = info.mailbox_type
            if mailbox_type in taken:
                mailbox_type = MailboxType.MAIL
            elif mailbox_type in _SINGLE_TYPES:
                taken.add(mailbox_type)

            if local is None:
                mailbox = Mailbox(
                    server_id=info.server_id,
                    account_id=account.id,
                    mailbox_type=mailbox_type,
                )
                # The inbox takes part in push by default
                if mailbox_type == MailboxType.INBOX:
                    mailbox.sync_interval = 1
                logger.info(f"New folder {info.server_id} ({account.name})")
                await self.repo.save_mailbox(mailbox)
            elif local.mailbox_type == MailboxType.MAIL and mailbox_type != MailboxType.MAIL:
                local.mailbox_type = mailbox_type
                await self.repo.save_mailbox(local)

        for local in local_mailboxes:
            if local.server_id in server_paths or local.mailbox_type in _KEPT_TYPES:
                continue
            logger.info(f"Removing deleted folder: {local.server_id} ({account.name})")
            await self.repo.delete_mailbox(local.id)

        return await self.repo.get_mailboxes(account.id)
