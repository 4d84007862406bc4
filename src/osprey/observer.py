# =============================================================================
# Change Observer
# =============================================================================
# Listens to the repository's change notifications and keeps push in step
# with local edits.
#
#   - Account changes: registering, kicking or dropping the account's IDLE
#     connections
#   - Mailbox changes: (un)registering the mailbox when its push flag flips
#   - Message changes: pushing the user's edit to the server right away
#     (push accounts only, and never while a sync is running)
#
# Notifications arrive synchronously from the repository; the work is done
# on the worker pool.
# =============================================================================

import logging

from osprey.imap.idle import IdleConnectionSupervisor
from osprey.scheduling import WorkerPool
from osprey.storage.repository import ChangeKind, ChangeOp, Repository
from osprey.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class ChangeObserver:
    """
    Reacts to local account, mailbox and message changes.

    Usage:
        >>> observer = ChangeObserver(repo, supervisor, orchestrator, pool)
        >>> repo.change_listener = observer.on_change
    """

    def __init__(
        self,
        repo: Repository,
        supervisor: IdleConnectionSupervisor,
        orchestrator: SyncOrchestrator,
        pool: WorkerPool,
    ) -> None:
        self.repo = repo
        self.supervisor = supervisor
        self.orchestrator = orchestrator
        self.pool = pool

    def on_change(self, kind: ChangeKind, op: ChangeOp, row_id: int) -> None:
        """Repository change listener."""
        self.pool.spawn(
            self.process_change(kind, op, row_id),
            name=f"change-{kind.name.lower()}-{row_id}",
        )

    async def process_change(self, kind: ChangeKind, op: ChangeOp, row_id: int) -> None:
        if kind == ChangeKind.ACCOUNT:
            await self._account_changed(op, row_id)
        elif kind == ChangeKind.MAILBOX:
            await self._mailbox_changed(op, row_id)
        elif kind == ChangeKind.MESSAGE:
            await self._message_changed(op, row_id)

    async def _account_changed(self, op: ChangeOp, account_id: int) -> None:
        if op == ChangeOp.DELETE:
            await self.supervisor.unregister_account_idled_mailboxes(account_id, remove=True)
            return

        account = await self.repo.get_account(account_id)
        if account is None:
            return
        if op == ChangeOp.UPDATE:
            await self.supervisor.kick_account_idled_mailboxes(account)
        elif op == ChangeOp.INSERT and account.is_push:
            await self.supervisor.register_account_for_idle(account)

    async def _mailbox_changed(self, op: ChangeOp, mailbox_id: int) -> None:
        # The row is gone, so deletes are handled before any lookup
        if op == ChangeOp.DELETE:
            await self.supervisor.unregister_idled_mailbox(mailbox_id, remove=True)
            return

        mailbox = await self.repo.get_mailbox(mailbox_id)
        if mailbox is None:
            return
        account = await self.repo.get_account(mailbox.account_id)
        if account is None:
            return

        if op == ChangeOp.UPDATE:
            registered = self.supervisor.is_mailbox_idled(mailbox_id)
            to_register = mailbox.is_push_mailbox and account.is_push
            if registered == to_register:
                return
            if registered:
                await self.supervisor.unregister_idled_mailbox(mailbox_id, remove=True)
            else:
                await self.supervisor.register_mailbox_for_idle(account, mailbox)
        elif op == ChangeOp.INSERT and account.is_push:
            await self.supervisor.register_mailbox_for_idle(account, mailbox)

    async def _message_changed(self, op: ChangeOp, message_id: int) -> None:
        if self.orchestrator.sync_in_progress:
            return
        message = await self.repo.get_message(message_id)
        if message is None:
            # Deleted rows are picked up by the next sync
            return
        account = await self.repo.get_account(message.account_id)
        if account is None or not account.is_push:
            return

        logger.debug(f"Pushing local change of message {message_id} ({account.name})")
        await self.orchestrator.process_pending_actions_synchronous(account)
