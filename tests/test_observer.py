# tests/test_observer.py

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from osprey.core import Account, Mailbox
from osprey.observer import ChangeObserver
from osprey.scheduling import WorkerPool
from osprey.storage.repository import ChangeKind, ChangeOp


@pytest.fixture
def supervisor():
    mock = AsyncMock()
    mock.is_mailbox_idled = MagicMock(return_value=False)
    return mock


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.sync_in_progress = False
    mock.process_pending_actions_synchronous = AsyncMock()
    return mock


@pytest_asyncio.fixture
async def pool():
    workers = WorkerPool()
    yield workers
    await workers.shutdown()


@pytest.fixture
def observer(repo, supervisor, orchestrator, pool):
    return ChangeObserver(repo, supervisor, orchestrator, pool)


@pytest.mark.asyncio
async def test_new_push_account_is_registered(observer, supervisor, account):
    await observer.process_change(ChangeKind.ACCOUNT, ChangeOp.INSERT, account.id)

    supervisor.register_account_for_idle.assert_awaited_once()
    assert supervisor.register_account_for_idle.await_args.args[0].id == account.id


@pytest.mark.asyncio
async def test_new_polling_account_is_not_registered(observer, supervisor, repo):
    poll = await repo.save_account(Account(name="poll", email="p@example.com", sync_interval=30))

    await observer.process_change(ChangeKind.ACCOUNT, ChangeOp.INSERT, poll.id)

    supervisor.register_account_for_idle.assert_not_awaited()


@pytest.mark.asyncio
async def test_account_update_kicks_connections(observer, supervisor, account):
    await observer.process_change(ChangeKind.ACCOUNT, ChangeOp.UPDATE, account.id)

    supervisor.kick_account_idled_mailboxes.assert_awaited_once()


@pytest.mark.asyncio
async def test_account_delete_drops_connections(observer, supervisor):
    await observer.process_change(ChangeKind.ACCOUNT, ChangeOp.DELETE, 17)

    supervisor.unregister_account_idled_mailboxes.assert_awaited_once_with(17, remove=True)


@pytest.mark.asyncio
async def test_mailbox_turned_push_is_registered(observer, supervisor, account, inbox):
    await observer.process_change(ChangeKind.MAILBOX, ChangeOp.UPDATE, inbox.id)

    supervisor.register_mailbox_for_idle.assert_awaited_once()


@pytest.mark.asyncio
async def test_mailbox_no_longer_push_is_unregistered(observer, supervisor, repo, account):
    mailbox = await repo.save_mailbox(Mailbox(server_id="Work", account_id=account.id))
    supervisor.is_mailbox_idled.return_value = True

    await observer.process_change(ChangeKind.MAILBOX, ChangeOp.UPDATE, mailbox.id)

    supervisor.unregister_idled_mailbox.assert_awaited_once_with(mailbox.id, remove=True)
    supervisor.register_mailbox_for_idle.assert_not_awaited()


@pytest.mark.asyncio
async def test_mailbox_update_without_push_change(observer, supervisor, inbox):
    supervisor.is_mailbox_idled.return_value = True

    await observer.process_change(ChangeKind.MAILBOX, ChangeOp.UPDATE, inbox.id)

    supervisor.unregister_idled_mailbox.assert_not_awaited()
    supervisor.register_mailbox_for_idle.assert_not_awaited()


@pytest.mark.asyncio
async def test_mailbox_delete_unregisters(observer, supervisor):
    await observer.process_change(ChangeKind.MAILBOX, ChangeOp.DELETE, 5)

    supervisor.unregister_idled_mailbox.assert_awaited_once_with(5, remove=True)


@pytest.mark.asyncio
async def test_user_edit_is_pushed_right_away(observer, orchestrator, pool, repo, account, inbox, make_message):
    row = await make_message(account, inbox, "1")
    repo.change_listener = observer.on_change

    await repo.user_update_message(row.id, flag_read=True)
    await pool.drain()

    orchestrator.process_pending_actions_synchronous.assert_awaited_once()
    assert orchestrator.process_pending_actions_synchronous.await_args.args[0].id == account.id


@pytest.mark.asyncio
async def test_user_edit_during_sync_waits(observer, orchestrator, account, inbox, make_message):
    row = await make_message(account, inbox, "1")
    orchestrator.sync_in_progress = True

    await observer.process_change(ChangeKind.MESSAGE, ChangeOp.UPDATE, row.id)

    orchestrator.process_pending_actions_synchronous.assert_not_awaited()


@pytest.mark.asyncio
async def test_user_edit_on_polling_account_waits(observer, orchestrator, repo, inbox, make_message):
    poll = await repo.save_account(Account(name="poll", email="p@example.com", sync_interval=30))
    row = await make_message(poll, inbox, "1")

    await observer.process_change(ChangeKind.MESSAGE, ChangeOp.UPDATE, row.id)

    orchestrator.process_pending_actions_synchronous.assert_not_awaited()
