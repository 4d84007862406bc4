# tests/test_service.py

import pytest
import pytest_asyncio

from osprey.core import Account, MailboxType
from osprey.service import SEARCH_MAILBOX_ID, SyncService


@pytest_asyncio.fixture
async def service(config, db, server, attachments, clock):
    config.accounts["work"] = Account(name="work", email="me@work.example")
    config.accounts["home"] = Account(name="home", email="me@home.example", sync_interval=15)
    svc = SyncService(config, db=db, stores=server, attachments=attachments, clock=clock)
    yield svc
    svc.alarms.cancel_all()
    await svc.pool.shutdown()


@pytest.mark.asyncio
async def test_import_accounts_inserts_then_updates(service, repo):
    first = await service.import_accounts()
    service.config.accounts["home"].email = "new@home.example"

    second = await service.import_accounts()

    assert [a.id for a in first] == [a.id for a in second]
    assert len(await repo.get_all_accounts()) == 2
    assert (await repo.get_account_by_name("home")).email == "new@home.example"


@pytest.mark.asyncio
async def test_search_mailbox_is_created_once(service, account):
    first = await service.get_search_mailbox(account)
    second = await service.get_search_mailbox(account)

    assert first.id == second.id
    assert first.server_id == SEARCH_MAILBOX_ID
    assert first.mailbox_type == MailboxType.SEARCH


@pytest.mark.asyncio
async def test_start_push_registers_push_mailboxes(service, repo, account, inbox):
    await service.start_push()

    assert service.supervisor.is_mailbox_idled(inbox.id)
    assert service.repo.change_listener == service.observer.on_change
