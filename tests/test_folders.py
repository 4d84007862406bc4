# tests/test_folders.py

import pytest

from osprey.core import Mailbox, MailboxType
from osprey.sync.folders import FolderListSynchronizer


@pytest.fixture
def folders(repo, server):
    return FolderListSynchronizer(repo, server)


@pytest.mark.asyncio
async def test_new_folders_become_mailboxes(folders, repo, server, account):
    server.add_folder("Sent")
    server.add_folder("Projects/2024")

    mailboxes = await folders.sync_folders(account)

    by_path = {m.server_id: m for m in mailboxes}
    assert set(by_path) == {"INBOX", "Sent", "Projects/2024"}
    assert by_path["INBOX"].mailbox_type == MailboxType.INBOX
    assert by_path["INBOX"].is_push_mailbox
    assert by_path["Sent"].mailbox_type == MailboxType.SENT
    assert not by_path["Sent"].is_push_mailbox
    assert by_path["Projects/2024"].display_name == "2024"


@pytest.mark.asyncio
async def test_vanished_folders_are_removed(folders, repo, server, account, inbox):
    gone = await repo.save_mailbox(Mailbox(server_id="Old", account_id=account.id))

    await folders.sync_folders(account)

    assert await repo.get_mailbox(gone.id) is None
    assert await repo.get_mailbox(inbox.id) is not None


@pytest.mark.asyncio
async def test_local_and_auto_created_mailboxes_are_kept(folders, repo, server, account):
    kept = []
    for mailbox_type in (MailboxType.DRAFTS, MailboxType.OUTBOX, MailboxType.SEARCH,
                         MailboxType.TRASH, MailboxType.SENT):
        kept.append(await repo.save_mailbox(Mailbox(
            server_id=f"local-{mailbox_type.name}", account_id=account.id,
            mailbox_type=mailbox_type,
        )))

    await folders.sync_folders(account)

    for mailbox in kept:
        assert await repo.get_mailbox(mailbox.id) is not None


@pytest.mark.asyncio
async def test_generic_mailbox_learns_its_type(folders, repo, server, account):
    server.add_folder("Trash")
    local = await repo.save_mailbox(Mailbox(server_id="Trash", account_id=account.id))

    await folders.sync_folders(account)

    assert (await repo.get_mailbox(local.id)).mailbox_type == MailboxType.TRASH


@pytest.mark.asyncio
async def test_second_trash_folder_becomes_plain_mail(folders, repo, server, account):
    server.add_folder("Trash")
    server.add_folder("Deleted Items")

    mailboxes = await folders.sync_folders(account)

    types = {m.server_id: m.mailbox_type for m in mailboxes}
    assert types["Trash"] == MailboxType.TRASH
    assert types["Deleted Items"] == MailboxType.MAIL


@pytest.mark.asyncio
async def test_existing_trash_keeps_the_type(folders, repo, server, account):
    await repo.save_mailbox(Mailbox(
        server_id="Trash", account_id=account.id, mailbox_type=MailboxType.TRASH,
    ))
    server.add_folder("Deleted")
    other = await repo.save_mailbox(Mailbox(server_id="Deleted", account_id=account.id))

    await folders.sync_folders(account)

    trash = [m for m in await repo.get_mailboxes(account.id) if m.mailbox_type == MailboxType.TRASH]
    assert [m.server_id for m in trash] == ["Trash"]
    assert (await repo.get_mailbox(other.id)).mailbox_type == MailboxType.MAIL
