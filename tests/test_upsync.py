# tests/test_upsync.py

import pytest
import pytest_asyncio

from osprey.core import (
    ConnectionFailedError,
    ErrorKind,
    LoadState,
    Mailbox,
    MailboxType,
    Message,
    MessageFlags,
    ServerError,
)
from osprey.imap.folder import Flag
from osprey.sync.upsync import UpsyncPhase

from fakes import HOUR, NOW


@pytest_asyncio.fixture
async def trash(repo, server, account):
    server.add_folder("Trash")
    return await repo.save_mailbox(Mailbox(
        server_id="Trash", account_id=account.id, mailbox_type=MailboxType.TRASH,
    ))


@pytest_asyncio.fixture
async def sent(repo, server, account):
    server.add_folder("Sent")
    return await repo.save_mailbox(Mailbox(
        server_id="Sent", account_id=account.id, mailbox_type=MailboxType.SENT,
    ))


@pytest_asyncio.fixture
async def inbox_row(server, account, inbox, make_message):
    server.add_message("INBOX", "1", NOW - HOUR, subject="hello")
    return await make_message(
        account, inbox, "1", timestamp=NOW - HOUR, load_state=LoadState.COMPLETE
    )


def position(server, name, path):
    return server.calls.index((name, path))


@pytest.mark.asyncio
async def test_phases_run_deletes_uploads_updates(
    upsyncer, repo, server, account, inbox, trash, sent, inbox_row, make_message
):
    server.add_message("Trash", "50", NOW - HOUR)
    trashed = await make_message(account, trash, "50")
    await repo.user_delete_message(trashed.id)
    outgoing = await repo.user_add_message(Message(
        account_id=account.id, mailbox_id=sent.id, subject="report", timestamp=NOW - HOUR,
    ))
    await repo.user_update_message(inbox_row.id, flag_read=True)

    result = await upsyncer.upsync(account)

    assert result.ok
    assert [p.phase for p in result.phases] == [
        UpsyncPhase.DELETES, UpsyncPhase.UPLOADS, UpsyncPhase.UPDATES,
    ]
    assert position(server, "expunge", "Trash") < position(server, "append", "Sent")
    assert position(server, "append", "Sent") < position(server, "set_flags", "INBOX")

    assert server.folders["Trash"] == {}
    assert Flag.SEEN in server.folders["INBOX"]["1"].flags
    uploaded = await repo.get_message(outgoing.id)
    assert uploaded.server_id in server.folders["Sent"]
    assert uploaded.server_timestamp == NOW - HOUR
    assert await repo.get_pending_deletes(account.id) == []
    assert await repo.get_pending_updates(account.id) == []


@pytest.mark.asyncio
async def test_move_to_trash_copies_then_deletes_source(
    upsyncer, repo, server, account, inbox, trash, inbox_row
):
    await repo.user_update_message(inbox_row.id, mailbox_id=trash.id)

    result = await upsyncer.upsync(account)

    assert result.ok
    assert server.folders["INBOX"] == {}
    assert len(server.folders["Trash"]) == 1
    row = await repo.get_message(inbox_row.id)
    assert row.mailbox_id == trash.id
    assert row.server_id == next(iter(server.folders["Trash"]))


@pytest.mark.asyncio
async def test_plain_move_follows_the_new_uid(upsyncer, repo, server, account, inbox, inbox_row):
    server.add_folder("Archive")
    archive = await repo.save_mailbox(Mailbox(server_id="Archive", account_id=account.id))
    await repo.user_update_message(inbox_row.id, mailbox_id=archive.id)

    await upsyncer.upsync(account)

    assert server.folders["INBOX"] == {}
    row = await repo.get_message(inbox_row.id)
    assert row.server_id in server.folders["Archive"]


@pytest.mark.asyncio
async def test_favorite_and_answered_are_pushed(upsyncer, repo, server, account, inbox, inbox_row):
    await repo.user_update_message(
        inbox_row.id, flag_favorite=True, flags=MessageFlags.REPLIED_TO
    )

    await upsyncer.upsync(account)

    assert server.folders["INBOX"]["1"].flags == {Flag.FLAGGED, Flag.ANSWERED}


@pytest.mark.asyncio
async def test_search_result_changes_go_to_the_real_folder(
    upsyncer, repo, server, account, inbox, make_message
):
    server.add_message("INBOX", "9", NOW - HOUR)
    results = await repo.save_mailbox(Mailbox(
        server_id="__search__", account_id=account.id, mailbox_type=MailboxType.SEARCH,
    ))
    hit = await make_message(
        account, results, "9", main_mailbox_id=inbox.id, protocol_search_info="INBOX",
    )
    await repo.user_update_message(hit.id, flag_read=True)

    await upsyncer.upsync(account)

    assert Flag.SEEN in server.folders["INBOX"]["9"].flags


@pytest.mark.asyncio
async def test_delete_outside_trash_only_clears_the_shadow_row(
    upsyncer, repo, server, account, inbox, inbox_row
):
    await repo.user_delete_message(inbox_row.id)

    result = await upsyncer.upsync(account)

    assert result.get(UpsyncPhase.DELETES).processed == 1
    assert "expunge" not in server.names()
    assert "1" in server.folders["INBOX"]
    assert await repo.get_pending_deletes(account.id) == []


@pytest.mark.asyncio
async def test_update_of_vanished_row_is_dropped(upsyncer, repo, server, account, inbox, inbox_row):
    await repo.user_update_message(inbox_row.id, flag_read=True)
    await repo.delete_message(inbox_row.id)

    result = await upsyncer.upsync(account)

    assert result.get(UpsyncPhase.UPDATES).processed == 1
    assert "set_flags" not in server.names()
    assert await repo.get_pending_updates(account.id) == []


@pytest.mark.asyncio
async def test_connection_failure_ends_phase_and_keeps_shadow_rows(
    upsyncer, repo, server, account, inbox, inbox_row
):
    server.fail_on["set_flags"] = ConnectionFailedError("connection reset")
    await repo.user_update_message(inbox_row.id, flag_read=True)

    result = await upsyncer.upsync(account)

    assert not result.ok
    updates = result.get(UpsyncPhase.UPDATES)
    assert updates.error == ErrorKind.IO_ERROR
    assert updates.processed == 0
    assert result.get(UpsyncPhase.DELETES).ok
    assert len(await repo.get_pending_updates(account.id)) == 1


@pytest.mark.asyncio
async def test_rejected_upload_is_skipped(upsyncer, repo, server, account, sent):
    server.fail_on["append"] = ServerError("message too large")
    outgoing = await repo.user_add_message(Message(
        account_id=account.id, mailbox_id=sent.id, subject="big",
    ))

    result = await upsyncer.upsync(account)

    uploads = result.get(UpsyncPhase.UPLOADS)
    assert uploads.ok
    assert uploads.skipped == 1
    assert (await repo.get_message(outgoing.id)).is_local_only


@pytest.mark.asyncio
async def test_upload_connection_failure_ends_the_phase(upsyncer, repo, server, account, sent):
    server.fail_on["append"] = ConnectionFailedError("connection reset")
    for subject in ("one", "two"):
        await repo.user_add_message(Message(
            account_id=account.id, mailbox_id=sent.id, subject=subject,
        ))

    result = await upsyncer.upsync(account)

    uploads = result.get(UpsyncPhase.UPLOADS)
    assert uploads.error == ErrorKind.IO_ERROR
    assert server.names().count("append") == 1


@pytest.mark.asyncio
async def test_append_drops_local_copy_when_server_copy_is_newer(
    upsyncer, repo, server, account, sent, make_message
):
    server.add_message("Sent", "70", NOW - HOUR)
    row = await make_message(account, sent, "70", server_timestamp=NOW - 2 * HOUR)

    assert await upsyncer._append(server, sent, row, manual_sync=False)

    assert await repo.get_message(row.id) is None
    assert "append" not in server.names()
    assert Flag.DELETED not in server.folders["Sent"]["70"].flags


@pytest.mark.asyncio
async def test_append_replaces_stale_server_copy(upsyncer, repo, server, account, sent, make_message):
    server.add_message("Sent", "70", NOW - 3 * HOUR)
    row = await make_message(
        account, sent, "70", timestamp=NOW - HOUR, server_timestamp=NOW - HOUR,
    )

    assert await upsyncer._append(server, sent, row, manual_sync=False)

    stored = await repo.get_message(row.id)
    assert stored.server_id != "70"
    assert stored.server_id in server.folders["Sent"]
    assert stored.server_timestamp == NOW - HOUR
    assert Flag.DELETED in server.folders["Sent"]["70"].flags
