# tests/test_orchestrator.py

from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from osprey.core import (
    AuthenticationFailedError,
    ConnectionFailedError,
    LoadState,
    Mailbox,
    MailboxType,
    ServerError,
    UiSyncStatus,
)
from osprey.imap.folder import Flag
from osprey.service import SyncService
from osprey.sync.orchestrator import SyncStatus

from fakes import HOUR, NOW


@pytest_asyncio.fixture
async def service(config, db, server, attachments, clock):
    svc = SyncService(config, db=db, stores=server, attachments=attachments, clock=clock)
    yield svc
    svc.alarms.cancel_all()
    await svc.pool.shutdown()


@pytest.fixture
def orchestrator(service):
    return service.orchestrator


@pytest.fixture
def requested(monkeypatch, orchestrator):
    """Capture sync requests instead of running them."""
    mock = MagicMock()
    monkeypatch.setattr(orchestrator, "request_sync", mock)
    return mock


# =============================================================================
# sync_mailbox
# =============================================================================

@pytest.mark.asyncio
async def test_sync_mailbox_reports_success(orchestrator, repo, server, account, inbox):
    server.add_message("INBOX", "1", NOW - HOUR)

    result = await orchestrator.sync_mailbox(inbox.id)

    assert result.success
    assert result.reconcile.new_messages == 1
    stored = await repo.get_mailbox(inbox.id)
    assert stored.ui_sync_status == UiSyncStatus.NONE
    assert stored.sync_time == NOW
    assert not orchestrator.sync_in_progress


@pytest.mark.asyncio
@pytest.mark.parametrize("error, status", [
    (ConnectionFailedError("reset"), SyncStatus.IO_ERROR),
    (ServerError("NO"), SyncStatus.SERVER_ERROR),
    (AuthenticationFailedError("bad password"), SyncStatus.AUTH_ERROR),
])
async def test_sync_mailbox_maps_errors(orchestrator, server, account, inbox, error, status):
    server.fail_on["window"] = error

    result = await orchestrator.sync_mailbox(inbox.id)

    assert result.status == status
    assert result.error


@pytest.mark.asyncio
async def test_auth_failure_signal_is_raised_and_cleared(service, orchestrator, server, account, inbox):
    server.fail_on["window"] = AuthenticationFailedError("bad password")
    await orchestrator.sync_mailbox(inbox.id)
    assert service.notifications.login_failed(account.id)

    del server.fail_on["window"]
    await orchestrator.sync_mailbox(inbox.id)
    assert not service.notifications.login_failed(account.id)


@pytest.mark.asyncio
async def test_unknown_mailbox_is_an_internal_error(orchestrator):
    result = await orchestrator.sync_mailbox(999)

    assert result.status == SyncStatus.INTERNAL_ERROR


@pytest.mark.asyncio
async def test_local_mailbox_drops_pending_updates(orchestrator, repo, server, account, make_message):
    outbox = await repo.save_mailbox(Mailbox(
        server_id="Outbox", account_id=account.id, mailbox_type=MailboxType.OUTBOX,
    ))
    row = await make_message(account, outbox, "")
    await repo.user_update_message(row.id, flag_read=True)

    result = await orchestrator.sync_mailbox(outbox.id)

    assert result.success
    assert await repo.get_pending_updates(account.id) == []
    assert server.calls == []


@pytest.mark.asyncio
async def test_sync_registers_idle_afterwards(service, orchestrator, account, inbox):
    await orchestrator.sync_mailbox(inbox.id)

    assert service.supervisor.is_mailbox_idled(inbox.id)


@pytest.mark.asyncio
async def test_sync_suspends_and_reuses_idle_handle(service, orchestrator, server, account, inbox):
    assert await service.supervisor.register_mailbox_for_idle(account, inbox)
    idle_folder = service.supervisor.get_idled_folder(inbox.id)

    await orchestrator.sync_mailbox(inbox.id)

    assert "stop_idling" in server.names()
    assert service.supervisor.get_idled_folder(inbox.id) is idle_folder
    assert idle_folder.is_idling


@pytest.mark.asyncio
async def test_pending_changes_go_up_before_download(orchestrator, repo, server, account, inbox, make_message):
    server.add_message("INBOX", "1", NOW - HOUR)
    row = await make_message(account, inbox, "1", timestamp=NOW - HOUR, load_state=LoadState.COMPLETE)
    await repo.user_update_message(row.id, flag_read=True)

    await orchestrator.sync_mailbox(inbox.id)

    # The local edit survived the download
    assert (await repo.get_message(row.id)).flag_read is True
    assert Flag.SEEN in server.folders["INBOX"]["1"].flags
    assert server.names().index("set_flags") < server.names().index("window")


# =============================================================================
# Account-level entry points
# =============================================================================

@pytest.mark.asyncio
async def test_sync_account_refreshes_folders_first(orchestrator, repo, server, account, inbox):
    server.add_folder("Work")
    server.add_message("INBOX", "1", NOW - HOUR)

    result = await orchestrator.sync_account(account.id)

    assert result.success
    assert [r.mailbox_id for r in result.mailboxes] == [inbox.id]
    assert await repo.get_mailbox_by_server_id(account.id, "Work") is not None
    assert server.names()[0] == "list_folders"


@pytest.mark.asyncio
async def test_sync_account_of_disabled_account_does_nothing(orchestrator, repo, server, account):
    account.enabled = False
    await repo.save_account(account)

    result = await orchestrator.sync_account(account.id)

    assert result.mailboxes == []
    assert server.calls == []


@pytest.mark.asyncio
async def test_process_pending_actions(orchestrator, repo, server, account, inbox, make_message):
    server.add_message("INBOX", "1", NOW - HOUR)
    row = await make_message(account, inbox, "1")
    await repo.user_update_message(row.id, flag_favorite=True)

    result = await orchestrator.process_pending_actions_synchronous(account)

    assert result.ok
    assert Flag.FLAGGED in server.folders["INBOX"]["1"].flags


@pytest.mark.asyncio
async def test_sync_pending_updates_visits_touched_mailboxes(orchestrator, repo, account, inbox, make_message):
    row = await make_message(account, inbox, "1")
    await repo.user_update_message(row.id, flag_read=True)

    results = await orchestrator.sync_pending_updates(account.id)

    assert [r.mailbox_id for r in results] == [inbox.id]


# =============================================================================
# IDLE changes
# =============================================================================

@pytest.mark.asyncio
async def test_idle_changes_take_the_fast_path(
    service, orchestrator, requested, repo, server, clock, account, inbox, make_message
):
    await repo.update_last_full_sync_time(inbox.id, clock.elapsed)
    row = await make_message(account, inbox, "1", timestamp=NOW - HOUR, load_state=LoadState.COMPLETE)
    server.add_message("INBOX", "1", NOW - HOUR, flags={Flag.SEEN})

    await orchestrator.process_idle_changes(account, inbox, False, ["1"])

    requested.assert_not_called()
    assert (await repo.get_message(row.id)).flag_read is True
    assert service.supervisor.is_mailbox_idled(inbox.id)


@pytest.mark.asyncio
async def test_idle_need_sync_requests_full_sync(orchestrator, requested, repo, clock, account, inbox):
    await repo.update_last_full_sync_time(inbox.id, clock.elapsed)

    await orchestrator.process_idle_changes(account, inbox, True, [])

    requested.assert_called_once_with(account, inbox.id, full=True)


@pytest.mark.asyncio
async def test_idle_changes_with_due_full_sync(orchestrator, requested, account, inbox):
    # last_full_sync_time is 0, ten days ago on the fake clock
    await orchestrator.process_idle_changes(account, inbox, False, ["1"])

    requested.assert_called_once_with(account, inbox.id, full=True)


@pytest.mark.asyncio
async def test_idle_changes_too_many_uids(orchestrator, requested, repo, clock, account, inbox):
    await repo.update_last_full_sync_time(inbox.id, clock.elapsed)
    uids = [str(uid) for uid in range(1, 502)]

    await orchestrator.process_idle_changes(account, inbox, False, uids)

    requested.assert_called_once_with(account, inbox.id, full=True)


@pytest.mark.asyncio
async def test_idle_changes_without_uids_reregister(
    service, orchestrator, requested, repo, server, clock, account, inbox
):
    await repo.update_last_full_sync_time(inbox.id, clock.elapsed)

    await orchestrator.process_idle_changes(account, inbox, False, [])

    requested.assert_not_called()
    assert "window" not in server.names()
    assert service.supervisor.is_mailbox_idled(inbox.id)


@pytest.mark.asyncio
async def test_requested_sync_runs_in_background(service, orchestrator, repo, server, account, inbox):
    server.add_message("INBOX", "1", NOW - HOUR)

    orchestrator.request_sync(account, inbox.id, full=True)
    await service.pool.drain()

    assert len(await repo.get_messages(inbox.id)) == 1
