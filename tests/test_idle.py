# tests/test_idle.py

import random
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from osprey.config import IdleConfig, NotificationsConfig
from osprey.connectivity import ConnectivityMonitor
from osprey.core import Account, Mailbox, MailboxType, ServerError
from osprey.imap.folder import IdleEvent, IdleEventKind
from osprey.imap.idle import IdleConnectionSupervisor
from osprey.notifications import NotificationSink
from osprey.scheduling import ALL_MAILBOXES, AlarmAction, AlarmScheduler, WorkerPool


@pytest.fixture
def connectivity():
    return ConnectivityMonitor()


@pytest.fixture
def notifications():
    return NotificationSink()


@pytest.fixture
def orchestrator():
    """Stands in for SyncOrchestrator; only the IDLE hand-off is used."""
    mock = MagicMock()
    mock.process_idle_changes = AsyncMock()
    return mock


@pytest_asyncio.fixture
async def pool():
    workers = WorkerPool()
    yield workers
    await workers.shutdown()


@pytest_asyncio.fixture
async def alarms(pool):
    scheduler = AlarmScheduler(pool, rng=random.Random(7))
    yield scheduler
    scheduler.cancel_all()


@pytest.fixture
def supervisor(repo, server, alarms, pool, connectivity, notifications, orchestrator):
    sup = IdleConnectionSupervisor(
        repo, server, alarms, pool, connectivity, notifications, IdleConfig()
    )
    sup.bind_orchestrator(orchestrator)
    return sup


@pytest_asyncio.fixture
async def idling(supervisor, server, account, inbox):
    """Register the inbox and return its folder handle."""
    assert await supervisor.register_mailbox_for_idle(account, inbox)
    return supervisor.get_idled_folder(inbox.id)


def ping_delay(alarms, mailbox):
    alarm = alarms.get(AlarmAction.PING, mailbox.id)
    return alarm.delay_ms if alarm else None


# =============================================================================
# Registration
# =============================================================================

@pytest.mark.asyncio
async def test_register_starts_idle_and_schedules_kick(supervisor, alarms, inbox, idling):
    assert supervisor.is_mailbox_idled(inbox.id)
    assert supervisor.idled_mailbox_ids == [inbox.id]

    kick = alarms.get(AlarmAction.KICK, inbox.id)
    assert 25 * 60_000 <= kick.delay_ms < 28 * 60_000


@pytest.mark.asyncio
async def test_register_rejects_non_push_account(supervisor, repo, inbox):
    poll = await repo.save_account(Account(name="poll", email="p@example.com", sync_interval=15))

    assert await supervisor.register_mailbox_for_idle(poll, inbox) is False


@pytest.mark.asyncio
@pytest.mark.parametrize("mailbox_type", [MailboxType.DRAFTS, MailboxType.OUTBOX, MailboxType.SEARCH])
async def test_register_rejects_local_mailboxes(supervisor, repo, server, account, mailbox_type):
    mailbox = await repo.save_mailbox(Mailbox(
        server_id=mailbox_type.name, account_id=account.id, mailbox_type=mailbox_type,
    ))

    assert await supervisor.register_mailbox_for_idle(account, mailbox) is False
    assert server.calls == []


@pytest.mark.asyncio
async def test_register_without_connectivity(supervisor, connectivity, server, account, inbox):
    await connectivity.set_connected(False)

    assert await supervisor.register_mailbox_for_idle(account, inbox) is False
    assert "start_idling" not in server.names()


@pytest.mark.asyncio
async def test_register_failure_returns_false(supervisor, server, account, inbox):
    server.fail_on["start_idling"] = ServerError("IDLE not supported")

    assert await supervisor.register_mailbox_for_idle(account, inbox) is False
    assert not supervisor.is_mailbox_idled(inbox.id)
    assert supervisor.get_idled_folder(inbox.id) is None
    assert not server.handles[-1].is_open


@pytest.mark.asyncio
async def test_failed_reuse_of_suspended_handle_drops_it(supervisor, server, account, inbox, idling):
    await supervisor.unregister_idled_mailbox(inbox.id, remove=False)
    server.fail_on["start_idling"] = ServerError("IDLE not supported")

    assert await supervisor.register_mailbox_for_idle(account, inbox) is False
    assert supervisor.get_idled_folder(inbox.id) is None
    assert not idling.is_open


@pytest.mark.asyncio
async def test_account_registration_falls_back_to_inbox(supervisor, repo, account):
    inbox = await repo.save_mailbox(Mailbox(
        server_id="INBOX", account_id=account.id, mailbox_type=MailboxType.INBOX,
    ))

    await supervisor.register_account_for_idle(account)

    assert supervisor.idled_mailbox_ids == [inbox.id]


@pytest.mark.asyncio
async def test_account_registration_covers_push_mailboxes(supervisor, repo, server, account, inbox):
    server.add_folder("Work")
    work = await repo.save_mailbox(Mailbox(server_id="Work", account_id=account.id, sync_interval=1))
    await repo.save_mailbox(Mailbox(server_id="Other", account_id=account.id))

    await supervisor.register_account_for_idle(account)

    assert sorted(supervisor.idled_mailbox_ids) == sorted([inbox.id, work.id])


# =============================================================================
# Unregistration and kicks
# =============================================================================

@pytest.mark.asyncio
async def test_suspend_keeps_handle_for_reuse(supervisor, server, account, inbox, idling):
    await supervisor.unregister_idled_mailbox(inbox.id, remove=False)

    assert not supervisor.is_mailbox_idled(inbox.id)
    assert supervisor.get_idled_folder(inbox.id) is idling
    assert idling.is_open

    assert await supervisor.register_mailbox_for_idle(account, inbox)
    assert len(server.handles) == 1


@pytest.mark.asyncio
async def test_unregister_with_remove_disconnects(supervisor, alarms, inbox, idling):
    await supervisor.unregister_idled_mailbox(inbox.id, remove=True)

    assert supervisor.get_idled_folder(inbox.id) is None
    assert not idling.is_open
    # IDLING_DONE cleared the kick
    assert alarms.get(AlarmAction.KICK, inbox.id) is None


@pytest.mark.asyncio
async def test_remove_drops_a_folder_that_stopped_idling(supervisor, inbox, idling):
    await supervisor.unregister_idled_mailbox(inbox.id, remove=False)
    assert idling.is_open

    await supervisor.unregister_idled_mailbox(inbox.id, remove=True)

    assert supervisor.get_idled_folder(inbox.id) is None
    assert not idling.is_open


@pytest.mark.asyncio
async def test_account_remove_drops_suspended_folders(supervisor, pool, account, inbox, idling):
    await supervisor.unregister_idled_mailbox(inbox.id, remove=False)

    await supervisor.unregister_account_idled_mailboxes(account.id, remove=True)
    await pool.drain()

    assert supervisor.get_idled_folder(inbox.id) is None
    assert not idling.is_open


@pytest.mark.asyncio
async def test_kick_restarts_idle_on_same_handle(supervisor, server, account, inbox, idling):
    await supervisor.kick_idled_mailbox(account, inbox)

    assert supervisor.is_mailbox_idled(inbox.id)
    assert server.names().count("start_idling") == 2
    assert len(server.handles) == 1


@pytest.mark.asyncio
async def test_failed_kick_drops_and_closes_handle(supervisor, server, alarms, account, inbox, idling):
    server.fail_on["start_idling"] = ServerError("connection reset")

    await supervisor.kick_idled_mailbox(account, inbox)

    assert supervisor.get_idled_folder(inbox.id) is None
    assert not idling.is_open
    assert ping_delay(alarms, inbox) is not None


@pytest.mark.asyncio
async def test_kick_account_replaces_connections(supervisor, server, account, inbox, idling):
    await supervisor.kick_account_idled_mailboxes(account)

    assert not idling.is_open
    assert supervisor.is_mailbox_idled(inbox.id)
    assert supervisor.get_idled_folder(inbox.id) is not idling


# =============================================================================
# IDLE events
# =============================================================================

@pytest.mark.asyncio
async def test_exception_backoff_doubles(supervisor, alarms, inbox, idling):
    delays = []
    for _ in range(3):
        await idling.push(IdleEvent(IdleEventKind.EXCEPTION, error=ServerError("bye")))
        delays.append(ping_delay(alarms, inbox))

    assert delays == [500, 1000, 2000]
    assert supervisor.get_idled_folder(inbox.id) is None
    assert alarms.get(AlarmAction.KICK, inbox.id) is None


@pytest.mark.asyncio
async def test_backoff_is_capped(repo, server, alarms, pool, connectivity, notifications, account, inbox):
    settings = IdleConfig(ping_base_delay_ms=500, ping_max_delay_ms=1500)
    supervisor = IdleConnectionSupervisor(
        repo, server, alarms, pool, connectivity, notifications, settings
    )

    delays = [supervisor.next_ping_delay(inbox.id) for _ in range(4)]

    assert delays == [500, 1000, 1500, 1500]


@pytest.mark.asyncio
async def test_timeout_retries_at_base_delay_and_resets(alarms, inbox, idling):
    error = IdleEvent(IdleEventKind.EXCEPTION, error=ServerError("bye"))
    await idling.push(error)
    await idling.push(error)
    await idling.push(IdleEvent(IdleEventKind.TIMEOUT))
    assert ping_delay(alarms, inbox) == 500

    await idling.push(error)
    assert ping_delay(alarms, inbox) == 500


@pytest.mark.asyncio
async def test_new_changes_are_handed_to_orchestrator(
    supervisor, alarms, pool, orchestrator, account, inbox, idling
):
    await idling.push(IdleEvent(IdleEventKind.NEW_CHANGES, uids=["3", "4"]))
    await pool.drain()

    orchestrator.process_idle_changes.assert_awaited_once()
    _, mailbox, need_sync, uids = orchestrator.process_idle_changes.await_args.args
    assert mailbox.id == inbox.id
    assert need_sync is False
    assert uids == ["3", "4"]
    assert alarms.get(AlarmAction.KICK, inbox.id) is None
    # The handle stays registered for the fast path to reuse
    assert supervisor.get_idled_folder(inbox.id) is idling


@pytest.mark.asyncio
async def test_ping_alarm_requests_quick_sync(supervisor, orchestrator, account, inbox):
    await supervisor.restart_idle_connection(inbox.id)

    orchestrator.request_sync.assert_called_once()
    _, mailbox_id = orchestrator.request_sync.call_args.args
    assert mailbox_id == inbox.id
    assert orchestrator.request_sync.call_args.kwargs == {"full": False}


# =============================================================================
# Connectivity
# =============================================================================

@pytest.mark.asyncio
async def test_connectivity_lost_clears_table(supervisor, connectivity, server, inbox, idling):
    await connectivity.set_connected(False)

    assert supervisor.get_idled_folder(inbox.id) is None
    assert supervisor.idled_mailbox_ids == []
    assert "stop_idling" not in server.names()


@pytest.mark.asyncio
async def test_connectivity_restored_schedules_restart(supervisor, alarms, connectivity):
    await connectivity.set_connected(False)
    assert alarms.get(AlarmAction.RESTART, ALL_MAILBOXES) is None

    await connectivity.set_connected(True)

    restart = alarms.get(AlarmAction.RESTART, ALL_MAILBOXES)
    assert 30_000 <= restart.delay_ms < 60_000


@pytest.mark.asyncio
async def test_failure_while_offline_waits_for_connectivity(
    supervisor, alarms, connectivity, inbox, idling
):
    await connectivity.set_connected(False)

    await idling.push(IdleEvent(IdleEventKind.EXCEPTION, error=ServerError("bye")))

    assert alarms.get(AlarmAction.PING, inbox.id) is None


@pytest.mark.asyncio
async def test_restart_all_syncs_mailboxes_not_idling(supervisor, orchestrator, account, inbox):
    await supervisor.restart_all_idle_connections()

    orchestrator.request_sync.assert_called_once()
    assert orchestrator.request_sync.call_args.args[1] == inbox.id


@pytest.mark.asyncio
async def test_restart_all_needs_battery_exemption(
    repo, server, alarms, pool, connectivity, orchestrator, account, inbox
):
    notifications = NotificationSink(NotificationsConfig(battery_exempt=False))
    supervisor = IdleConnectionSupervisor(
        repo, server, alarms, pool, connectivity, notifications, IdleConfig()
    )
    supervisor.bind_orchestrator(orchestrator)

    await supervisor.restart_all_idle_connections()

    assert notifications.exemption_requests == 1
    orchestrator.request_sync.assert_not_called()
