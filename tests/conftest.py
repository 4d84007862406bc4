# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Osprey test suite.
#
# Databases are real aiosqlite files in a temporary directory; the server is
# the in-memory FakeRemoteStore from tests/fakes.py.
# =============================================================================

import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

from osprey.config import Config, SyncConfig
from osprey.core import SYNC_INTERVAL_PUSH, Account, Mailbox, MailboxType, Message
from osprey.storage import AttachmentStore, Database, Repository
from osprey.sync.loader import MessageLoader
from osprey.sync.reconcile import ReconciliationEngine
from osprey.sync.upsync import PendingChangeUpsyncer
from osprey.sync.window import SyncWindowPlanner

from fakes import NOW, FakeClock, FakeRemoteStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def server():
    """An empty fake server with an INBOX."""
    store = FakeRemoteStore()
    store.add_folder("INBOX")
    return store


@pytest.fixture
def sync_settings():
    return SyncConfig()


@pytest_asyncio.fixture
async def db(temp_dir):
    database = Database(temp_dir / "osprey.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def repo(db):
    return Repository(db)


@pytest.fixture
def sample_account():
    """Create a sample push Account for testing."""
    return Account(
        name="test",
        email="test@example.com",
        display_name="Test User",
        imap_host="imap.example.com",
        imap_port=993,
        imap_security="ssl",
        sync_interval=SYNC_INTERVAL_PUSH,
    )


@pytest_asyncio.fixture
async def account(repo, sample_account):
    return await repo.save_account(sample_account)


@pytest_asyncio.fixture
async def inbox(repo, account):
    return await repo.save_mailbox(Mailbox(
        server_id="INBOX",
        account_id=account.id,
        mailbox_type=MailboxType.INBOX,
        sync_interval=1,
    ))


@pytest.fixture
def attachments(temp_dir):
    return AttachmentStore(temp_dir / "attachments")


@pytest.fixture
def planner(sync_settings, clock):
    return SyncWindowPlanner(sync_settings, clock)


@pytest.fixture
def engine(repo, server, planner, attachments, sync_settings, clock):
    return ReconciliationEngine(
        repo, server, planner, MessageLoader(repo), attachments, sync_settings, clock
    )


@pytest.fixture
def upsyncer(repo, server):
    return PendingChangeUpsyncer(repo, server)


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def make_message(repo):
    """Factory storing a synced message row."""
    async def _make(account, mailbox, server_id, timestamp=NOW, **fields):
        return await repo.save_message(Message(
            account_id=account.id,
            mailbox_id=mailbox.id,
            server_id=server_id,
            timestamp=timestamp,
            **fields,
        ))
    return _make
