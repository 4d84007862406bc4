# =============================================================================
# Database Connection and Schema Management
# =============================================================================
# Manages the SQLite database connection and schema migrations.
#
# Schema overview:
#   - accounts: IMAP accounts and their sync policy
#   - mailboxes: Server folders mirrored locally
#   - messages: Message rows (envelope, state, body)
#   - message_updates: "Before" snapshots of user-modified messages
#   - message_deletes: Snapshots of user-deleted messages
#   - attachments: Attachment metadata
#
# The two shadow tables share the messages column layout so a snapshot is a
# plain INSERT ... SELECT. They carry no foreign keys: a shadow row must
# outlive the message it describes.
#
# Uses aiosqlite for async operations, with WAL mode for better
# concurrent performance.
# =============================================================================

from pathlib import Path

import aiosqlite

from osprey.config import Config


# Current schema version - increment when making schema changes
SCHEMA_VERSION = 1

# Shared by messages and its shadow tables; the order matters for
# INSERT ... SELECT * snapshots
MESSAGE_COLUMNS_DDL = """
    account_id INTEGER NOT NULL,
    mailbox_id INTEGER NOT NULL,
    server_id TEXT NOT NULL DEFAULT '',
    main_mailbox_id INTEGER,
    protocol_search_info TEXT NOT NULL DEFAULT '',
    message_id TEXT NOT NULL DEFAULT '',
    subject TEXT NOT NULL DEFAULT '',
    sender TEXT NOT NULL DEFAULT '',
    sender_name TEXT NOT NULL DEFAULT '',
    recipients TEXT NOT NULL DEFAULT '[]',  -- JSON array
    cc TEXT NOT NULL DEFAULT '[]',          -- JSON array
    timestamp INTEGER NOT NULL DEFAULT 0,
    server_timestamp INTEGER NOT NULL DEFAULT 0,
    flag_read INTEGER NOT NULL DEFAULT 0,
    flag_favorite INTEGER NOT NULL DEFAULT 0,
    flags INTEGER NOT NULL DEFAULT 0,
    load_state INTEGER NOT NULL DEFAULT 0,
    body_text TEXT NOT NULL DEFAULT '',
    body_html TEXT NOT NULL DEFAULT ''
"""


class Database:
    """
    Manages the SQLite database connection and schema.

    Usage:
        >>> db = Database(tmp_path / "osprey.db")
        >>> await db.connect()
        >>> async with db.conn.execute("SELECT ...") as cursor:
        ...     rows = await cursor.fetchall()
        >>> await db.close()

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """
        Initialize the database manager.

        Args:
            db_path: Path to database file. Defaults to XDG data location.
        """
        self.db_path = db_path or Config.database_path()
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        """
        Open the database connection and ensure schema is up to date.

        Creates the database file if it doesn't exist.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys (off by default in SQLite)
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # Enable WAL mode for better concurrent performance
        await self._connection.execute("PRAGMA journal_mode = WAL")

        await self._init_schema()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        """
        Get the active database connection.

        Raises:
            RuntimeError: If not connected.
        """
        if self._connection is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._connection

    async def _init_schema(self) -> None:
        """Creates tables if they don't exist, runs migrations if needed."""
        try:
            async with self.conn.execute(
                "SELECT version FROM schema_version"
            ) as cursor:
                row = await cursor.fetchone()
                current_version = row[0] if row else 0
        except aiosqlite.OperationalError:
            # Table doesn't exist, this is a fresh database
            current_version = 0

        if current_version < SCHEMA_VERSION:
            await self._create_schema()
            await self._run_migrations(current_version)

    async def _create_schema(self) -> None:
        """Create the database schema from scratch."""
        schema = f"""
        -- Schema version tracking
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );

        -- IMAP accounts
        CREATE TABLE IF NOT EXISTS accounts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL UNIQUE,
            email TEXT NOT NULL,
            display_name TEXT,
            imap_host TEXT NOT NULL,
            imap_port INTEGER NOT NULL DEFAULT 993,
            imap_security TEXT NOT NULL DEFAULT 'ssl',
            sync_interval INTEGER NOT NULL DEFAULT -2,
            sync_lookback INTEGER NOT NULL DEFAULT 0,
            enabled INTEGER NOT NULL DEFAULT 1
        );

        -- Mailboxes (server folders)
        CREATE TABLE IF NOT EXISTS mailboxes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            account_id INTEGER NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
            server_id TEXT NOT NULL,
            display_name TEXT,
            mailbox_type TEXT NOT NULL DEFAULT 'MAIL',
            sync_lookback INTEGER NOT NULL DEFAULT -2,
            sync_interval INTEGER NOT NULL DEFAULT 0,
            last_full_sync_time INTEGER NOT NULL DEFAULT 0,
            total_messages INTEGER NOT NULL DEFAULT 0,
            sync_time INTEGER NOT NULL DEFAULT 0,
            ui_sync_status TEXT NOT NULL DEFAULT 'NONE',
            UNIQUE(account_id, server_id)
        );

        -- Messages
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            {MESSAGE_COLUMNS_DDL}
        );

        -- Snapshot of a message before its first user modification
        CREATE TABLE IF NOT EXISTS message_updates (
            id INTEGER PRIMARY KEY,
            {MESSAGE_COLUMNS_DDL}
        );

        -- Snapshot of a user-deleted message
        CREATE TABLE IF NOT EXISTS message_deletes (
            id INTEGER PRIMARY KEY,
            {MESSAGE_COLUMNS_DDL}
        );

        -- Attachment metadata
        CREATE TABLE IF NOT EXISTS attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
            filename TEXT NOT NULL,
            content_type TEXT NOT NULL,
            size INTEGER NOT NULL DEFAULT 0,
            content_id TEXT,
            is_inline INTEGER NOT NULL DEFAULT 0,
            location TEXT,
            content_path TEXT
        );

        -- Indexes for common queries
        CREATE INDEX IF NOT EXISTS idx_messages_mailbox ON messages(mailbox_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_messages_server_id ON messages(mailbox_id, server_id);
        CREATE INDEX IF NOT EXISTS idx_mailboxes_account ON mailboxes(account_id);
        CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_id);
        """

        await self.conn.executescript(schema)

        await self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,)
        )
        await self.conn.commit()

    async def _run_migrations(self, from_version: int) -> None:
        """
        Run schema migrations from the given version to current.

        Args:
            from_version: Version to migrate from.
        """
        # No migrations yet - we're at version 1
        pass
