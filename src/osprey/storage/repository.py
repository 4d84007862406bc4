# =============================================================================
# Repository - Data Access Layer
# =============================================================================
# Provides the local message store used by the sync engine.
#
# It handles:
#   - Converting between domain models and database rows
#   - The diff projection (LocalMessageInfo) used by reconciliation
#   - The user-facing mutation API, which records "pending change" shadow
#     rows for the upsyncer
#   - Change notifications for the change observer
#
# Two kinds of writes go through here and they must not be confused:
#   - user_* methods: local edits that still have to reach the server.
#     They snapshot the row into message_updates/message_deletes first
#     (first write wins) and notify the change listener.
#   - everything else: the sync engine recording server state. No shadow
#     rows, no notifications.
#
# All methods are async for non-blocking database access.
# =============================================================================

import json
import logging
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Callable

from osprey.core import (
    LOCAL_SERVER_ID_PREFIX,
    Account,
    Attachment,
    LoadState,
    LocalMessageInfo,
    Mailbox,
    MailboxType,
    Message,
    MessageFlags,
    SyncWindow,
    UiSyncStatus,
)

if TYPE_CHECKING:
    from osprey.storage.database import Database

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    ACCOUNT = auto()
    MAILBOX = auto()
    MESSAGE = auto()


class ChangeOp(Enum):
    INSERT = auto()
    UPDATE = auto()
    DELETE = auto()


# Listener signature: (kind, op, row id)
ChangeListener = Callable[[ChangeKind, ChangeOp, int], None]

# Message columns in table order (see database.MESSAGE_COLUMNS_DDL)
_MESSAGE_FIELDS = (
    "account_id", "mailbox_id", "server_id", "main_mailbox_id",
    "protocol_search_info", "message_id", "subject", "sender", "sender_name",
    "recipients", "cc", "timestamp", "server_timestamp", "flag_read",
    "flag_favorite", "flags", "load_state", "body_text", "body_html",
)

# Columns the sync engine may patch with update_message()
_UPDATABLE_FIELDS = frozenset(_MESSAGE_FIELDS) - {"account_id", "recipients", "cc"}

# Mailbox types that never sync
_NON_SYNCING_TYPES = (MailboxType.DRAFTS.name, MailboxType.OUTBOX.name, MailboxType.SEARCH.name)


class Repository:
    """
    Data access layer for Osprey.

    Usage:
        >>> repo = Repository(database)
        >>> account = await repo.get_account_by_name("personal")
        >>> infos = await repo.get_local_message_infos(account.id, mailbox.id)
        >>> await repo.user_update_message(message.id, flag_read=True)

    Attributes:
        db: Database instance for executing queries.
        change_listener: Called after user-originated and configuration
                         changes (accounts, mailboxes, user_* methods).
    """

    def __init__(self, db: "Database", change_listener: ChangeListener | None = None) -> None:
        self.db = db
        self.change_listener = change_listener

    def _notify(self, kind: ChangeKind, op: ChangeOp, row_id: int) -> None:
        if self.change_listener is not None:
            self.change_listener(kind, op, row_id)

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def get_all_accounts(self) -> list[Account]:
        async with self.db.conn.execute(
            "SELECT * FROM accounts ORDER BY name"
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_account(row) for row in rows]

    async def get_account(self, account_id: int) -> Account | None:
        async with self.db.conn.execute(
            "SELECT * FROM accounts WHERE id = ?", (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_account(row) if row else None

    async def get_account_by_name(self, name: str) -> Account | None:
        """
        Get an account by its unique name.

        Args:
            name: Account name (e.g., "personal", "work").

        Returns:
            Account if found, None otherwise.
        """
        async with self.db.conn.execute(
            "SELECT * FROM accounts WHERE name = ?", (name,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_account(row) if row else None

    async def save_account(self, account: Account) -> Account:
        """
        Save an account (insert or update).

        Returns:
            Saved account with ID populated.
        """
        values = (
            account.name, account.email, account.display_name,
            account.imap_host, account.imap_port, account.imap_security,
            account.sync_interval, int(account.sync_lookback), account.enabled,
        )
        if account.id is None:
            cursor = await self.db.conn.execute(
                """INSERT INTO accounts
                   (name, email, display_name, imap_host, imap_port, imap_security,
                    sync_interval, sync_lookback, enabled)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                values,
            )
            account.id = cursor.lastrowid
            op = ChangeOp.INSERT
        else:
            await self.db.conn.execute(
                """UPDATE accounts SET
                   name=?, email=?, display_name=?, imap_host=?, imap_port=?,
                   imap_security=?, sync_interval=?, sync_lookback=?, enabled=?
                   WHERE id=?""",
                values + (account.id,),
            )
            op = ChangeOp.UPDATE
        await self.db.conn.commit()
        self._notify(ChangeKind.ACCOUNT, op, account.id)
        return account

    async def delete_account(self, account_id: int) -> None:
        """
        Delete an account and all its data.

        Mailboxes and attachments go through ON DELETE CASCADE; messages and
        shadow rows are removed explicitly.
        """
        for table in ("messages", "message_updates", "message_deletes"):
            await self.db.conn.execute(
                f"DELETE FROM {table} WHERE account_id = ?", (account_id,)
            )
        await self.db.conn.execute("DELETE FROM accounts WHERE id = ?", (account_id,))
        await self.db.conn.commit()
        self._notify(ChangeKind.ACCOUNT, ChangeOp.DELETE, account_id)

    def _row_to_account(self, row) -> Account:
        """Convert a database row to an Account object."""
        return Account(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            display_name=row["display_name"] or "",
            imap_host=row["imap_host"],
            imap_port=row["imap_port"],
            imap_security=row["imap_security"],
            sync_interval=row["sync_interval"],
            sync_lookback=SyncWindow(row["sync_lookback"]),
            enabled=bool(row["enabled"]),
        )

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def get_mailboxes(self, account_id: int) -> list[Mailbox]:
        async with self.db.conn.execute(
            "SELECT * FROM mailboxes WHERE account_id = ? ORDER BY server_id",
            (account_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_mailbox(row) for row in rows]

    async def get_mailbox(self, mailbox_id: int) -> Mailbox | None:
        async with self.db.conn.execute(
            "SELECT * FROM mailboxes WHERE id = ?", (mailbox_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_mailbox(row) if row else None

    async def get_mailbox_by_server_id(self, account_id: int, server_id: str) -> Mailbox | None:
        """Look up a mailbox by its server path within an account."""
        async with self.db.conn.execute(
            "SELECT * FROM mailboxes WHERE account_id = ? AND server_id = ?",
            (account_id, server_id)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_mailbox(row) if row else None

    async def get_mailbox_by_type(self, account_id: int, mailbox_type: MailboxType) -> Mailbox | None:
        """
        Get the first mailbox of a type (e.g. the account's TRASH).

        Returns:
            Mailbox if found, None otherwise.
        """
        async with self.db.conn.execute(
            "SELECT * FROM mailboxes WHERE account_id = ? AND mailbox_type = ? ORDER BY id LIMIT 1",
            (account_id, mailbox_type.name)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_mailbox(row) if row else None

    async def get_mailboxes_by_type(self, account_id: int, mailbox_type: MailboxType) -> list[Mailbox]:
        async with self.db.conn.execute(
            "SELECT * FROM mailboxes WHERE account_id = ? AND mailbox_type = ? ORDER BY id",
            (account_id, mailbox_type.name)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_mailbox(row) for row in rows]

    async def get_sync_mailboxes(self, account_id: int) -> list[Mailbox]:
        """
        Mailboxes flagged for push sync (sync_interval == 1) that load from
        the server.
        """
        async with self.db.conn.execute(
            f"""SELECT * FROM mailboxes
                WHERE account_id = ? AND sync_interval = 1
                AND mailbox_type NOT IN ({', '.join('?' * len(_NON_SYNCING_TYPES))})
                ORDER BY id""",
            (account_id, *_NON_SYNCING_TYPES)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_mailbox(row) for row in rows]

    async def save_mailbox(self, mailbox: Mailbox) -> Mailbox:
        """
        Save a mailbox (insert or update).

        Returns:
            Saved mailbox with ID populated.
        """
        values = (
            mailbox.account_id, mailbox.server_id, mailbox.display_name,
            mailbox.mailbox_type.name, int(mailbox.sync_lookback),
            mailbox.sync_interval, mailbox.last_full_sync_time,
            mailbox.total_messages, mailbox.sync_time, mailbox.ui_sync_status.name,
        )
        if mailbox.id is None:
            cursor = await self.db.conn.execute(
                """INSERT INTO mailboxes
                   (account_id, server_id, display_name, mailbox_type, sync_lookback,
                    sync_interval, last_full_sync_time, total_messages, sync_time,
                    ui_sync_status)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                values,
            )
            mailbox.id = cursor.lastrowid
            op = ChangeOp.INSERT
        else:
            await self.db.conn.execute(
                """UPDATE mailboxes SET
                   account_id=?, server_id=?, display_name=?, mailbox_type=?,
                   sync_lookback=?, sync_interval=?, last_full_sync_time=?,
                   total_messages=?, sync_time=?, ui_sync_status=?
                   WHERE id=?""",
                values + (mailbox.id,),
            )
            op = ChangeOp.UPDATE
        await self.db.conn.commit()
        self._notify(ChangeKind.MAILBOX, op, mailbox.id)
        return mailbox

    async def delete_mailbox(self, mailbox_id: int) -> None:
        """Delete a mailbox together with its messages."""
        await self.db.conn.execute("DELETE FROM messages WHERE mailbox_id = ?", (mailbox_id,))
        await self.db.conn.execute("DELETE FROM mailboxes WHERE id = ?", (mailbox_id,))
        await self.db.conn.commit()
        self._notify(ChangeKind.MAILBOX, ChangeOp.DELETE, mailbox_id)

    async def update_mailbox_message_count(self, mailbox_id: int, count: int) -> None:
        await self.db.conn.execute(
            "UPDATE mailboxes SET total_messages = ? WHERE id = ?", (count, mailbox_id)
        )
        await self.db.conn.commit()

    async def update_last_full_sync_time(self, mailbox_id: int, elapsed_ms: int) -> None:
        await self.db.conn.execute(
            "UPDATE mailboxes SET last_full_sync_time = ? WHERE id = ?", (elapsed_ms, mailbox_id)
        )
        await self.db.conn.commit()

    async def update_mailbox_sync_status(
        self,
        mailbox_id: int,
        status: UiSyncStatus,
        sync_time: int | None = None,
    ) -> None:
        """
        Record the mailbox's current sync activity, and optionally when
        the last sync attempt happened.
        """
        if sync_time is None:
            await self.db.conn.execute(
                "UPDATE mailboxes SET ui_sync_status = ? WHERE id = ?",
                (status.name, mailbox_id)
            )
        else:
            await self.db.conn.execute(
                "UPDATE mailboxes SET ui_sync_status = ?, sync_time = ? WHERE id = ?",
                (status.name, sync_time, mailbox_id)
            )
        await self.db.conn.commit()

    def _row_to_mailbox(self, row) -> Mailbox:
        """Convert a database row to a Mailbox object."""
        return Mailbox(
            id=row["id"],
            account_id=row["account_id"],
            server_id=row["server_id"],
            display_name=row["display_name"] or "",
            mailbox_type=MailboxType.from_name(row["mailbox_type"]),
            sync_lookback=SyncWindow(row["sync_lookback"]),
            sync_interval=row["sync_interval"],
            last_full_sync_time=row["last_full_sync_time"],
            total_messages=row["total_messages"],
            sync_time=row["sync_time"],
            ui_sync_status=UiSyncStatus[row["ui_sync_status"]],
        )

    # =========================================================================
    # Message Operations (sync engine)
    # =========================================================================

    async def get_message(self, message_id: int) -> Message | None:
        """
        Get a single message by ID, attachments included.
        """
        async with self.db.conn.execute(
            "SELECT * FROM messages WHERE id = ?", (message_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        message = self._row_to_message(row)
        message.attachments = await self.get_attachments(message_id)
        return message

    async def get_messages(self, mailbox_id: int) -> list[Message]:
        """All messages of a mailbox, newest first (attachments not loaded)."""
        async with self.db.conn.execute(
            "SELECT * FROM messages WHERE mailbox_id = ? ORDER BY timestamp DESC, id DESC",
            (mailbox_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def get_message_by_server_id(self, mailbox_id: int, server_id: str) -> Message | None:
        async with self.db.conn.execute(
            "SELECT * FROM messages WHERE mailbox_id = ? AND server_id = ? LIMIT 1",
            (mailbox_id, server_id)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        message = self._row_to_message(row)
        message.attachments = await self.get_attachments(message.id)
        return message

    async def get_local_message_infos(
        self,
        account_id: int,
        mailbox_id: int,
        min_timestamp: int = 0,
    ) -> list[LocalMessageInfo]:
        """
        Build the diff projection for a mailbox.

        Local-only rows (empty server id) are left out: they are the
        upsyncer's business, not the reconciler's.
        """
        async with self.db.conn.execute(
            """SELECT id, server_id, flag_read, flag_favorite, flags, load_state, timestamp
               FROM messages
               WHERE account_id = ? AND mailbox_id = ? AND timestamp >= ?
               AND server_id != ''""",
            (account_id, mailbox_id, min_timestamp)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_info(row) for row in rows]

    async def get_local_message_info(
        self,
        account_id: int,
        mailbox_id: int,
        server_id: str,
    ) -> LocalMessageInfo | None:
        async with self.db.conn.execute(
            """SELECT id, server_id, flag_read, flag_favorite, flags, load_state, timestamp
               FROM messages
               WHERE account_id = ? AND mailbox_id = ? AND server_id = ?
               LIMIT 1""",
            (account_id, mailbox_id, server_id)
        ) as cursor:
            row = await cursor.fetchone()
            return self._row_to_info(row) if row else None

    async def get_local_only_messages(self, mailbox_id: int) -> list[Message]:
        """Messages that have never been uploaded (empty or locally minted server id)."""
        async with self.db.conn.execute(
            """SELECT * FROM messages
               WHERE mailbox_id = ? AND (server_id = '' OR server_id LIKE ?)
               ORDER BY id""",
            (mailbox_id, f"{LOCAL_SERVER_ID_PREFIX}%")
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def save_message(self, message: Message) -> Message:
        """
        Save a message as the sync engine sees it (insert or update).

        Attachments on the message replace the stored ones when present.

        Returns:
            Saved message with ID populated.
        """
        values = self._message_values(message)
        if message.id is None:
            cursor = await self.db.conn.execute(
                f"""INSERT INTO messages ({', '.join(_MESSAGE_FIELDS)})
                    VALUES ({', '.join('?' * len(_MESSAGE_FIELDS))})""",
                values,
            )
            message.id = cursor.lastrowid
        else:
            assignments = ", ".join(f"{name}=?" for name in _MESSAGE_FIELDS)
            await self.db.conn.execute(
                f"UPDATE messages SET {assignments} WHERE id=?",
                values + (message.id,),
            )

        if message.attachments:
            await self._replace_attachments(message.id, message.attachments)
        await self.db.conn.commit()
        return message

    async def update_message(self, message_id: int, **fields: Any) -> None:
        """
        Patch columns of a message row on behalf of the sync engine.

        Usage:
            >>> await repo.update_message(msg_id, server_id="4712", server_timestamp=ts)

        Raises:
            ValueError: If a field is not an updatable message column.
        """
        if not fields:
            return
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Not updatable: {', '.join(sorted(unknown))}")
        assignments = ", ".join(f"{name}=?" for name in fields)
        await self.db.conn.execute(
            f"UPDATE messages SET {assignments} WHERE id=?",
            tuple(self._column_value(name, value) for name, value in fields.items()) + (message_id,),
        )
        await self.db.conn.commit()

    async def delete_message_and_shadows(self, message_id: int) -> None:
        """
        Remove a message the server no longer has, along with any pending
        update/delete rows for it.
        """
        await self.db.conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        await self.db.conn.execute("DELETE FROM message_updates WHERE id = ?", (message_id,))
        await self.db.conn.execute("DELETE FROM message_deletes WHERE id = ?", (message_id,))
        await self.db.conn.commit()

    async def delete_message(self, message_id: int) -> None:
        """Remove a message row on behalf of the sync engine. Shadow rows stay."""
        await self.db.conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        await self.db.conn.commit()

    def _message_values(self, message: Message) -> tuple:
        return tuple(self._column_value(name, getattr(message, name)) for name in _MESSAGE_FIELDS)

    @staticmethod
    def _column_value(name: str, value: Any) -> Any:
        if name in ("recipients", "cc"):
            return json.dumps(value)
        if name in ("flag_read", "flag_favorite"):
            return 1 if value else 0
        if name in ("flags", "load_state"):
            return int(value)
        return value

    def _row_to_message(self, row) -> Message:
        """Convert a database row to a Message object."""
        return Message(
            id=row["id"],
            account_id=row["account_id"],
            mailbox_id=row["mailbox_id"],
            server_id=row["server_id"] or "",
            main_mailbox_id=row["main_mailbox_id"],
            protocol_search_info=row["protocol_search_info"] or "",
            message_id=row["message_id"] or "",
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            sender_name=row["sender_name"] or "",
            recipients=json.loads(row["recipients"]) if row["recipients"] else [],
            cc=json.loads(row["cc"]) if row["cc"] else [],
            timestamp=row["timestamp"],
            server_timestamp=row["server_timestamp"],
            flag_read=bool(row["flag_read"]),
            flag_favorite=bool(row["flag_favorite"]),
            flags=MessageFlags(row["flags"]),
            load_state=LoadState(row["load_state"]),
            body_text=row["body_text"] or "",
            body_html=row["body_html"] or "",
        )

    def _row_to_info(self, row) -> LocalMessageInfo:
        return LocalMessageInfo(
            id=row["id"],
            server_id=row["server_id"],
            flag_read=bool(row["flag_read"]),
            flag_favorite=bool(row["flag_favorite"]),
            flags=MessageFlags(row["flags"]),
            load_state=LoadState(row["load_state"]),
            timestamp=row["timestamp"],
        )

    # =========================================================================
    # Attachment Operations
    # =========================================================================

    async def get_attachments(self, message_id: int) -> list[Attachment]:
        async with self.db.conn.execute(
            "SELECT * FROM attachments WHERE message_id = ? ORDER BY id",
            (message_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_attachment(row) for row in rows]

    async def save_attachments(self, message_id: int, attachments: list[Attachment]) -> None:
        """Replace the attachment metadata of a message."""
        await self._replace_attachments(message_id, attachments)
        await self.db.conn.commit()

    async def _replace_attachments(self, message_id: int, attachments: list[Attachment]) -> None:
        await self.db.conn.execute(
            "DELETE FROM attachments WHERE message_id = ?", (message_id,)
        )
        for att in attachments:
            cursor = await self.db.conn.execute(
                """INSERT INTO attachments
                   (message_id, filename, content_type, size, content_id, is_inline,
                    location, content_path)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (message_id, att.filename, att.content_type, att.size,
                 att.content_id, 1 if att.is_inline else 0, att.location, att.content_path)
            )
            att.id = cursor.lastrowid
            att.message_id = message_id

    def _row_to_attachment(self, row) -> Attachment:
        return Attachment(
            id=row["id"],
            message_id=row["message_id"],
            filename=row["filename"],
            content_type=row["content_type"],
            size=row["size"],
            content_id=row["content_id"] or "",
            is_inline=bool(row["is_inline"]),
            location=row["location"] or "",
            content_path=row["content_path"],
        )

    # =========================================================================
    # User Operations
    # =========================================================================
    # Local edits that still have to reach the server. The first edit of a
    # message snapshots the row, later edits leave the snapshot alone, so
    # the upsyncer always diffs against the last known server state.

    async def user_update_message(
        self,
        message_id: int,
        *,
        flag_read: bool | None = None,
        flag_favorite: bool | None = None,
        flags: MessageFlags | None = None,
        mailbox_id: int | None = None,
    ) -> None:
        """
        Change a message on behalf of the user.

        Args:
            message_id: Message to change.
            flag_read: New read state.
            flag_favorite: New starred state.
            flags: New MessageFlags bits (e.g. REPLIED_TO after replying).
            mailbox_id: Move the message to another mailbox.
        """
        changes = {
            "flag_read": flag_read,
            "flag_favorite": flag_favorite,
            "flags": flags,
            "mailbox_id": mailbox_id,
        }
        changes = {name: value for name, value in changes.items() if value is not None}
        if not changes:
            return

        await self.db.conn.execute(
            "INSERT OR IGNORE INTO message_updates SELECT * FROM messages WHERE id = ?",
            (message_id,)
        )
        assignments = ", ".join(f"{name}=?" for name in changes)
        await self.db.conn.execute(
            f"UPDATE messages SET {assignments} WHERE id=?",
            tuple(self._column_value(name, value) for name, value in changes.items()) + (message_id,),
        )
        await self.db.conn.commit()
        self._notify(ChangeKind.MESSAGE, ChangeOp.UPDATE, message_id)

    async def user_delete_message(self, message_id: int) -> None:
        """Delete a message on behalf of the user, remembering it for upsync."""
        await self.db.conn.execute(
            "INSERT OR IGNORE INTO message_deletes SELECT * FROM messages WHERE id = ?",
            (message_id,)
        )
        await self.db.conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
        await self.db.conn.commit()
        self._notify(ChangeKind.MESSAGE, ChangeOp.DELETE, message_id)

    async def user_add_message(self, message: Message) -> Message:
        """
        Store a message composed on this device (e.g. a sent message that
        still has to be uploaded). It stays local-only until upsync.
        """
        message.server_id = ""
        await self.save_message(message)
        self._notify(ChangeKind.MESSAGE, ChangeOp.INSERT, message.id)
        return message

    # =========================================================================
    # Pending Changes (upsync)
    # =========================================================================

    async def get_pending_deletes(self, account_id: int) -> list[Message]:
        """Snapshots of user-deleted messages, grouped by mailbox."""
        async with self.db.conn.execute(
            "SELECT * FROM message_deletes WHERE account_id = ? ORDER BY mailbox_id, id",
            (account_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def get_pending_updates(self, account_id: int) -> list[Message]:
        """Pre-edit snapshots of user-modified messages, grouped by mailbox."""
        async with self.db.conn.execute(
            "SELECT * FROM message_updates WHERE account_id = ? ORDER BY mailbox_id, id",
            (account_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [self._row_to_message(row) for row in rows]

    async def remove_pending_delete(self, message_id: int) -> None:
        await self.db.conn.execute("DELETE FROM message_deletes WHERE id = ?", (message_id,))
        await self.db.conn.commit()

    async def remove_pending_update(self, message_id: int) -> None:
        await self.db.conn.execute("DELETE FROM message_updates WHERE id = ?", (message_id,))
        await self.db.conn.commit()

    async def remove_pending_updates_for_mailbox(self, mailbox_id: int) -> None:
        """Drop pending updates of a mailbox that never syncs."""
        await self.db.conn.execute(
            """DELETE FROM message_updates WHERE id IN
               (SELECT id FROM messages WHERE mailbox_id = ?)""",
            (mailbox_id,)
        )
        await self.db.conn.commit()
