# =============================================================================
# IMAP Store and Folder
# =============================================================================
# The aioimaplib-backed implementation of the remote mailbox contract.
#
# Key responsibilities:
#   - ImapStore: per-account connection pool and folder factory
#   - ImapFolder: one server folder; maps the contract onto IMAPClient calls
#   - IDLE loop: turns server pushes into IdleEvents for the supervisor
#
# Design notes:
#   - An open folder borrows one connection from the store and returns it on
#     close(). close_connections() only logs out connections sitting in the
#     pool, so idling folders keep theirs.
#   - Flag changes pushed during IDLE arrive as sequence numbers; they are
#     mapped onto uids after IDLE has ended.
#   - EXISTS/EXPUNGE pushes cannot be expressed as uids and ask for a sync.
# =============================================================================

import asyncio
import logging
import re
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import format_datetime, formataddr, make_msgid
from typing import TYPE_CHECKING, Callable

from osprey.core import Mailbox, MessageFlags, MessagingError, ServerError
from osprey.imap.client import (
    IMAPClient,
    decode_part_content,
    imap_date,
    parse_body_structure,
    parse_envelope,
    parse_flags,
    parse_internal_date,
)
from osprey.imap.folder import (
    CopyResult,
    CopyStatus,
    FetchItem,
    FetchProfile,
    Flag,
    IdleCallback,
    IdleEvent,
    IdleEventKind,
    OpenMode,
    RemoteFolder,
    RemoteFolderInfo,
    RemoteMessage,
    RemoteStore,
    SearchParams,
)

if TYPE_CHECKING:
    from osprey.core import Account, Message

logger = logging.getLogger(__name__)

# UID sets sent in one FETCH command
FETCH_CHUNK_SIZE = 500


def _uid_set(messages: list[RemoteMessage]) -> str:
    return ",".join(m.uid for m in messages)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_mime_message(message: "Message") -> bytes:
    """
    Serialize a local message into RFC 5322 bytes for APPEND.

    A Message-ID is minted (and written back onto the message) when missing,
    so the uploaded copy can be found again on servers without UIDPLUS.
    """
    if not message.message_id:
        message.message_id = make_msgid()

    mime = EmailMessage()
    mime["From"] = formataddr((message.sender_name, message.sender)) if message.sender else ""
    if message.recipients:
        mime["To"] = ", ".join(message.recipients)
    if message.cc:
        mime["Cc"] = ", ".join(message.cc)
    mime["Subject"] = message.subject
    mime["Date"] = format_datetime(
        datetime.fromtimestamp(message.timestamp / 1000, tz=timezone.utc)
    )
    mime["Message-ID"] = message.message_id

    mime.set_content(message.body_text or "")
    if message.body_html:
        mime.add_alternative(message.body_html, subtype="html")
    return mime.as_bytes()


def _parse_idle_notifications(lines: list[str]) -> tuple[bool, list[str], list[str]]:
    """
    Classify IDLE pushes.

    Common notifications (aioimaplib strips the leading *):
        - "N EXISTS" - message count changed (new mail)
        - "N EXPUNGE" - message N was removed
        - "N FETCH (FLAGS ...)" - flags changed on message N

    Returns:
        (need_sync, sequence numbers, uids) where uids are only known when
        the server included UID in the FETCH push.
    """
    need_sync = False
    sequences: list[str] = []
    uids: list[str] = []
    for line in lines:
        line = line.strip().lstrip("*").strip()
        if re.match(r"\d+\s+(EXISTS|EXPUNGE)\b", line, re.IGNORECASE):
            need_sync = True
            continue
        match = re.match(r"(\d+)\s+FETCH\b", line, re.IGNORECASE)
        if match:
            uid_match = re.search(r"UID\s+(\d+)", line, re.IGNORECASE)
            if uid_match:
                uids.append(uid_match.group(1))
            else:
                sequences.append(match.group(1))
    return need_sync, sequences, uids


class ImapStore(RemoteStore):
    """
    Remote store for one IMAP account.

    Usage:
        >>> store = ImapStore(account)
        >>> folder = store.get_folder("INBOX")
        >>> await folder.open(OpenMode.READ_WRITE)
        >>> count = await folder.get_message_count()
        >>> await folder.close()
        >>> await store.close_connections()
    """

    # Read timeout while idling; the supervisor kicks the connection earlier
    IDLE_READ_TIMEOUT = 29 * 60  # seconds

    def __init__(self, account: "Account") -> None:
        self.account = account
        self._pool: list[IMAPClient] = []

    def get_folder(self, server_id: str) -> "ImapFolder":
        return ImapFolder(self, server_id)

    async def acquire(self) -> IMAPClient:
        """Borrow a logged-in connection, opening a new one if the pool is empty."""
        while self._pool:
            client = self._pool.pop()
            if client.is_connected:
                return client
        client = IMAPClient(self.account)
        await client.connect()
        return client

    def release(self, client: IMAPClient) -> None:
        """Return a connection to the pool."""
        if client.is_connected:
            self._pool.append(client)

    async def list_folders(self) -> list[RemoteFolderInfo]:
        client = await self.acquire()
        try:
            folders = await client.list_folders()
        finally:
            self.release(client)
        return [
            RemoteFolderInfo(server_id=name, mailbox_type=Mailbox.detect_type(name, flags))
            for name, flags in folders
            if "\\NOSELECT" not in (f.upper() for f in flags)
        ]

    async def close_connections(self) -> None:
        pool, self._pool = self._pool, []
        for client in pool:
            await client.disconnect()


class StoreCache:
    """
    Hands out one RemoteStore per account so the sync engine and the IDLE
    supervisor share connections.
    """

    def __init__(self, factory: Callable[["Account"], RemoteStore] = ImapStore) -> None:
        self._factory = factory
        self._stores: dict[int, RemoteStore] = {}

    def __call__(self, account: "Account") -> RemoteStore:
        store = self._stores.get(account.id)
        if store is None:
            store = self._factory(account)
            self._stores[account.id] = store
        return store

    async def close_all(self) -> None:
        for store in self._stores.values():
            await store.close_connections()


class ImapFolder(RemoteFolder):
    """One IMAP folder. See RemoteFolder for the contract."""

    def __init__(self, store: ImapStore, server_id: str) -> None:
        super().__init__(server_id)
        self._store = store
        self._client: IMAPClient | None = None
        self._mode: OpenMode | None = None
        self._message_count = 0
        self._permanent_flags: set[Flag] = set()

        # IDLE state
        self._callback: IdleCallback | None = None
        self._idle_task: asyncio.Task | None = None
        self._idling = False

    @property
    def is_open(self) -> bool:
        return self._client is not None and self._client.is_connected and self._mode is not None

    @property
    def is_idling(self) -> bool:
        return self._idling

    def _require_client(self) -> IMAPClient:
        if not self.is_open:
            raise MessagingError(f"Folder {self.server_id} is not open")
        return self._client

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self, mode: OpenMode) -> None:
        if self.is_open and self._mode == mode:
            return
        if self._client is None or not self._client.is_connected:
            self._client = await self._store.acquire()
        try:
            status = await self._client.select_folder(
                self.server_id, readonly=(mode == OpenMode.READ_ONLY)
            )
        except MessagingError:
            self._release()
            raise
        self._mode = mode
        self._message_count = status["EXISTS"]
        self._permanent_flags = status["PERMANENTFLAGS"]

    def _release(self) -> None:
        if self._client is not None:
            self._store.release(self._client)
        self._client = None
        self._mode = None

    async def close(self, expunge: bool = False) -> None:
        if self._idling or self._client is None:
            return
        try:
            await self._client.close_folder(expunge)
        finally:
            self._release()

    async def exists(self) -> bool:
        if self.is_open:
            return True
        client = await self._store.acquire()
        try:
            return await client.folder_exists(self.server_id)
        finally:
            self._store.release(client)

    async def create(self) -> bool:
        client = await self._store.acquire()
        try:
            await client.create_folder(self.server_id)
            return True
        except ServerError as e:
            logger.warning(f"Could not create folder {self.server_id}: {e}")
            return False
        finally:
            self._store.release(client)

    # =========================================================================
    # Listing
    # =========================================================================

    async def get_message_count(self) -> int:
        if self.is_open:
            return self._message_count
        client = await self._store.acquire()
        try:
            return await client.message_count(self.server_id)
        finally:
            self._store.release(client)

    async def get_messages_in_window(
        self, since_ms: int, until_ms: int | None = None,
    ) -> list[RemoteMessage]:
        criteria = f"SINCE {imap_date(max(since_ms, 0))}"
        if until_ms is not None:
            # BEFORE is exclusive and day-granular; the day of until_ms + 1
            # belongs to the newer listing
            criteria += f" BEFORE {imap_date(until_ms + 1)}"
        uids = await self._require_client().uid_search(criteria)
        return [RemoteMessage(uid=uid) for uid in sorted(uids, key=int)]

    async def get_messages_by_uids(self, uids: list[str]) -> list[RemoteMessage]:
        if not uids:
            return []
        found = await self._require_client().uid_search(f"UID {','.join(uids)}")
        return [RemoteMessage(uid=uid) for uid in sorted(found, key=int)]

    async def get_message(self, uid: str) -> RemoteMessage | None:
        messages = await self.get_messages_by_uids([uid])
        return messages[0] if messages else None

    async def search(self, params: SearchParams) -> list[RemoteMessage]:
        uids = await self._require_client().uid_search(f"TEXT {_quote(params.query)}")
        return [RemoteMessage(uid=uid) for uid in sorted(uids, key=int)]

    # =========================================================================
    # Fetching and Flags
    # =========================================================================

    async def fetch(self, messages: list[RemoteMessage], profile: FetchProfile) -> None:
        if not messages:
            return
        client = self._require_client()

        items = []
        if FetchItem.FLAGS in profile:
            items.append("FLAGS")
        if FetchItem.ENVELOPE in profile:
            items.extend(["ENVELOPE", "INTERNALDATE"])
        if FetchItem.STRUCTURE in profile:
            items.append("BODYSTRUCTURE")
        if FetchItem.BODY_PART in profile and profile.part is not None:
            items.append(f"BODY.PEEK[{profile.part.part_id}]")
        item_str = f"(UID {' '.join(items)})"

        by_uid = {m.uid: m for m in messages}
        for i in range(0, len(messages), FETCH_CHUNK_SIZE):
            chunk = messages[i:i + FETCH_CHUNK_SIZE]
            for record in await client.uid_fetch(_uid_set(chunk), item_str):
                message = by_uid.get(str(record.get("UID")))
                if message is None:
                    continue
                if "FLAGS" in record:
                    message.flags = parse_flags(record["FLAGS"])
                if "ENVELOPE" in record:
                    envelope = parse_envelope(record["ENVELOPE"])
                    message.subject = envelope.subject
                    message.sender = envelope.sender
                    message.sender_name = envelope.sender_name
                    message.recipients = envelope.recipients
                    message.cc = envelope.cc
                    message.message_id = envelope.message_id
                    message.sent_date = envelope.date
                if "INTERNALDATE" in record:
                    message.internal_date = parse_internal_date(record["INTERNALDATE"])
                if "BODYSTRUCTURE" in record:
                    message.parts = parse_body_structure(record["BODYSTRUCTURE"])
                if profile.part is not None:
                    key = f"BODY[{profile.part.part_id}]"
                    if key in record:
                        profile.part.content = decode_part_content(record[key], profile.part)

    async def get_permanent_flags(self) -> set[Flag]:
        self._require_client()
        return set(self._permanent_flags)

    async def set_flags(self, messages: list[RemoteMessage], flags: set[Flag], value: bool) -> None:
        if not messages or not flags:
            return
        await self._require_client().uid_store(_uid_set(messages), flags, value)
        for message in messages:
            for flag in flags:
                message.set_flag(flag, value)

    # =========================================================================
    # Moving Messages
    # =========================================================================

    async def copy_messages(
        self, messages: list[RemoteMessage], destination: RemoteFolder,
    ) -> list[CopyResult]:
        if not messages:
            return []
        client = self._require_client()
        mapping = await client.uid_copy(_uid_set(messages), destination.server_id)

        results = []
        unmapped = [m for m in messages if m.uid not in mapping]
        for message in messages:
            if message.uid in mapping:
                results.append(CopyResult(message.uid, CopyStatus.UID_CHANGED, mapping[message.uid]))
        if unmapped:
            results.extend(await self._resolve_copies(unmapped, destination))
        return results

    async def _resolve_copies(
        self, messages: list[RemoteMessage], destination: RemoteFolder,
    ) -> list[CopyResult]:
        """Work out copy outcomes on servers without UIDPLUS."""
        client = self._require_client()
        still_here = set(await client.uid_search(f"UID {_uid_set(messages)}"))
        missing = [m for m in messages if m.uid not in still_here]
        present = [m for m in messages if m.uid in still_here]

        results = [CopyResult(m.uid, CopyStatus.NOT_FOUND) for m in missing]
        if not present:
            return results

        needs_envelope = [m for m in present if not m.message_id]
        await self.fetch(needs_envelope, FetchProfile.of(FetchItem.ENVELOPE))

        lookup = await self._store.acquire()
        try:
            await lookup.select_folder(destination.server_id, readonly=True)
            for message in present:
                new_uids = []
                if message.message_id:
                    new_uids = await lookup.uid_search(
                        f"HEADER Message-ID {_quote(message.message_id)}"
                    )
                if new_uids:
                    results.append(CopyResult(message.uid, CopyStatus.UID_CHANGED, new_uids[-1]))
                else:
                    results.append(CopyResult(message.uid, CopyStatus.COPIED))
        finally:
            self._store.release(lookup)
        return results

    async def append_message(self, message: "Message") -> str:
        client = self._require_client()
        flags = set()
        if message.flag_read:
            flags.add(Flag.SEEN)
        if message.flag_favorite:
            flags.add(Flag.FLAGGED)
        if message.flags & MessageFlags.REPLIED_TO:
            flags.add(Flag.ANSWERED)

        date = datetime.fromtimestamp(message.timestamp / 1000, tz=timezone.utc)
        uid = await client.append(self.server_id, build_mime_message(message), flags, date)
        if uid is None:
            found = await client.uid_search(f"HEADER Message-ID {_quote(message.message_id)}")
            uid = found[-1] if found else ""
        return uid

    async def expunge(self) -> None:
        await self._require_client().expunge()

    # =========================================================================
    # IDLE
    # =========================================================================

    async def start_idling(self, callback: IdleCallback) -> None:
        client = self._require_client()
        if not client.supports_idle():
            raise ServerError(f"Server does not support IDLE ({self.server_id})")

        self._callback = callback
        await client.idle_start(timeout=self._store.IDLE_READ_TIMEOUT)
        self._idling = True
        logger.debug(f"IDLE started on {self.server_id}")
        self._idle_task = asyncio.create_task(
            self._idle_loop(client), name=f"idle-{self.server_id}"
        )
        await callback(IdleEvent(IdleEventKind.IDLED))

    async def _idle_loop(self, client: IMAPClient) -> None:
        """Wait for pushes until something changes, then report it."""
        need_sync, sequences, uids = False, [], []
        try:
            while not (need_sync or sequences or uids):
                notifications = await client.idle_wait(timeout=self._store.IDLE_READ_TIMEOUT)
                if not notifications:
                    raise asyncio.TimeoutError()
                need_sync, sequences, uids = _parse_idle_notifications(notifications)
        except asyncio.TimeoutError:
            await self._abandon(IdleEvent(IdleEventKind.TIMEOUT))
            return
        except MessagingError as e:
            await self._abandon(IdleEvent(IdleEventKind.EXCEPTION, error=e))
            return

        self._idling = False
        await client.idle_done()
        if sequences and not need_sync:
            try:
                uids.extend(await client.fetch_uids(",".join(sequences)))
            except MessagingError as e:
                logger.warning(f"Could not map IDLE sequence numbers on {self.server_id}: {e}")
                need_sync = True
        await self._callback(IdleEvent(IdleEventKind.NEW_CHANGES, need_sync=need_sync, uids=uids))

    async def _abandon(self, event: IdleEvent) -> None:
        """Drop a connection that failed while idling and report why."""
        self._idling = False
        client, self._client, self._mode = self._client, None, None
        if client is not None:
            await client.disconnect()
        await self._callback(event)

    async def stop_idling(self, disconnect: bool) -> None:
        was_idling = self._idling
        task, self._idle_task = self._idle_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._idling = False

        if self._client is not None:
            if was_idling:
                await self._client.idle_done()
            if disconnect:
                client, self._client, self._mode = self._client, None, None
                await client.disconnect()

        if was_idling and self._callback is not None:
            await self._callback(IdleEvent(IdleEventKind.IDLING_DONE))
