# =============================================================================
# Remote Mailbox Contract
# =============================================================================
# The abstract interface the sync engine talks to. ImapFolder/ImapStore
# implement it on top of aioimaplib; the test suite implements it in memory.
#
# Key types:
#   - RemoteMessage: a server-side handle, filled in by fetch()
#   - FetchProfile: which parts of a message fetch() should retrieve
#   - CopyResult: per-message outcome of copy_messages()
#   - IdleEvent: what an idling folder reports to its listener
#
# Design notes:
#   - Every method is async and raises MessagingError (osprey.core.errors)
#   - fetch() mutates the RemoteMessage objects it is given, so a list
#     obtained once can be enriched step by step (flags, envelope, structure)
#   - A folder opened for IDLE keeps its own connection until stopped
# =============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, Awaitable, Callable

from osprey.core import MailboxType, MessagingError

if TYPE_CHECKING:
    from osprey.core import Message


class OpenMode(Enum):
    READ_ONLY = auto()
    READ_WRITE = auto()


class Flag(Enum):
    """IMAP system flags the engine cares about."""
    SEEN = "\\Seen"
    ANSWERED = "\\Answered"
    FLAGGED = "\\Flagged"
    DELETED = "\\Deleted"
    DRAFT = "\\Draft"

    @classmethod
    def from_imap(cls, value: str) -> "Flag | None":
        """Map an IMAP flag atom onto a Flag, None for keywords we ignore."""
        for flag in cls:
            if flag.value.lower() == value.lower():
                return flag
        return None


class FetchItem(Enum):
    FLAGS = auto()
    ENVELOPE = auto()       # Envelope plus internal date
    STRUCTURE = auto()      # MIME structure, no content
    BODY_PART = auto()      # Content of one part (FetchProfile.part)


@dataclass
class BodyPart:
    """
    One leaf of a message's MIME structure.

    Attributes:
        part_id: IMAP section number ("1", "1.2", ...).
        content_type: Lower-case MIME type.
        charset: Declared charset, if any.
        encoding: Content-Transfer-Encoding.
        disposition: "inline", "attachment" or "".
        filename: Attachment filename, if any.
        content_id: Content-ID without angle brackets.
        size: Encoded size in bytes.
        content: Decoded text once fetched.
    """
    part_id: str
    content_type: str = "text/plain"
    charset: str = ""
    encoding: str = "7bit"
    disposition: str = ""
    filename: str = ""
    content_id: str = ""
    size: int = 0
    content: str | None = None

    @property
    def is_viewable(self) -> bool:
        """Text parts that are shown as the message body."""
        return (
            self.content_type in ("text/plain", "text/html")
            and self.disposition != "attachment"
        )


@dataclass
class RemoteMessage:
    """
    A message as seen on the server. Never persisted.

    Only `uid` is guaranteed. The other fields are filled in by fetch()
    according to the FetchProfile used.
    """
    uid: str
    flags: set[Flag] = field(default_factory=set)

    # Envelope (FetchItem.ENVELOPE)
    message_id: str = ""
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)
    sent_date: datetime | None = None
    internal_date: datetime | None = None

    # MIME structure (FetchItem.STRUCTURE), leaves only
    parts: list[BodyPart] = field(default_factory=list)

    def is_set(self, flag: Flag) -> bool:
        return flag in self.flags

    def set_flag(self, flag: Flag, value: bool) -> None:
        if value:
            self.flags.add(flag)
        else:
            self.flags.discard(flag)


@dataclass(frozen=True)
class FetchProfile:
    """
    What fetch() retrieves.

    Usage:
        >>> FetchProfile.of(FetchItem.FLAGS, FetchItem.ENVELOPE)
        >>> FetchProfile.for_part(part)
    """
    items: frozenset[FetchItem]
    part: BodyPart | None = None

    @classmethod
    def of(cls, *items: FetchItem) -> "FetchProfile":
        return cls(items=frozenset(items))

    @classmethod
    def for_part(cls, part: BodyPart) -> "FetchProfile":
        return cls(items=frozenset({FetchItem.BODY_PART}), part=part)

    def __contains__(self, item: FetchItem) -> bool:
        return item in self.items


class CopyStatus(Enum):
    COPIED = auto()         # Copied, destination uid unknown
    UID_CHANGED = auto()    # Copied, new uid reported in CopyResult.new_uid
    NOT_FOUND = auto()      # Source message no longer exists


@dataclass(frozen=True)
class CopyResult:
    source_uid: str
    status: CopyStatus
    new_uid: str | None = None


@dataclass
class SearchParams:
    """
    A remote search request.

    Attributes:
        query: Free text matched against headers and body (IMAP TEXT).
        offset: Number of hits already loaded.
        limit: Maximum hits to load in this call.
    """
    query: str
    offset: int = 0
    limit: int = 20


@dataclass(frozen=True)
class RemoteFolderInfo:
    """One entry of the server's folder list."""
    server_id: str
    mailbox_type: MailboxType


class IdleEventKind(Enum):
    IDLED = auto()          # IDLE accepted by the server
    IDLING_DONE = auto()    # IDLE stopped on request
    NEW_CHANGES = auto()    # Server pushed changes, IDLE has ended
    TIMEOUT = auto()        # No response within the read timeout
    EXCEPTION = auto()      # Connection failure while idling


@dataclass
class IdleEvent:
    """
    Event delivered to an idle listener.

    Attributes:
        kind: What happened.
        need_sync: NEW_CHANGES only. True when the change cannot be
                   expressed as a set of uids (new mail, expunges).
        uids: NEW_CHANGES only. Messages whose flags changed.
        error: EXCEPTION only.
    """
    kind: IdleEventKind
    need_sync: bool = False
    uids: list[str] = field(default_factory=list)
    error: MessagingError | None = None


# Type for the listener callback
IdleCallback = Callable[[IdleEvent], Awaitable[None]]


class RemoteFolder(ABC):
    """
    One folder on the server.

    Attributes:
        server_id: Full folder path.
    """

    def __init__(self, server_id: str) -> None:
        self.server_id = server_id

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @property
    @abstractmethod
    def is_idling(self) -> bool:
        ...

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @abstractmethod
    async def open(self, mode: OpenMode) -> None:
        ...

    @abstractmethod
    async def close(self, expunge: bool = False) -> None:
        ...

    @abstractmethod
    async def exists(self) -> bool:
        ...

    @abstractmethod
    async def create(self) -> bool:
        """Create the folder on the server. Returns False if that failed."""

    # =========================================================================
    # Listing
    # =========================================================================

    @abstractmethod
    async def get_message_count(self) -> int:
        ...

    @abstractmethod
    async def get_messages_in_window(
        self, since_ms: int, until_ms: int | None = None,
    ) -> list[RemoteMessage]:
        """
        Messages dated on the days covering [since_ms, until_ms], oldest first.

        Servers compare dates only: the range starts at the beginning of
        since_ms's day and ends before the day of until_ms + 1, so listing
        [a, b] and then [c, a - 1] never returns the same message twice.
        `until_ms=None` means no upper bound.
        """

    @abstractmethod
    async def get_messages_by_uids(self, uids: list[str]) -> list[RemoteMessage]:
        ...

    @abstractmethod
    async def get_message(self, uid: str) -> RemoteMessage | None:
        ...

    @abstractmethod
    async def search(self, params: SearchParams) -> list[RemoteMessage]:
        ...

    # =========================================================================
    # Fetching and Flags
    # =========================================================================

    @abstractmethod
    async def fetch(self, messages: list[RemoteMessage], profile: FetchProfile) -> None:
        """Fill in the requested data on each message, in place."""

    @abstractmethod
    async def get_permanent_flags(self) -> set[Flag]:
        ...

    @abstractmethod
    async def set_flags(self, messages: list[RemoteMessage], flags: set[Flag], value: bool) -> None:
        ...

    # =========================================================================
    # Moving Messages
    # =========================================================================

    @abstractmethod
    async def copy_messages(
        self, messages: list[RemoteMessage], destination: "RemoteFolder",
    ) -> list[CopyResult]:
        ...

    @abstractmethod
    async def append_message(self, message: "Message") -> str:
        """Upload a local message, returning its new uid."""

    @abstractmethod
    async def expunge(self) -> None:
        ...

    # =========================================================================
    # IDLE
    # =========================================================================

    @abstractmethod
    async def start_idling(self, callback: IdleCallback) -> None:
        ...

    @abstractmethod
    async def stop_idling(self, disconnect: bool) -> None:
        ...


class RemoteStore(ABC):
    """
    The server side of one account: a folder factory plus connection lifetime.
    """

    @abstractmethod
    def get_folder(self, server_id: str) -> RemoteFolder:
        ...

    @abstractmethod
    async def list_folders(self) -> list[RemoteFolderInfo]:
        ...

    @abstractmethod
    async def close_connections(self) -> None:
        """Close every pooled connection. Idling folders are left alone."""
