# =============================================================================
# Mailbox Model
# =============================================================================
# Represents one server folder mapped 1:1 onto a local message collection.
#
# The mailbox type drives most sync decisions:
#   - DRAFTS and OUTBOX are local-only and never pulled from the server
#   - SEARCH mailboxes hold remote search results and are never synced or idled
#   - TRASH and SENT are created on the server on demand
# =============================================================================

from dataclasses import dataclass
from enum import Enum, auto

from osprey.core.account import Account, SyncWindow


class MailboxType(Enum):
    """
    Mailbox types.

    The string value is what gets stored in the database.
    """
    INBOX = auto()      # Main incoming mail
    MAIL = auto()       # Any other user folder
    SENT = auto()       # Sent messages
    TRASH = auto()      # Deleted messages
    DRAFTS = auto()     # Unsent drafts (local only)
    OUTBOX = auto()     # Messages waiting to be sent (local only)
    JUNK = auto()       # Spam folder
    SEARCH = auto()     # Remote search results

    @classmethod
    def from_name(cls, value: str) -> "MailboxType":
        """Look up a type by its (case-insensitive) name, defaulting to MAIL."""
        try:
            return cls[value.upper()]
        except KeyError:
            return cls.MAIL


class UiSyncStatus(Enum):
    """What kind of sync, if any, the mailbox is currently going through."""
    NONE = auto()
    USER = auto()           # User-requested refresh
    BACKGROUND = auto()     # Periodic or push-triggered sync
    LIVE_QUERY = auto()     # Remote search is filling this mailbox


# Mailbox types that never hold server state
_LOCAL_ONLY_TYPES = (MailboxType.DRAFTS, MailboxType.OUTBOX)


@dataclass
class Mailbox:
    """
    Represents a mailbox (an IMAP folder mirrored locally).

    Attributes:
        server_id: Full IMAP path (e.g., "INBOX", "Work/Projects").
        account_id: Foreign key to the owning Account.
        display_name: Name shown to the user.
        mailbox_type: Classification driving the sync rules.

        sync_lookback: How far back to sync. ACCOUNT defers to the account.
        sync_interval: 1 when the mailbox takes part in push (IDLE) sync.

        last_full_sync_time: Monotonic milliseconds of the last full sync.
                             Compared with elapsed time, never wall time.
        total_messages: Server message count from the last sync.
        sync_time: Wall-clock milliseconds of the last sync attempt.
        ui_sync_status: Current sync activity on this mailbox.

        id: Database primary key.
    """

    # Server identity
    server_id: str                      # Full IMAP path
    account_id: int | None = None
    display_name: str = ""
    mailbox_type: MailboxType = MailboxType.MAIL

    # Sync policy
    sync_lookback: SyncWindow = SyncWindow.ACCOUNT
    sync_interval: int = 0              # 1 = push mailbox

    # Sync bookkeeping
    last_full_sync_time: int = 0        # Monotonic ms
    total_messages: int = 0
    sync_time: int = 0                  # Wall-clock ms
    ui_sync_status: UiSyncStatus = UiSyncStatus.NONE

    # Database field
    id: int | None = None

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = self.server_id.rsplit("/", 1)[-1]

    @property
    def loads_from_server(self) -> bool:
        """True if the mailbox mirrors a server folder (not drafts/outbox/search)."""
        return self.mailbox_type not in _LOCAL_ONLY_TYPES + (MailboxType.SEARCH,)

    @property
    def can_idle(self) -> bool:
        """True if IDLE may be registered on this mailbox type."""
        return self.mailbox_type not in _LOCAL_ONLY_TYPES

    @property
    def is_push_mailbox(self) -> bool:
        """True if the mailbox is flagged to take part in push sync."""
        return self.sync_interval == 1

    def lookback_days(self, account: Account) -> int:
        """
        Resolve the number of days this mailbox synchronizes.

        Args:
            account: Owning account, consulted when the mailbox says ACCOUNT.
        """
        window = self.sync_lookback
        if window == SyncWindow.ACCOUNT:
            window = account.sync_lookback
        return window.to_days()

    @classmethod
    def detect_type(cls, folder_name: str, flags: list[str] | None = None) -> MailboxType:
        """
        Detect the mailbox type from SPECIAL-USE attributes or the folder name.

        SPECIAL-USE attributes (RFC 6154) win when the server sends them;
        otherwise common provider naming conventions are matched.

        Args:
            folder_name: The IMAP folder path.
            flags: LIST attributes such as "\\Sent" or "\\Trash".

        Returns:
            The detected MailboxType, MAIL if unrecognized.
        """
        flags_upper = [f.upper() for f in flags or []]
        name_lower = folder_name.lower()

        if name_lower == "inbox":
            return MailboxType.INBOX
        if "\\SENT" in flags_upper:
            return MailboxType.SENT
        if "\\DRAFTS" in flags_upper:
            return MailboxType.DRAFTS
        if "\\TRASH" in flags_upper:
            return MailboxType.TRASH
        if "\\JUNK" in flags_upper:
            return MailboxType.JUNK

        # Fall back to name-based detection
        if name_lower in ("sent", "sent mail", "sent items", "[gmail]/sent mail"):
            return MailboxType.SENT
        if name_lower in ("drafts", "draft", "[gmail]/drafts"):
            return MailboxType.DRAFTS
        if name_lower in ("trash", "deleted", "deleted items", "[gmail]/trash"):
            return MailboxType.TRASH
        if name_lower in ("junk", "spam", "junk mail", "[gmail]/spam"):
            return MailboxType.JUNK
        return MailboxType.MAIL

    def __str__(self) -> str:
        return self.server_id

    def __repr__(self) -> str:
        return (
            f"Mailbox(id={self.id}, server_id={self.server_id!r}, "
            f"type={self.mailbox_type.name}, messages={self.total_messages})"
        )
