# =============================================================================
# Message Model
# =============================================================================
# Represents a locally stored message row and the lightweight projection the
# reconciliation engine diffs against the server.
#
# A message is identified on the server by its server_id (the IMAP UID as a
# string) within a mailbox. An empty server_id, or one carrying the "Local-"
# prefix, marks a message that exists only on this device so far.
# =============================================================================

from dataclasses import dataclass, field
from enum import IntEnum, IntFlag


# Server ids carrying this prefix were minted locally and never uploaded
LOCAL_SERVER_ID_PREFIX = "Local-"


class MessageFlags(IntFlag):
    """
    Local message flags stored as a bitmask.

    Read and favorite have their own columns; these are the remaining
    per-message markers that map onto server state.
    """
    NONE = 0
    REPLIED_TO = 1 << 0     # Mirrors \\Answered on the server
    FORWARDED = 1 << 1      # Local only


class LoadState(IntEnum):
    """How much of a message has been downloaded."""
    UNLOADED = 0    # Envelope only
    COMPLETE = 1    # Envelope, viewable body parts and attachment metadata
    PARTIAL = 2     # Body truncated, needs a reload
    DELETED = 3     # Tombstone, waiting for upsync


@dataclass
class Attachment:
    """
    Attachment metadata for a message.

    Content is never downloaded during sync; `location` remembers the MIME
    part id so the content can be fetched later on demand.

    Attributes:
        filename: Original filename of the attachment.
        content_type: MIME type (e.g., "application/pdf").
        size: Size in bytes as reported by the server.
        content_id: Content-ID for inline parts, referenced as cid: in HTML.
        is_inline: True for inline (embedded) parts.
        location: MIME part id on the server (e.g., "2", "1.3").
        content_path: Local file path once the content was downloaded.
        id: Database primary key.
        message_id: Foreign key to the parent Message.
    """
    filename: str
    content_type: str = "application/octet-stream"
    size: int = 0
    content_id: str = ""
    is_inline: bool = False
    location: str = ""                  # IMAP part id
    content_path: str | None = None     # Set when content is on disk
    id: int | None = None
    message_id: int | None = None


@dataclass
class Message:
    """
    Represents a message row in the local store.

    Attributes:
        account_id: Owning account.
        mailbox_id: Mailbox currently holding the row.
        server_id: IMAP UID as a string. Empty for local-only messages.

        main_mailbox_id: For search results, the mailbox the hit really
                         lives in.
        protocol_search_info: For search results, the server path of that
                              mailbox.

        message_id: RFC 5322 Message-ID header.
        subject, sender, sender_name, recipients, cc: Envelope data.

        timestamp: Sent date (falls back to the internal date), epoch ms.
        server_timestamp: Server internal date, epoch ms.

        flag_read: Message has been read (\\Seen).
        flag_favorite: Message is starred (\\Flagged).
        flags: Remaining MessageFlags bits.
        load_state: How much of the message is downloaded.

        body_text, body_html: Viewable body parts.
        attachments: Attachment metadata (loaded separately).

        id: Database primary key.

    Example:
        >>> msg = Message(account_id=1, mailbox_id=2, server_id="4711")
        >>> msg.is_local_only
        False
    """

    # Location
    account_id: int | None = None
    mailbox_id: int | None = None
    server_id: str = ""                 # IMAP UID, "" until uploaded

    # Search-result bookkeeping
    main_mailbox_id: int | None = None
    protocol_search_info: str = ""

    # Envelope information
    message_id: str = ""
    subject: str = ""
    sender: str = ""
    sender_name: str = ""
    recipients: list[str] = field(default_factory=list)
    cc: list[str] = field(default_factory=list)

    # Timestamps (epoch milliseconds)
    timestamp: int = 0
    server_timestamp: int = 0

    # State
    flag_read: bool = False
    flag_favorite: bool = False
    flags: MessageFlags = MessageFlags.NONE
    load_state: LoadState = LoadState.UNLOADED

    # Body
    body_text: str = ""
    body_html: str = ""
    attachments: list[Attachment] = field(default_factory=list)

    # Database field
    id: int | None = None

    @property
    def is_local_only(self) -> bool:
        """True if the message has never been given a real server id."""
        return not self.server_id or self.server_id.startswith(LOCAL_SERVER_ID_PREFIX)

    @property
    def is_answered(self) -> bool:
        return bool(self.flags & MessageFlags.REPLIED_TO)

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id}, mailbox_id={self.mailbox_id}, "
            f"server_id={self.server_id!r}, subject={self.subject!r}, "
            f"load_state={self.load_state.name})"
        )


@dataclass(frozen=True)
class LocalMessageInfo:
    """
    The slice of a local row needed to diff it against the server.

    Built fresh for every sync pass, never cached across passes.
    """
    id: int
    server_id: str
    flag_read: bool
    flag_favorite: bool
    flags: MessageFlags
    load_state: LoadState
    timestamp: int
