# =============================================================================
# Osprey IMAP Module
# =============================================================================
# Everything that talks to the server:
#   - folder: the abstract RemoteFolder/RemoteStore contract and its types
#   - client: aioimaplib wrapper and response parsers
#   - store: ImapStore/ImapFolder, the contract implemented over IMAPClient
#   - idle: the IDLE connection supervisor
# =============================================================================

from osprey.imap.folder import (
    BodyPart,
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

__all__ = [
    # Contract
    "RemoteFolder",
    "RemoteStore",
    "RemoteMessage",
    "RemoteFolderInfo",
    "BodyPart",
    "OpenMode",
    "Flag",
    "FetchItem",
    "FetchProfile",
    "CopyResult",
    "CopyStatus",
    "SearchParams",
    # IDLE events
    "IdleEvent",
    "IdleEventKind",
    "IdleCallback",
]
