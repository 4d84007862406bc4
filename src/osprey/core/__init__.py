# =============================================================================
# Osprey Core Module
# =============================================================================
# Core domain models for Osprey. These are plain Python dataclasses with no
# external dependencies, so they can be imported anywhere without causing
# circular imports.
#
#   - Account: An IMAP account and its sync policy
#   - Mailbox: A server folder mirrored locally
#   - Message: A locally stored message row
#   - MessagingError: The error family shared by every component
# =============================================================================

from osprey.core.account import (
    DAY_MS,
    SYNC_INTERVAL_NEVER,
    SYNC_INTERVAL_PUSH,
    Account,
    SyncWindow,
)
from osprey.core.errors import (
    AuthenticationFailedError,
    ConnectionFailedError,
    ErrorKind,
    MessagingError,
    ServerError,
)
from osprey.core.mailbox import Mailbox, MailboxType, UiSyncStatus
from osprey.core.message import (
    LOCAL_SERVER_ID_PREFIX,
    Attachment,
    LoadState,
    LocalMessageInfo,
    Message,
    MessageFlags,
)

__all__ = [
    # Accounts
    "Account",
    "SyncWindow",
    "SYNC_INTERVAL_NEVER",
    "SYNC_INTERVAL_PUSH",
    "DAY_MS",
    # Mailboxes
    "Mailbox",
    "MailboxType",
    "UiSyncStatus",
    # Messages
    "Message",
    "MessageFlags",
    "LoadState",
    "LocalMessageInfo",
    "Attachment",
    "LOCAL_SERVER_ID_PREFIX",
    # Errors
    "ErrorKind",
    "MessagingError",
    "ConnectionFailedError",
    "AuthenticationFailedError",
    "ServerError",
]
