# =============================================================================
# Osprey Storage Module
# =============================================================================
# Local persistence:
#   - Database: aiosqlite connection and schema
#   - Repository: the local message store (sync engine + user API)
#   - AttachmentStore: attachment files on disk
# =============================================================================

from osprey.storage.attachments import AttachmentStore
from osprey.storage.database import Database
from osprey.storage.repository import ChangeKind, ChangeListener, ChangeOp, Repository

__all__ = [
    "Database",
    "Repository",
    "AttachmentStore",
    # Change notifications
    "ChangeKind",
    "ChangeOp",
    "ChangeListener",
]
