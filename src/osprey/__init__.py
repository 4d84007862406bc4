# =============================================================================
# Osprey: IMAP Mailbox Synchronization with IDLE Push
# =============================================================================
#
# Osprey keeps a local SQLite copy of IMAP mailboxes current. Local edits
# are pushed to the server first, then the server state is reconciled into
# the local store, and push accounts stay live over IMAP IDLE.
#
# Features:
#   - Time-window based reconciliation with adaptive window growth
#   - Pending local changes (deletes, uploads, flag changes, moves) replayed
#     against the server before every sync
#   - IMAP IDLE with kick, backoff and connectivity-aware restarts
#   - Remote search with "load more"
#   - XDG Base Directory compliant
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "osprey"

# Main entry point - this is what gets called by the 'osprey' command
from osprey.app import main

__all__ = ["main", "__version__", "__app_name__"]
