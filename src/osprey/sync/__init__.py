# =============================================================================
# Osprey Sync Module
# =============================================================================
# The sync engine:
#   - window: how far back a pass looks, and growing that window
#   - reconcile: pulling server state into the local store
#   - loader: downloading bodies of new messages
#   - upsync: pushing pending local changes to the server
#   - folders: mirroring the server folder list
#   - search: remote search into a local search mailbox
#   - orchestrator: the entry points that sequence all of the above
# =============================================================================

from osprey.sync.folders import FolderListSynchronizer
from osprey.sync.loader import MessageLoader
from osprey.sync.orchestrator import AccountSyncResult, SyncOrchestrator, SyncResult, SyncStatus
from osprey.sync.reconcile import ReconcileResult, ReconciliationEngine
from osprey.sync.search import RemoteSearcher
from osprey.sync.upsync import PendingChangeUpsyncer, PhaseResult, UpsyncPhase, UpsyncResult
from osprey.sync.window import SyncPlan, SyncWindow, SyncWindowPlanner

__all__ = [
    # Entry points
    "SyncOrchestrator",
    "SyncResult",
    "AccountSyncResult",
    "SyncStatus",
    # Download
    "ReconciliationEngine",
    "ReconcileResult",
    "MessageLoader",
    "SyncWindowPlanner",
    "SyncPlan",
    "SyncWindow",
    "FolderListSynchronizer",
    "RemoteSearcher",
    # Upload
    "PendingChangeUpsyncer",
    "UpsyncResult",
    "PhaseResult",
    "UpsyncPhase",
]
