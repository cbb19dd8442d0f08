"""Client storage and sync layer for klettrack.

- ``SQLiteStorage``: local record cache and persisted sync state
- ``MutationQueue``: ordered pending-mutation map
- ``ConflictAuditLog``: capped conflict event trail
- ``SyncAPIClient``: HTTP client for the sync endpoints
- ``SyncReconciler``: the push/pull loop tying them together
"""

from .audit import ConflictAuditLog
from .base import LocalStore, SyncState
from .cloud import SyncAPIClient, SyncAPIError, load_credentials
from .queue import MutationQueue
from .sqlite import SQLiteStorage
from .sync_engine import SyncReconciler

__all__ = [
    "ConflictAuditLog",
    "LocalStore",
    "MutationQueue",
    "SQLiteStorage",
    "SyncAPIClient",
    "SyncAPIError",
    "SyncReconciler",
    "SyncState",
    "load_credentials",
]
