"""Sync engine for offline-first family records.

Local mutations are written optimistically and queued; the sync client
pushes them to the server and pulls everything that changed since the last
cursor.
"""

from .mutations import LocalRecordNotFoundError, RecordMutator
from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = [
    "LocalRecordNotFoundError",
    "RecordMutator",
    "SyncClient",
    "SyncResult",
    "SyncStatus",
]
