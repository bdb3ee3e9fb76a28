"""Device-side storage for offline-first sync.

Provides:
- A durable pending event log of unacknowledged local mutations
- The local record store with pending/conflict flags and the pull cursor
"""

from .database import LocalDatabase
from .event_log import PendingEventLog
from .record_store import LocalRecordStore

__all__ = ["LocalDatabase", "LocalRecordStore", "PendingEventLog"]
