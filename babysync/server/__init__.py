"""Remote sync service and its HTTP API."""

from .app import create_app
from .authority import InMemoryTokenAuthority, IssuedTokens, Principal, TokenAuthority
from .datastore import SQLiteRepository, SyncDatastore
from .repository import (
    AccessDeniedError,
    DomainRepository,
    RecordNotFoundError,
    RecordValidationError,
    StoredRecord,
)
from .service import IncomingEvent, InvalidCursorError, PullPage, RemoteSyncService

__all__ = [
    "AccessDeniedError",
    "DomainRepository",
    "IncomingEvent",
    "InMemoryTokenAuthority",
    "InvalidCursorError",
    "IssuedTokens",
    "Principal",
    "PullPage",
    "RecordNotFoundError",
    "RecordValidationError",
    "RemoteSyncService",
    "SQLiteRepository",
    "StoredRecord",
    "SyncDatastore",
    "TokenAuthority",
    "create_app",
]
