"""Shared SQLite connection for the device-side stores."""

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Schema for the device database
LOCAL_SCHEMA = """
-- Pending event log: ordered queue of unacknowledged mutations
CREATE TABLE IF NOT EXISTS pending_events (
    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    entity_type TEXT NOT NULL,
    operation TEXT NOT NULL,
    target_id TEXT NOT NULL,
    payload TEXT,
    created_at TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    state TEXT NOT NULL DEFAULT 'pending',
    last_error TEXT,
    last_attempt_at TEXT,
    next_attempt_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pending_target ON pending_events(entity_type, target_id);
CREATE INDEX IF NOT EXISTS idx_pending_state ON pending_events(state);

-- Local record store: the device's view of every record it knows about
CREATE TABLE IF NOT EXISTS local_records (
    entity_type TEXT NOT NULL,
    id TEXT NOT NULL,
    family_id TEXT NOT NULL,
    payload TEXT,
    pending_sync INTEGER NOT NULL DEFAULT 0,
    synced_at TEXT,
    updated_at TEXT,
    conflicted INTEGER NOT NULL DEFAULT 0,
    conflict_reason TEXT,
    deleted INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (family_id, entity_type, id)
);

CREATE INDEX IF NOT EXISTS idx_local_pending ON local_records(pending_sync);

-- Pull cursor per (user, device)
CREATE TABLE IF NOT EXISTS sync_state (
    user_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    cursor TEXT,
    last_pull_at TEXT,
    PRIMARY KEY (user_id, device_id)
);
"""


class LocalDatabase:
    """Owns the device SQLite connection shared by the local stores.

    Writes from the record store and the event log commit through
    :meth:`commit`, which is deferred while a :meth:`transaction` is open so
    an optimistic write and its enqueue land together or not at all.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database handle.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser() if str(db_path) != ":memory:" else None
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            target = str(self.db_path)
        else:
            target = ":memory:"

        self._conn = sqlite3.connect(target, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(LOCAL_SCHEMA)
        self._conn.commit()

        logger.info(f"LocalDatabase connected to {target}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        """Connection, opened on first use."""
        if self._conn is None:
            self.connect()
        return self._conn

    def commit(self) -> None:
        """Commit unless an outer transaction is open."""
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several store writes into one atomic commit."""
        conn = self.conn
        self._tx_depth += 1
        try:
            yield conn
        except BaseException:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.rollback()
            raise
        else:
            self._tx_depth -= 1
            if self._tx_depth == 0:
                conn.commit()
