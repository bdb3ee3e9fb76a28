"""SQLite-backed authoritative datastore for the sync server.

Holds the records of every entity type, the server change sequence, the
dedup ledger of processed push events and per-device sync state.
"""

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from ..models import Ack, AckStatus, Operation, parse_timestamp, utc_now
from .repository import (
    AccessDeniedError,
    DomainRepository,
    RecordNotFoundError,
    StoredRecord,
)

logger = logging.getLogger(__name__)

SERVER_SCHEMA = """
-- Authoritative records for all entity types; deleted rows are tombstones
CREATE TABLE IF NOT EXISTS records (
    entity_type TEXT NOT NULL,
    id TEXT NOT NULL,
    family_id TEXT NOT NULL,
    payload TEXT,
    updated_at TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    seq INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (entity_type, id)
);

CREATE INDEX IF NOT EXISTS idx_records_family_seq ON records(family_id, entity_type, seq);

-- Single-row server change counter
CREATE TABLE IF NOT EXISTS change_sequence (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    value INTEGER NOT NULL
);

INSERT OR IGNORE INTO change_sequence (id, value) VALUES (1, 0);

-- Dedup ledger: outcome of every settled push event
CREATE TABLE IF NOT EXISTS processed_events (
    family_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    status TEXT NOT NULL,
    reason TEXT,
    processed_at TEXT NOT NULL,
    PRIMARY KEY (family_id, event_id)
);

CREATE INDEX IF NOT EXISTS idx_processed_at ON processed_events(processed_at);

-- Last push time and pull cursor per device
CREATE TABLE IF NOT EXISTS device_state (
    user_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    last_push_at TEXT,
    last_pull_cursor TEXT,
    PRIMARY KEY (user_id, device_id)
);
"""


def _row_to_record(row: sqlite3.Row) -> StoredRecord:
    return StoredRecord(
        entity_type=row["entity_type"],
        id=row["id"],
        family_id=row["family_id"],
        payload=json.loads(row["payload"]) if row["payload"] is not None else None,
        updated_at=parse_timestamp(row["updated_at"]),
        deleted=bool(row["deleted"]),
        seq=row["seq"],
    )


class SyncDatastore:
    """Owns the server SQLite connection and the shared change sequence."""

    def __init__(self, db_path: str | Path):
        """Initialize the datastore.

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
        self._conn.executescript(SERVER_SCHEMA)
        self._conn.commit()

        logger.info(f"SyncDatastore connected to {target}, seq={self.current_seq()}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    def commit(self) -> None:
        """Commit unless an outer transaction is open."""
        if self._tx_depth == 0:
            self.conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several writes into one atomic commit."""
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

    # ==================== Change sequence ====================

    def next_seq(self) -> int:
        """Allocate the next change sequence number."""
        conn = self.conn
        conn.execute("UPDATE change_sequence SET value = value + 1 WHERE id = 1")
        return conn.execute("SELECT value FROM change_sequence WHERE id = 1").fetchone()[0]

    def current_seq(self) -> int:
        return self.conn.execute(
            "SELECT value FROM change_sequence WHERE id = 1"
        ).fetchone()[0]

    def repository(self, entity_type: str) -> "SQLiteRepository":
        return SQLiteRepository(self, entity_type)

    # ==================== Dedup ledger ====================

    def get_processed(self, family_id: str, event_id: str) -> Ack | None:
        """Recorded outcome of an already settled event, if any."""
        row = self.conn.execute(
            """
            SELECT status, reason FROM processed_events
            WHERE family_id = ? AND event_id = ?
            """,
            (family_id, event_id),
        ).fetchone()
        if row is None:
            return None
        return Ack(event_id=event_id, status=AckStatus(row["status"]), reason=row["reason"])

    def record_processed(self, family_id: str, ack: Ack) -> None:
        self.conn.execute(
            """
            INSERT OR REPLACE INTO processed_events (
                family_id, event_id, status, reason, processed_at
            ) VALUES (?, ?, ?, ?, ?)
            """,
            (family_id, ack.event_id, ack.status.value, ack.reason, utc_now().isoformat()),
        )
        self.commit()

    def prune_processed(self, older_than: datetime) -> int:
        """Forget ledger entries older than the retention window.

        Returns:
            Number of entries deleted.
        """
        cursor = self.conn.execute(
            "DELETE FROM processed_events WHERE processed_at < ?",
            (older_than.isoformat(),),
        )
        self.commit()

        if cursor.rowcount > 0:
            logger.info(f"Pruned {cursor.rowcount} dedup ledger entries")
        return cursor.rowcount

    # ==================== Device state ====================

    def record_push(self, user_id: str, device_id: str, at: datetime) -> None:
        self.conn.execute(
            """
            INSERT INTO device_state (user_id, device_id, last_push_at)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id, device_id) DO UPDATE SET
                last_push_at = excluded.last_push_at
            """,
            (user_id, device_id, at.isoformat()),
        )
        self.commit()

    def record_pull(self, user_id: str, device_id: str, cursor: str) -> None:
        self.conn.execute(
            """
            INSERT INTO device_state (user_id, device_id, last_pull_cursor)
            VALUES (?, ?, ?)
            ON CONFLICT(user_id, device_id) DO UPDATE SET
                last_pull_cursor = excluded.last_pull_cursor
            """,
            (user_id, device_id, cursor),
        )
        self.commit()

    def get_device_state(self, user_id: str, device_id: str) -> dict[str, Any]:
        row = self.conn.execute(
            """
            SELECT last_push_at, last_pull_cursor FROM device_state
            WHERE user_id = ? AND device_id = ?
            """,
            (user_id, device_id),
        ).fetchone()
        if row is None:
            return {"last_push_at": None, "last_pull_cursor": None}
        return {
            "last_push_at": row["last_push_at"],
            "last_pull_cursor": row["last_pull_cursor"],
        }


class SQLiteRepository(DomainRepository):
    """Records of one entity type inside a :class:`SyncDatastore`."""

    def __init__(self, datastore: SyncDatastore, entity_type: str):
        self._datastore = datastore
        self._entity_type = entity_type

    @property
    def entity_type(self) -> str:
        return self._entity_type

    def get(self, record_id: str) -> StoredRecord | None:
        row = self._datastore.conn.execute(
            "SELECT * FROM records WHERE entity_type = ? AND id = ?",
            (self._entity_type, record_id),
        ).fetchone()
        return _row_to_record(row) if row else None

    def apply(
        self,
        family_id: str,
        operation: Operation,
        record_id: str,
        payload: dict[str, Any] | None,
        updated_at: datetime,
    ) -> StoredRecord:
        existing = self.get(record_id)
        if existing is not None and existing.family_id != family_id:
            raise AccessDeniedError(f"{self._entity_type}/{record_id}")
        creating = operation == Operation.CREATE and existing is None
        if not creating and (existing is None or existing.deleted):
            raise RecordNotFoundError(f"{self._entity_type}/{record_id}")

        with self._datastore.transaction() as conn:
            seq = self._datastore.next_seq()

            if creating:
                conn.execute(
                    """
                    INSERT INTO records (
                        entity_type, id, family_id, payload, updated_at,
                        deleted, seq, created_at
                    ) VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                    """,
                    (
                        self._entity_type,
                        record_id,
                        family_id,
                        json.dumps(payload),
                        updated_at.isoformat(),
                        seq,
                        utc_now().isoformat(),
                    ),
                )
            elif operation == Operation.DELETE:
                conn.execute(
                    """
                    UPDATE records
                    SET payload = NULL, deleted = 1, updated_at = ?, seq = ?
                    WHERE entity_type = ? AND id = ?
                    """,
                    (updated_at.isoformat(), seq, self._entity_type, record_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE records
                    SET payload = ?, updated_at = ?, seq = ?
                    WHERE entity_type = ? AND id = ?
                    """,
                    (
                        json.dumps(payload),
                        updated_at.isoformat(),
                        seq,
                        self._entity_type,
                        record_id,
                    ),
                )

        return self.get(record_id)

    def touch(self, record_id: str) -> StoredRecord | None:
        with self._datastore.transaction() as conn:
            seq = self._datastore.next_seq()
            conn.execute(
                "UPDATE records SET seq = ? WHERE entity_type = ? AND id = ?",
                (seq, self._entity_type, record_id),
            )
        return self.get(record_id)

    def list_since(
        self, family_id: str, since_seq: int, upto_seq: int, limit: int
    ) -> list[StoredRecord]:
        rows = self._datastore.conn.execute(
            """
            SELECT * FROM records
            WHERE family_id = ? AND entity_type = ? AND seq > ? AND seq <= ?
            ORDER BY seq ASC
            LIMIT ?
            """,
            (family_id, self._entity_type, since_seq, upto_seq, limit),
        ).fetchall()
        return [_row_to_record(row) for row in rows]
