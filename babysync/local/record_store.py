"""Device-side record store and pull cursor."""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any

from ..context import SyncContext
from ..models import LocalRecord, PulledRecord, parse_timestamp, utc_now
from .database import LocalDatabase

logger = logging.getLogger(__name__)


def _row_to_record(row: sqlite3.Row) -> LocalRecord:
    return LocalRecord(
        id=row["id"],
        entity_type=row["entity_type"],
        payload=json.loads(row["payload"]) if row["payload"] is not None else None,
        pending_sync=bool(row["pending_sync"]),
        synced_at=parse_timestamp(row["synced_at"]) if row["synced_at"] else None,
        updated_at=parse_timestamp(row["updated_at"]) if row["updated_at"] else None,
        conflicted=bool(row["conflicted"]),
        conflict_reason=row["conflict_reason"],
        deleted=bool(row["deleted"]),
    )


class LocalRecordStore:
    """Current view of every record for one family, plus the pull cursor.

    All reads and writes are scoped to the family in ``context``.
    """

    def __init__(self, db: LocalDatabase, context: SyncContext):
        """Initialize the store.

        Args:
            db: Shared device database.
            context: Identity the store reads and writes on behalf of.
        """
        self._db = db
        self.context = context

    # ==================== Records ====================

    def get(
        self, entity_type: str, record_id: str, include_deleted: bool = False
    ) -> LocalRecord | None:
        """Get one record by key."""
        row = self._db.conn.execute(
            """
            SELECT * FROM local_records
            WHERE entity_type = ? AND id = ? AND family_id = ?
            """,
            (entity_type, record_id, self.context.family_id),
        ).fetchone()

        if row is None:
            return None
        record = _row_to_record(row)
        if record.deleted and not include_deleted:
            return None
        return record

    def list_records(self, entity_type: str | None = None) -> list[LocalRecord]:
        """List visible records, optionally for one entity type."""
        query = "SELECT * FROM local_records WHERE family_id = ? AND deleted = 0"
        params: list[Any] = [self.context.family_id]
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        query += " ORDER BY entity_type, updated_at"

        return [_row_to_record(row) for row in self._db.conn.execute(query, params)]

    def put_local(
        self,
        entity_type: str,
        record_id: str,
        payload: dict[str, Any] | None,
        updated_at: datetime,
        deleted: bool = False,
    ) -> LocalRecord:
        """Write an optimistic local change and flag it as pending sync.

        A new local edit clears any earlier conflict flag, since the user
        has made a decision about the record.
        """
        self._db.conn.execute(
            """
            INSERT INTO local_records (
                entity_type, id, family_id, payload, pending_sync, updated_at,
                conflicted, conflict_reason, deleted
            ) VALUES (?, ?, ?, ?, 1, ?, 0, NULL, ?)
            ON CONFLICT(family_id, entity_type, id) DO UPDATE SET
                payload = excluded.payload,
                pending_sync = 1,
                updated_at = excluded.updated_at,
                conflicted = 0,
                conflict_reason = NULL,
                deleted = excluded.deleted
            """,
            (
                entity_type,
                record_id,
                self.context.family_id,
                json.dumps(payload) if payload is not None else None,
                updated_at.isoformat(),
                int(deleted),
            ),
        )
        self._db.commit()
        return self.get(entity_type, record_id, include_deleted=True)

    def mark_synced(
        self, entity_type: str, record_id: str, synced_at: datetime | None = None
    ) -> None:
        """Clear the pending flag after the last pending event was acknowledged.

        A record whose local delete was acknowledged is removed outright.
        """
        conn = self._db.conn
        conn.execute(
            """
            DELETE FROM local_records
            WHERE entity_type = ? AND id = ? AND family_id = ? AND deleted = 1
            """,
            (entity_type, record_id, self.context.family_id),
        )
        conn.execute(
            """
            UPDATE local_records
            SET pending_sync = 0, synced_at = ?
            WHERE entity_type = ? AND id = ? AND family_id = ?
            """,
            (
                (synced_at or utc_now()).isoformat(),
                entity_type,
                record_id,
                self.context.family_id,
            ),
        )
        self._db.commit()

    def clear_pending(self, entity_type: str, record_id: str) -> None:
        """Clear the pending flag without marking the record as synced."""
        self._db.conn.execute(
            """
            UPDATE local_records
            SET pending_sync = 0
            WHERE entity_type = ? AND id = ? AND family_id = ?
            """,
            (entity_type, record_id, self.context.family_id),
        )
        self._db.commit()

    def mark_conflicted(self, entity_type: str, record_id: str, reason: str) -> None:
        """Flag a record whose local change was rejected by the server.

        The optimistic value is kept as-is so the user can re-apply it.
        """
        self._db.conn.execute(
            """
            UPDATE local_records
            SET conflicted = 1, conflict_reason = ?
            WHERE entity_type = ? AND id = ? AND family_id = ?
            """,
            (reason, entity_type, record_id, self.context.family_id),
        )
        self._db.commit()

    def discard_local(self, entity_type: str, record_id: str) -> None:
        """Give up a conflicted local value in favour of the server's.

        Pulls skipped the record while it was conflicted, so the cursor is
        forgotten and the next pull fetches the family's records from the
        start.
        """
        conn = self._db.conn
        conn.execute(
            """
            DELETE FROM local_records
            WHERE entity_type = ? AND id = ? AND family_id = ? AND conflicted = 1
            """,
            (entity_type, record_id, self.context.family_id),
        )
        conn.execute(
            "DELETE FROM sync_state WHERE user_id = ? AND device_id = ?",
            (self.context.user_id, self.context.device_id),
        )
        self._db.commit()

    def list_conflicted(self) -> list[LocalRecord]:
        rows = self._db.conn.execute(
            """
            SELECT * FROM local_records
            WHERE family_id = ? AND conflicted = 1
            ORDER BY entity_type, id
            """,
            (self.context.family_id,),
        )
        return [_row_to_record(row) for row in rows]

    def apply_remote(self, record: PulledRecord, synced_at: datetime | None = None) -> bool:
        """Upsert or delete a record received from a pull.

        Records with unacknowledged local changes are left alone: their
        pending events are pushed first and the server's answer comes back
        on a later pull. Conflicted records are also left alone until the
        user re-applies the change with :meth:`put_local` or gives it up
        with :meth:`discard_local`.

        Returns:
            True if the local store changed.
        """
        conn = self._db.conn
        row = conn.execute(
            """
            SELECT pending_sync, conflicted FROM local_records
            WHERE entity_type = ? AND id = ? AND family_id = ?
            """,
            (record.entity_type, record.id, self.context.family_id),
        ).fetchone()

        if row is not None and row["pending_sync"]:
            logger.debug(
                f"Skipping pulled {record.entity_type}/{record.id}: local changes pending"
            )
            return False
        if row is not None and row["conflicted"]:
            logger.debug(
                f"Skipping pulled {record.entity_type}/{record.id}: conflict unresolved"
            )
            return False

        if record.is_tombstone:
            cursor = conn.execute(
                """
                DELETE FROM local_records
                WHERE entity_type = ? AND id = ? AND family_id = ?
                """,
                (record.entity_type, record.id, self.context.family_id),
            )
            self._db.commit()
            return cursor.rowcount > 0

        conn.execute(
            """
            INSERT INTO local_records (
                entity_type, id, family_id, payload, pending_sync, synced_at,
                updated_at, conflicted, conflict_reason, deleted
            ) VALUES (?, ?, ?, ?, 0, ?, ?, 0, NULL, 0)
            ON CONFLICT(family_id, entity_type, id) DO UPDATE SET
                payload = excluded.payload,
                pending_sync = 0,
                synced_at = excluded.synced_at,
                updated_at = excluded.updated_at,
                conflicted = 0,
                conflict_reason = NULL,
                deleted = 0
            """,
            (
                record.entity_type,
                record.id,
                self.context.family_id,
                json.dumps(record.payload),
                (synced_at or utc_now()).isoformat(),
                record.updated_at.isoformat(),
            ),
        )
        self._db.commit()
        return True

    # ==================== Cursor ====================

    def get_cursor(self) -> str | None:
        """Cursor of the last fully applied pull for this user and device."""
        row = self._db.conn.execute(
            "SELECT cursor FROM sync_state WHERE user_id = ? AND device_id = ?",
            (self.context.user_id, self.context.device_id),
        ).fetchone()
        return row["cursor"] if row else None

    def set_cursor(self, cursor: str) -> None:
        self._db.conn.execute(
            """
            INSERT INTO sync_state (user_id, device_id, cursor, last_pull_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id, device_id) DO UPDATE SET
                cursor = excluded.cursor,
                last_pull_at = excluded.last_pull_at
            """,
            (
                self.context.user_id,
                self.context.device_id,
                cursor,
                utc_now().isoformat(),
            ),
        )
        self._db.commit()

    def get_stats(self) -> dict[str, Any]:
        """Get store statistics for this family."""
        conn = self._db.conn
        family = self.context.family_id

        stats: dict[str, Any] = {"cursor": self.get_cursor()}
        stats["record_count"] = conn.execute(
            "SELECT COUNT(*) FROM local_records WHERE family_id = ? AND deleted = 0",
            (family,),
        ).fetchone()[0]
        stats["pending_records"] = conn.execute(
            "SELECT COUNT(*) FROM local_records WHERE family_id = ? AND pending_sync = 1",
            (family,),
        ).fetchone()[0]
        stats["conflicted_records"] = conn.execute(
            "SELECT COUNT(*) FROM local_records WHERE family_id = ? AND conflicted = 1",
            (family,),
        ).fetchone()[0]

        cursor = conn.execute(
            """
            SELECT entity_type, COUNT(*) FROM local_records
            WHERE family_id = ? AND deleted = 0
            GROUP BY entity_type
            """,
            (family,),
        )
        stats["records_by_type"] = {row[0]: row[1] for row in cursor}
        return stats
