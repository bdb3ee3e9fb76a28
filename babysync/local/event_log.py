"""Durable, ordered queue of local mutations awaiting server acknowledgement.

Events are kept in creation order. Delivery is FIFO per target: an event is
never offered for push while an earlier event for the same record is still
backing off or dead-lettered.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any

from ..models import EventState, Operation, PendingEvent, parse_timestamp, utc_now
from .database import LocalDatabase

logger = logging.getLogger(__name__)

_COLUMNS = """
    sequence, id, entity_type, operation, target_id, payload, created_at,
    attempt_count, state, last_error, next_attempt_at
"""


def _row_to_event(row: sqlite3.Row) -> PendingEvent:
    return PendingEvent(
        id=row["id"],
        entity_type=row["entity_type"],
        operation=Operation(row["operation"]),
        target_id=row["target_id"],
        payload=json.loads(row["payload"]) if row["payload"] is not None else None,
        created_at=parse_timestamp(row["created_at"]),
        attempt_count=row["attempt_count"],
        sequence=row["sequence"],
        state=EventState(row["state"]),
        last_error=row["last_error"],
        next_attempt_at=(
            parse_timestamp(row["next_attempt_at"]) if row["next_attempt_at"] else None
        ),
    )


class PendingEventLog:
    """SQLite-backed pending event log with backoff and dead-lettering."""

    def __init__(
        self,
        db: LocalDatabase,
        max_attempts: int = 8,
        backoff_base_seconds: float = 2.0,
        backoff_max_seconds: float = 3600.0,
    ):
        """Initialize the log.

        Args:
            db: Shared device database.
            max_attempts: Retryable attempts before an event is dead-lettered.
            backoff_base_seconds: Delay after the first retryable attempt.
            backoff_max_seconds: Upper bound for the backoff delay.
        """
        self._db = db
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    @property
    def database(self) -> LocalDatabase:
        return self._db

    def enqueue(self, event: PendingEvent) -> bool:
        """Append an event. Idempotent on ``event.id``.

        Returns:
            True if the event was added, False if its id was already queued.
        """
        cursor = self._db.conn.execute(
            """
            INSERT OR IGNORE INTO pending_events (
                id, entity_type, operation, target_id, payload, created_at,
                attempt_count, state
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.entity_type,
                event.operation.value,
                event.target_id,
                json.dumps(event.payload) if event.payload is not None else None,
                event.created_at.isoformat(),
                event.attempt_count,
                EventState.PENDING.value,
            ),
        )
        self._db.commit()

        added = cursor.rowcount == 1
        if added:
            event.sequence = cursor.lastrowid
            logger.debug(
                f"Enqueued {event.operation.value} {event.entity_type}/{event.target_id} "
                f"as event {event.id}"
            )
        else:
            logger.debug(f"Event {event.id} already queued, ignoring")
        return added

    def get(self, event_id: str) -> PendingEvent | None:
        row = self._db.conn.execute(
            f"SELECT {_COLUMNS} FROM pending_events WHERE id = ?", (event_id,)
        ).fetchone()
        return _row_to_event(row) if row else None

    def list_pending(self) -> list[PendingEvent]:
        """Pending (not dead-lettered) events in creation order."""
        rows = self._db.conn.execute(
            f"""
            SELECT {_COLUMNS} FROM pending_events
            WHERE state = ?
            ORDER BY sequence ASC
            """,
            (EventState.PENDING.value,),
        ).fetchall()
        return [_row_to_event(row) for row in rows]

    def ready_for_push(
        self, now: datetime | None = None, limit: int | None = None
    ) -> list[PendingEvent]:
        """Events that may be sent now, preserving FIFO per target.

        Args:
            now: Reference time for backoff checks.
            limit: Maximum events to return.

        Returns:
            Events in creation order. A target whose earliest event is
            backing off or dead contributes no events.
        """
        now = now or utc_now()
        rows = self._db.conn.execute(
            f"SELECT {_COLUMNS} FROM pending_events ORDER BY sequence ASC"
        ).fetchall()

        blocked: set[tuple[str, str]] = set()
        ready = []
        for row in rows:
            event = _row_to_event(row)
            key = (event.entity_type, event.target_id)
            if key in blocked:
                continue

            waiting = event.next_attempt_at is not None and event.next_attempt_at > now
            if event.state == EventState.DEAD or waiting:
                blocked.add(key)
                continue

            ready.append(event)
            if limit is not None and len(ready) >= limit:
                break

        return ready

    def remove(self, event_ids: list[str]) -> int:
        """Delete acknowledged events.

        Returns:
            Number of events removed.
        """
        if not event_ids:
            return 0

        placeholders = ",".join("?" * len(event_ids))
        cursor = self._db.conn.execute(
            f"DELETE FROM pending_events WHERE id IN ({placeholders})",
            tuple(event_ids),
        )
        self._db.commit()
        return cursor.rowcount

    def increment_attempt(
        self, event_id: str, error: str | None = None, now: datetime | None = None
    ) -> PendingEvent | None:
        """Record a failed attempt and schedule the next one.

        Once the attempt ceiling is reached the event is dead-lettered.

        Returns:
            The updated event, or None if it is no longer queued.
        """
        event = self.get(event_id)
        if event is None:
            return None

        now = now or utc_now()
        attempts = event.attempt_count + 1
        delay = min(
            self.backoff_base_seconds * (2 ** (attempts - 1)),
            self.backoff_max_seconds,
        )
        state = EventState.DEAD if attempts >= self.max_attempts else EventState.PENDING

        self._db.conn.execute(
            """
            UPDATE pending_events
            SET attempt_count = ?, state = ?, last_error = ?,
                last_attempt_at = ?, next_attempt_at = ?
            WHERE id = ?
            """,
            (
                attempts,
                state.value,
                error,
                now.isoformat(),
                (now + timedelta(seconds=delay)).isoformat(),
                event_id,
            ),
        )
        self._db.commit()

        if state == EventState.DEAD:
            logger.warning(
                f"Event {event_id} dead-lettered after {attempts} attempts: {error}"
            )
        else:
            logger.debug(f"Event {event_id} attempt {attempts}, retry in {delay:.0f}s")

        return self.get(event_id)

    def has_pending_for(self, entity_type: str, target_id: str) -> bool:
        """Whether any queued event (pending or dead) targets this record."""
        row = self._db.conn.execute(
            """
            SELECT 1 FROM pending_events
            WHERE entity_type = ? AND target_id = ?
            LIMIT 1
            """,
            (entity_type, target_id),
        ).fetchone()
        return row is not None

    def dead_letters(self) -> list[PendingEvent]:
        """Events that exhausted their attempts, oldest first."""
        rows = self._db.conn.execute(
            f"""
            SELECT {_COLUMNS} FROM pending_events
            WHERE state = ?
            ORDER BY sequence ASC
            """,
            (EventState.DEAD.value,),
        ).fetchall()
        return [_row_to_event(row) for row in rows]

    def requeue_dead_letters(self, event_ids: list[str] | None = None) -> int:
        """Put dead-lettered events back in the queue with a fresh budget.

        Args:
            event_ids: Specific events to requeue, or None for all.

        Returns:
            Number of events requeued.
        """
        params: tuple[Any, ...] = (EventState.PENDING.value, EventState.DEAD.value)
        query = """
            UPDATE pending_events
            SET state = ?, attempt_count = 0, last_error = NULL,
                next_attempt_at = NULL
            WHERE state = ?
        """
        if event_ids:
            placeholders = ",".join("?" * len(event_ids))
            query += f" AND id IN ({placeholders})"
            params += tuple(event_ids)

        cursor = self._db.conn.execute(query, params)
        self._db.commit()

        if cursor.rowcount:
            logger.info(f"Requeued {cursor.rowcount} dead-lettered events")
        return cursor.rowcount

    def discard(self, event_ids: list[str]) -> list[PendingEvent]:
        """Drop dead-lettered events the user chose to abandon.

        Returns:
            The events that were discarded.
        """
        dropped = [e for e in self.dead_letters() if e.id in set(event_ids)]
        self.remove([e.id for e in dropped])
        if dropped:
            logger.info(f"Discarded {len(dropped)} dead-lettered events")
        return dropped

    def count(self) -> int:
        return self._db.conn.execute("SELECT COUNT(*) FROM pending_events").fetchone()[0]

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics.

        Returns:
            Dictionary with event counts by state and entity type.
        """
        conn = self._db.conn
        stats: dict[str, Any] = {"total_events": self.count()}

        cursor = conn.execute(
            "SELECT state, COUNT(*) FROM pending_events GROUP BY state"
        )
        by_state = {row[0]: row[1] for row in cursor}
        stats["pending_events"] = by_state.get(EventState.PENDING.value, 0)
        stats["dead_events"] = by_state.get(EventState.DEAD.value, 0)

        cursor = conn.execute(
            "SELECT entity_type, COUNT(*) FROM pending_events GROUP BY entity_type"
        )
        stats["events_by_type"] = {row[0]: row[1] for row in cursor}

        return stats
