"""Sync client driving push-then-pull cycles against the sync server.

Push sends every ready pending event in non-atomic batches and settles
each event from its own ack. Pull fetches everything changed after the
stored cursor, page by page, and advances the cursor once a page is applied.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

import httpx

from ..auth import RequestGuard, SessionExpiredError
from ..context import SyncContext
from ..local import LocalRecordStore, PendingEventLog
from ..models import (
    Ack,
    AckStatus,
    EventState,
    PendingEvent,
    PulledRecord,
    SyncIssue,
    utc_now,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some events rejected or left for retry
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    events_applied: int = 0
    events_rejected: int = 0
    events_retried: int = 0
    records_pulled: int = 0
    cursor: str | None = None
    issues: list[SyncIssue] = field(default_factory=list)
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client for synchronizing the local record store with the server.

    Supports:
    - Push: Send ready pending events, settle each from its ack
    - Pull: Fetch changes after the stored cursor
    - Full sync: Push, then pull

    ``push``, ``pull`` and ``full_sync`` are single-flight: a call made while
    the same operation is running joins it and gets the same result.
    """

    def __init__(
        self,
        store: LocalRecordStore,
        log: PendingEventLog,
        guard: RequestGuard,
        batch_size: int = 100,
        page_size: int = 500,
        on_issue: Callable[[SyncIssue], None] | None = None,
    ):
        """Initialize the sync client.

        Args:
            store: Local record store for this device.
            log: Pending event log for this device.
            guard: Authenticated transport to the sync server.
            batch_size: Maximum events per push batch.
            page_size: Maximum records per pull page.
            on_issue: Called for every user-visible sync issue.
        """
        self.store = store
        self.log = log
        self.guard = guard
        self.batch_size = batch_size
        self.page_size = page_size
        self.on_issue = on_issue
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0
        self._inflight: dict[str, asyncio.Task] = {}

    @property
    def context(self) -> SyncContext:
        return self.store.context

    async def _single_flight(
        self, key: str, factory: Callable[[], Awaitable[T]]
    ) -> T:
        """Run ``factory`` unless ``key`` is already running, then join it."""
        running = self._inflight.get(key)
        if running is not None:
            logger.debug(f"{key} already in flight, joining")
            return await asyncio.shield(running)

        task = asyncio.ensure_future(factory())
        self._inflight[key] = task

        def _clear(done: asyncio.Task) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_clear)
        return await task

    def _raise_issue(self, issue: SyncIssue, issues: list[SyncIssue]) -> None:
        issues.append(issue)
        if self.on_issue:
            try:
                self.on_issue(issue)
            except Exception as e:
                logger.error(f"Issue callback failed: {e}")

    # ==================== Push ====================

    async def push(self) -> SyncResult:
        """Push ready pending events to the server.

        Events go out in batches of at most ``batch_size`` until none are
        ready, or until a batch fails or settles nothing.

        Returns:
            SyncResult with push statistics.

        Raises:
            SessionExpiredError: If the session could not be refreshed.
        """
        return await self._single_flight("push", self._push)

    async def _push(self) -> SyncResult:
        total = SyncResult(status=SyncStatus.SUCCESS)

        while True:
            events = self.log.ready_for_push(limit=self.batch_size)
            if not events:
                break

            batch = await self._push_batch(events)
            total.events_applied += batch.events_applied
            total.events_rejected += batch.events_rejected
            total.events_retried += batch.events_retried
            total.issues.extend(batch.issues)
            total.error = batch.error or total.error

            if batch.status in (SyncStatus.OFFLINE, SyncStatus.FAILED):
                total.status = batch.status
                break
            if batch.status == SyncStatus.PARTIAL:
                total.status = SyncStatus.PARTIAL
            # Nothing left the log, so the next batch would be the same one
            if not (batch.events_applied or batch.events_rejected):
                break

        if total.status != SyncStatus.OFFLINE:
            total.timestamp = utc_now()
        return total

    async def _push_batch(self, events: list[PendingEvent]) -> SyncResult:
        body = {"events": [e.to_wire() for e in events]}
        logger.debug(f"Pushing {len(events)} events")

        try:
            response = await self.guard.post("/sync/push", json=body)
        except httpx.TransportError as e:
            self._consecutive_failures += 1
            logger.warning(f"Push failed, server unreachable: {e}")
            return SyncResult(status=SyncStatus.OFFLINE, error=str(e))

        acks: list[Ack] | None = None
        error = None
        if response.status_code == 200:
            try:
                acks = [Ack.from_dict(a) for a in response.json()["acks"]]
            except (ValueError, KeyError, TypeError) as e:
                error = f"Malformed push response: {e}"
        else:
            error = f"HTTP {response.status_code}: {response.text[:200]}"

        issues: list[SyncIssue] = []
        if acks is None:
            # Whole batch refused (rate limit, server error): retry every event
            self._consecutive_failures += 1
            logger.warning(f"Push batch not accepted: {error}")
            for event in events:
                self._settle_retryable(event, error, issues)
            return SyncResult(
                status=SyncStatus.FAILED,
                events_retried=len(events),
                issues=issues,
                error=error,
                timestamp=utc_now(),
            )

        self._consecutive_failures = 0
        by_id = {e.id: e for e in events}
        result = SyncResult(status=SyncStatus.SUCCESS, issues=issues)

        for ack in acks:
            event = by_id.pop(ack.event_id, None)
            if event is None:
                logger.warning(f"Ack for unknown event {ack.event_id}, ignoring")
                continue

            if ack.status == AckStatus.APPLIED:
                self._settle_applied(event, ack)
                result.events_applied += 1
            elif ack.status == AckStatus.REJECTED:
                self._settle_rejected(event, ack, issues)
                result.events_rejected += 1
            else:
                self._settle_retryable(event, ack.reason or "retryable", issues)
                result.events_retried += 1

        if by_id:
            logger.warning(f"{len(by_id)} pushed events got no ack, left queued")

        if result.events_rejected or result.events_retried:
            result.status = SyncStatus.PARTIAL
        result.timestamp = self._last_sync = utc_now()

        logger.info(
            f"Push: applied={result.events_applied}, "
            f"rejected={result.events_rejected}, retried={result.events_retried}"
        )
        return result

    def _settle_applied(self, event: PendingEvent, ack: Ack) -> None:
        if ack.reason == "stale":
            logger.info(
                f"Event {event.id} lost to a newer write on "
                f"{event.entity_type}/{event.target_id}"
            )

        with self.log.database.transaction():
            self.log.remove([event.id])
            if not self.log.has_pending_for(event.entity_type, event.target_id):
                self.store.mark_synced(event.entity_type, event.target_id)

    def _settle_rejected(
        self, event: PendingEvent, ack: Ack, issues: list[SyncIssue]
    ) -> None:
        reason = ack.reason or "rejected"
        logger.warning(
            f"Event {event.id} ({event.operation.value} "
            f"{event.entity_type}/{event.target_id}) rejected: {reason}"
        )

        with self.log.database.transaction():
            self.log.remove([event.id])
            self.store.mark_conflicted(event.entity_type, event.target_id, reason)
            if not self.log.has_pending_for(event.entity_type, event.target_id):
                self.store.clear_pending(event.entity_type, event.target_id)

        self._raise_issue(
            SyncIssue(
                kind="rejected",
                message=(
                    f"Your {event.entity_type} change could not be saved ({reason})"
                ),
                entity_type=event.entity_type,
                target_id=event.target_id,
                event_id=event.id,
                reason=reason,
            ),
            issues,
        )

    def _settle_retryable(
        self, event: PendingEvent, reason: str | None, issues: list[SyncIssue]
    ) -> None:
        updated = self.log.increment_attempt(event.id, reason)
        if updated is not None and updated.state == EventState.DEAD:
            self._raise_issue(
                SyncIssue(
                    kind="dead_letter",
                    message=(
                        f"Your {event.entity_type} change failed "
                        f"{updated.attempt_count} times and was set aside"
                    ),
                    entity_type=event.entity_type,
                    target_id=event.target_id,
                    event_id=event.id,
                    reason=reason,
                ),
                issues,
            )

    # ==================== Pull ====================

    async def pull(self, cursor: str | None = None) -> SyncResult:
        """Pull changes from the server.

        Args:
            cursor: Only fetch changes after this cursor.
                    If None, uses the stored cursor.

        Returns:
            SyncResult with pull statistics.

        Raises:
            SessionExpiredError: If the session could not be refreshed.
        """
        return await self._single_flight("pull", lambda: self._pull(cursor))

    async def _pull(self, cursor: str | None) -> SyncResult:
        if cursor is None:
            cursor = self.store.get_cursor()

        issues: list[SyncIssue] = []
        pulled = 0

        while True:
            params: dict[str, Any] = {"limit": self.page_size}
            if cursor:
                params["since"] = cursor

            try:
                response = await self.guard.get("/sync/pull", params=params)
            except httpx.TransportError as e:
                self._consecutive_failures += 1
                logger.warning(f"Pull failed, server unreachable: {e}")
                return SyncResult(
                    status=SyncStatus.OFFLINE,
                    records_pulled=pulled,
                    cursor=cursor,
                    issues=issues,
                    error=str(e),
                )

            if response.status_code != 200:
                self._consecutive_failures += 1
                error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(f"Pull failed: {error}")
                return SyncResult(
                    status=SyncStatus.FAILED,
                    records_pulled=pulled,
                    cursor=cursor,
                    issues=issues,
                    error=error,
                )

            try:
                data = response.json()
                raw_records = list(data["records"])
                next_cursor = str(data["cursor"])
                has_more = bool(data.get("has_more", False))
            except (ValueError, KeyError, TypeError) as e:
                self._consecutive_failures += 1
                logger.error(f"Malformed pull response: {e}")
                return SyncResult(
                    status=SyncStatus.FAILED,
                    records_pulled=pulled,
                    cursor=cursor,
                    issues=issues,
                    error=f"Malformed pull response: {e}",
                )

            with self.log.database.transaction():
                for raw in raw_records:
                    try:
                        record = PulledRecord.from_dict(raw)
                    except (KeyError, TypeError, ValueError) as e:
                        logger.warning(f"Skipping malformed pulled record {raw!r}: {e}")
                        self._raise_issue(
                            SyncIssue(
                                kind="skipped_record",
                                message="A record from the server could not be read and was skipped",
                                reason=str(e),
                            ),
                            issues,
                        )
                        continue

                    if self.store.apply_remote(record):
                        pulled += 1

                # Advance even past skipped records so one bad record cannot stall sync
                self.store.set_cursor(next_cursor)

            cursor = next_cursor
            if not has_more:
                break

        self._consecutive_failures = 0
        self._last_sync = utc_now()
        logger.info(f"Pull: {pulled} records applied, cursor={cursor}")

        return SyncResult(
            status=SyncStatus.SUCCESS,
            records_pulled=pulled,
            cursor=cursor,
            issues=issues,
            timestamp=self._last_sync,
        )

    # ==================== Full sync ====================

    async def full_sync(self) -> SyncResult:
        """Push local changes, then pull remote ones.

        Returns:
            Combined SyncResult.

        Raises:
            SessionExpiredError: If the session could not be refreshed.
        """
        return await self._single_flight("full_sync", self._full_sync)

    async def _full_sync(self) -> SyncResult:
        # Push first so local writes are not clobbered by a pull that predates them
        push_result = await self.push()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        pull_result = await self.pull()

        if pull_result.status != SyncStatus.SUCCESS:
            status = pull_result.status
        elif push_result.status != SyncStatus.SUCCESS:
            status = SyncStatus.PARTIAL
        else:
            status = SyncStatus.SUCCESS

        return SyncResult(
            status=status,
            events_applied=push_result.events_applied,
            events_rejected=push_result.events_rejected,
            events_retried=push_result.events_retried,
            records_pulled=pull_result.records_pulled,
            cursor=pull_result.cursor,
            issues=push_result.issues + pull_result.issues,
            error=pull_result.error or push_result.error,
            timestamp=utc_now(),
        )

    async def sync_loop(
        self,
        interval_seconds: int = 60,
        stop_event: asyncio.Event | None = None,
        max_backoff_seconds: int = 3600,
    ) -> None:
        """Run ``full_sync`` every ``interval_seconds`` until stopped.

        The wait doubles with each consecutive failure, up to
        ``max_backoff_seconds``. The loop ends when ``stop_event`` is set or
        the session expires.
        """
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while not stop_event.is_set():
            try:
                result = await self.full_sync()
                logger.info(
                    f"Sync: {result.status.value}, "
                    f"applied={result.events_applied}, "
                    f"pulled={result.records_pulled}"
                )
            except SessionExpiredError:
                logger.warning("Session expired, stopping sync loop")
                break
            except Exception as e:
                logger.error(f"Sync loop error: {e}", exc_info=True)

            wait_time = interval_seconds
            if self._consecutive_failures:
                wait_time = min(
                    interval_seconds * 2**self._consecutive_failures, max_backoff_seconds
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
            except asyncio.TimeoutError:
                continue

        logger.info("Sync loop stopped")

    # ==================== Status ====================

    @property
    def last_sync(self) -> datetime | None:
        """Get timestamp of last successful sync."""
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get local sync status.

        Returns:
            Dictionary with queue and store statistics.
        """
        log_stats = self.log.get_stats()
        store_stats = self.store.get_stats()

        return {
            "remote_url": self.guard.base_url,
            "device_id": self.context.device_id,
            "session": self.guard.state.value,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "pending_events": log_stats["pending_events"],
            "dead_events": log_stats["dead_events"],
            "conflicted_records": store_stats["conflicted_records"],
            "cursor": store_stats["cursor"],
        }

    # ==================== Dead letters ====================

    def requeue_dead_letters(self, event_ids: list[str] | None = None) -> int:
        """Give dead-lettered events a fresh set of attempts."""
        return self.log.requeue_dead_letters(event_ids)

    def discard_dead_letters(self, event_ids: list[str]) -> list[PendingEvent]:
        """Abandon dead-lettered events.

        The optimistic local value is kept but flagged as conflicted, since
        the server never accepted it.
        """
        with self.log.database.transaction():
            dropped = self.log.discard(event_ids)
            for event in dropped:
                if not self.log.has_pending_for(event.entity_type, event.target_id):
                    self.store.clear_pending(event.entity_type, event.target_id)
                self.store.mark_conflicted(event.entity_type, event.target_id, "discarded")
        return dropped

    async def fetch_server_status(self) -> dict[str, Any]:
        """Fetch the server-side counters for this device.

        Raises:
            httpx.HTTPStatusError: If the server answers with an error.
            httpx.TransportError: If the server cannot be reached.
            SessionExpiredError: If the session could not be refreshed.
        """
        response = await self.guard.get("/sync/status")
        response.raise_for_status()
        return response.json()
