"""Optimistic local mutations with a queued path to the server.

Every create, update or delete goes through one operation regardless of
entity type: the local record is written optimistically and a pending event
is appended in the same local transaction. The event is then pushed right
away when a sync client is attached, or on the next sync otherwise.
"""

import logging
import uuid
from typing import Any, TYPE_CHECKING

from ..auth import SessionExpiredError
from ..local import LocalRecordStore, PendingEventLog
from ..models import LocalRecord, Operation, PendingEvent, utc_now

if TYPE_CHECKING:
    from .sync_client import SyncClient

logger = logging.getLogger(__name__)


class LocalRecordNotFoundError(LookupError):
    """An update or delete targeted a record this device does not have."""


class RecordMutator:
    """Applies local mutations for any entity type."""

    def __init__(
        self,
        store: LocalRecordStore,
        log: PendingEventLog,
        sync_client: "SyncClient | None" = None,
    ):
        """Initialize the mutator.

        Args:
            store: Local record store receiving optimistic writes.
            log: Pending event log receiving the matching events.
            sync_client: Optional client used by :meth:`submit` to push
                immediately after the local write.
        """
        self.store = store
        self.log = log
        self.sync_client = sync_client

    def mutate(
        self,
        entity_type: str,
        operation: Operation | str,
        target_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> PendingEvent:
        """Write a mutation locally and queue it for the server.

        Args:
            entity_type: Entity type, e.g. "feeding" or "sleep".
            operation: create, update or delete.
            target_id: Record id. Generated for creates when omitted.
            payload: Full record body for create/update. Ignored for delete.

        Returns:
            The queued PendingEvent.

        Raises:
            ValueError: If the arguments do not describe a valid mutation.
            LocalRecordNotFoundError: If an update/delete targets an unknown record.
        """
        if not entity_type:
            raise ValueError("entity_type is required")
        operation = Operation(operation)

        if operation == Operation.CREATE:
            target_id = target_id or str(uuid.uuid4())
        elif not target_id:
            raise ValueError(f"target_id is required for {operation.value}")
        elif self.store.get(entity_type, target_id) is None:
            raise LocalRecordNotFoundError(f"{entity_type}/{target_id}")

        if operation == Operation.DELETE:
            # Keep the last known body locally so a rejected delete can be undone
            payload = None
            local_payload = self._current_payload(entity_type, target_id)
        elif not isinstance(payload, dict):
            raise ValueError(f"payload must be a dict for {operation.value}")
        else:
            local_payload = payload

        now = utc_now()
        event = PendingEvent(
            id=str(uuid.uuid4()),
            entity_type=entity_type,
            operation=operation,
            target_id=target_id,
            payload=payload,
            created_at=now,
        )

        with self.log.database.transaction():
            self.store.put_local(
                entity_type,
                target_id,
                local_payload,
                updated_at=now,
                deleted=operation == Operation.DELETE,
            )
            self.log.enqueue(event)

        logger.debug(f"Local {operation.value} of {entity_type}/{target_id} queued")
        return event

    def _current_payload(self, entity_type: str, target_id: str) -> dict[str, Any] | None:
        record = self.store.get(entity_type, target_id, include_deleted=True)
        return record.payload if record else None

    def create(
        self, entity_type: str, payload: dict[str, Any], record_id: str | None = None
    ) -> LocalRecord:
        event = self.mutate(entity_type, Operation.CREATE, record_id, payload)
        return self.store.get(entity_type, event.target_id)

    def update(self, entity_type: str, record_id: str, payload: dict[str, Any]) -> LocalRecord:
        self.mutate(entity_type, Operation.UPDATE, record_id, payload)
        return self.store.get(entity_type, record_id)

    def delete(self, entity_type: str, record_id: str) -> None:
        self.mutate(entity_type, Operation.DELETE, record_id)

    async def submit(
        self,
        entity_type: str,
        operation: Operation | str,
        target_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> PendingEvent:
        """Mutate locally, then try to push straight away.

        The local write and the queued event stand whatever the push outcome;
        an offline or signed-out device simply syncs later.
        """
        event = self.mutate(entity_type, operation, target_id, payload)

        if self.sync_client is not None:
            try:
                result = await self.sync_client.push()
                logger.debug(f"Immediate push after {event.id}: {result.status.value}")
            except SessionExpiredError:
                logger.warning(f"Session expired, {event.id} stays queued")

        return event
