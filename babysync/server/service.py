"""Remote sync service: applies pushed events and answers pull queries."""

import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from ..models import Ack, AckStatus, ENTITY_TYPES, Operation, PulledRecord, parse_timestamp, utc_now
from .datastore import SyncDatastore
from .repository import (
    AccessDeniedError,
    DomainRepository,
    RecordNotFoundError,
    RecordValidationError,
    StoredRecord,
)

logger = logging.getLogger(__name__)

# Business validation hook per entity type: raises RecordValidationError
Validator = Callable[[Operation, "dict[str, Any] | None"], None]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InvalidCursorError(ValueError):
    """A pull cursor that this server did not issue."""


@dataclass
class IncomingEvent:
    """A pushed event as received from a device."""

    id: str
    entity_type: str
    operation: str
    target_id: str
    payload: Any = None
    created_at: datetime | None = None
    sequence: int | None = None

    def __post_init__(self):
        if self.created_at is not None:
            self.created_at = parse_timestamp(self.created_at)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IncomingEvent":
        return cls(
            id=data["id"],
            entity_type=data["entity_type"],
            operation=data["operation"],
            target_id=data["target_id"],
            payload=data.get("payload"),
            created_at=data.get("created_at") or None,
            sequence=data.get("sequence"),
        )


@dataclass
class PullPage:
    """One page of a pull response."""

    records: list[PulledRecord] = field(default_factory=list)
    cursor: str = "0"
    has_more: bool = False


def parse_cursor(cursor: str | None) -> int:
    """Decode a pull cursor into a change sequence number.

    Raises:
        InvalidCursorError: If the cursor is not one this server issues.
    """
    if cursor is None or cursor == "":
        return 0
    try:
        value = int(cursor)
    except (TypeError, ValueError):
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}") from None
    if value < 0:
        raise InvalidCursorError(f"Invalid cursor: {cursor!r}")
    return value


class RemoteSyncService:
    """Server side of the sync protocol.

    Pushed events are applied per target in creation order with
    last-write-wins on the logical ``updated_at``. Every settled outcome is
    recorded in a dedup ledger so a re-sent event never applies twice.
    """

    def __init__(
        self,
        datastore: SyncDatastore,
        repositories: dict[str, DomainRepository] | None = None,
        validators: dict[str, Validator] | None = None,
        dedup_retention_hours: float = 168.0,
    ):
        """Initialize the service.

        Args:
            datastore: Server datastore (ledger, device state, sequence).
            repositories: Repository per entity type. Defaults to a SQLite
                repository for every known entity type.
            validators: Optional business validation hook per entity type.
            dedup_retention_hours: How long settled event ids are remembered.
        """
        self.datastore = datastore
        if repositories is None:
            repositories = {name: datastore.repository(name) for name in ENTITY_TYPES}
        self.repositories = repositories
        self.validators = validators or {}
        self.dedup_retention = timedelta(hours=dedup_retention_hours)

    # ==================== Push ====================

    def push(
        self,
        user_id: str,
        family_id: str,
        device_id: str,
        events: list[IncomingEvent],
    ) -> list[Ack]:
        """Apply a batch of events.

        Returns:
            One Ack per event, in submission order.
        """
        now = utc_now()
        self.datastore.prune_processed(now - self.dedup_retention)

        # A batch comes from one device's log, so its enqueue sequence is
        # the order to apply in. Device clocks can step backwards.
        if all(event.sequence is not None for event in events):
            order = sorted(range(len(events)), key=lambda i: (events[i].sequence, i))
        else:
            order = sorted(
                range(len(events)), key=lambda i: (events[i].created_at or _EPOCH, i)
            )

        acks: list[Ack | None] = [None] * len(events)
        blocked: set[tuple[str, str]] = set()
        written: dict[tuple[str, str], datetime] = {}
        for index in order:
            acks[index] = self._process(family_id, events[index], blocked, written)

        self.datastore.record_push(user_id, device_id, now)

        applied = sum(1 for ack in acks if ack.status == AckStatus.APPLIED)
        logger.info(
            f"Push from {user_id}/{device_id}: {applied}/{len(events)} applied"
        )
        return acks

    def _process(
        self,
        family_id: str,
        event: IncomingEvent,
        blocked: set[tuple[str, str]],
        written: dict[tuple[str, str], datetime],
    ) -> Ack:
        recorded = self.datastore.get_processed(family_id, event.id)
        if recorded is not None:
            logger.debug(f"Duplicate event {event.id}, returning recorded ack")
            return recorded

        key = (event.entity_type, event.target_id)
        if key in blocked:
            return Ack(event.id, AckStatus.RETRYABLE, "blocked")

        try:
            with self.datastore.transaction():
                ack = self._apply(family_id, event, written)
                if ack.status != AckStatus.RETRYABLE:
                    self.datastore.record_processed(family_id, ack)
        except sqlite3.OperationalError as e:
            logger.warning(f"Storage unavailable applying {event.id}: {e}")
            ack = Ack(event.id, AckStatus.RETRYABLE, "storage_unavailable")

        if ack.status == AckStatus.RETRYABLE:
            blocked.add(key)
        return ack

    def _apply(
        self,
        family_id: str,
        event: IncomingEvent,
        written: dict[tuple[str, str], datetime],
    ) -> Ack:
        repository = self.repositories.get(event.entity_type)
        if repository is None:
            return Ack(event.id, AckStatus.REJECTED, "unknown_entity_type")

        try:
            operation = Operation(event.operation)
        except ValueError:
            return Ack(event.id, AckStatus.REJECTED, "invalid_operation")

        if not event.target_id:
            return Ack(event.id, AckStatus.REJECTED, "invalid_payload")

        payload = None
        if operation != Operation.DELETE:
            if not isinstance(event.payload, dict):
                return Ack(event.id, AckStatus.REJECTED, "invalid_payload")
            payload = event.payload

        validator = self.validators.get(event.entity_type)
        if validator is not None:
            try:
                validator(operation, payload)
            except RecordValidationError as e:
                logger.info(f"Event {event.id} failed validation: {e}")
                return Ack(event.id, AckStatus.REJECTED, "invalid")

        existing = repository.get(event.target_id)
        if existing is not None and existing.family_id != family_id:
            return Ack(event.id, AckStatus.REJECTED, "forbidden")

        if existing is not None and existing.deleted:
            return Ack(event.id, AckStatus.REJECTED, "not_found")

        key = (event.entity_type, event.target_id)
        updated_at = self._logical_timestamp(event, payload)
        # A later event from the same batch never loses to an earlier one
        if key in written and updated_at < written[key]:
            updated_at = written[key]

        if existing is not None and updated_at < existing.updated_at:
            # Keep the winner and make sure every device pulls it again
            repository.touch(event.target_id)
            logger.info(
                f"Stale {operation.value} of {event.entity_type}/{event.target_id} "
                f"discarded ({updated_at.isoformat()} < {existing.updated_at.isoformat()})"
            )
            return Ack(event.id, AckStatus.APPLIED, "stale")

        if operation == Operation.CREATE and existing is not None:
            operation = Operation.UPDATE

        try:
            repository.apply(family_id, operation, event.target_id, payload, updated_at)
        except RecordNotFoundError:
            return Ack(event.id, AckStatus.REJECTED, "not_found")
        except AccessDeniedError:
            return Ack(event.id, AckStatus.REJECTED, "forbidden")

        written[key] = updated_at
        return Ack(event.id, AckStatus.APPLIED)

    @staticmethod
    def _logical_timestamp(event: IncomingEvent, payload: dict[str, Any] | None) -> datetime:
        if payload and payload.get("updated_at"):
            try:
                return parse_timestamp(payload["updated_at"])
            except ValueError:
                logger.debug(f"Ignoring unparsable updated_at on {event.id}")
        if event.created_at is not None:
            return event.created_at
        return utc_now()

    # ==================== Pull ====================

    def pull(
        self,
        user_id: str,
        family_id: str,
        device_id: str,
        cursor: str | None = None,
        limit: int = 500,
    ) -> PullPage:
        """Return the family's records changed after ``cursor``.

        Raises:
            InvalidCursorError: If the cursor is malformed.
        """
        since = parse_cursor(cursor)
        limit = max(1, limit)
        upto = self.datastore.current_seq()

        changed: list[StoredRecord] = []
        for repository in self.repositories.values():
            changed.extend(repository.list_since(family_id, since, upto, limit + 1))
        changed.sort(key=lambda record: record.seq)

        has_more = len(changed) > limit
        page = changed[:limit]

        if has_more:
            next_cursor = page[-1].seq
        else:
            next_cursor = max(since, upto)

        records = [
            PulledRecord(
                entity_type=record.entity_type,
                id=record.id,
                payload=None if record.deleted else record.payload,
                updated_at=record.updated_at,
            )
            for record in page
        ]

        new_cursor = str(next_cursor)
        self.datastore.record_pull(user_id, device_id, new_cursor)

        logger.debug(
            f"Pull for {user_id}/{device_id} since {since}: "
            f"{len(records)} records, cursor={new_cursor}, has_more={has_more}"
        )
        return PullPage(records=records, cursor=new_cursor, has_more=has_more)

    # ==================== Status ====================

    def status(self, user_id: str, device_id: str) -> dict[str, Any]:
        """Last push time and pull cursor for a device."""
        return self.datastore.get_device_state(user_id, device_id)
