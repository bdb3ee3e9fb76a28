"""Shared data types for the sync engine and its wire format."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Operation(str, Enum):
    """Kind of mutation carried by a pending event."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AckStatus(str, Enum):
    """Per-event outcome reported by the server for a pushed event."""

    APPLIED = "applied"
    REJECTED = "rejected"  # Permanent, never retried
    RETRYABLE = "retryable"  # Transient, retried with backoff


class EventState(str, Enum):
    """Lifecycle state of an event inside the pending log."""

    PENDING = "pending"
    DEAD = "dead"  # Attempt ceiling reached, waits for the user


# Entity types handled by the family tracker
ENTITY_TYPES = (
    "feeding",
    "sleep",
    "medication",
    "medication_log",
    "note",
    "vaccination",
    "appointment",
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class PendingEvent:
    """A queued, not yet acknowledged local mutation."""

    id: str
    entity_type: str
    operation: Operation
    target_id: str
    payload: dict[str, Any] | None
    created_at: datetime
    attempt_count: int = 0
    sequence: int | None = None  # Local insertion order, set by the log
    state: EventState = EventState.PENDING
    last_error: str | None = None
    next_attempt_at: datetime | None = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the push request body."""
        data = {
            "id": self.id,
            "entity_type": self.entity_type,
            "operation": self.operation.value,
            "target_id": self.target_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }
        if self.sequence is not None:
            data["sequence"] = self.sequence
        return data


@dataclass
class LocalRecord:
    """The device's current view of one domain record."""

    id: str
    entity_type: str
    payload: dict[str, Any] | None
    pending_sync: bool = False
    synced_at: datetime | None = None
    updated_at: datetime | None = None
    conflicted: bool = False
    conflict_reason: str | None = None
    deleted: bool = False  # Local delete awaiting acknowledgement


@dataclass
class Ack:
    """Server acknowledgement for one pushed event."""

    event_id: str
    status: AckStatus
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"event_id": self.event_id, "status": self.status.value}
        if self.reason is not None:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Ack":
        return cls(
            event_id=data["event_id"],
            status=AckStatus(data["status"]),
            reason=data.get("reason"),
        )


@dataclass
class PulledRecord:
    """A record returned by a pull. A ``None`` payload is a tombstone."""

    entity_type: str
    id: str
    payload: dict[str, Any] | None
    updated_at: datetime

    @property
    def is_tombstone(self) -> bool:
        return self.payload is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "id": self.id,
            "payload": self.payload,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PulledRecord":
        """Create from a wire dictionary.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed.
        """
        payload = data["payload"]
        if payload is not None and not isinstance(payload, dict):
            raise TypeError(f"payload must be an object, got {type(payload).__name__}")
        entity_type = data["entity_type"]
        record_id = data["id"]
        if not entity_type or not record_id:
            raise ValueError("entity_type and id are required")
        return cls(
            entity_type=str(entity_type),
            id=str(record_id),
            payload=payload,
            updated_at=parse_timestamp(data["updated_at"]),
        )


@dataclass
class SyncIssue:
    """A user-visible problem raised during sync.

    Issues are non-blocking: the engine keeps going and the UI decides how
    to present them.
    """

    kind: str  # "rejected", "dead_letter", "skipped_record"
    message: str
    entity_type: str | None = None
    target_id: str | None = None
    event_id: str | None = None
    reason: str | None = None
    created_at: datetime = field(default_factory=utc_now)
