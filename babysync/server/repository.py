"""Uniform capability the sync service uses to reach each domain's records."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..models import Operation


class RecordNotFoundError(LookupError):
    """The target record does not exist or has been deleted."""


class AccessDeniedError(PermissionError):
    """The target record belongs to another family."""


class RecordValidationError(ValueError):
    """A payload failed the domain's business validation."""


@dataclass
class StoredRecord:
    """Authoritative server copy of a record, including tombstones."""

    entity_type: str
    id: str
    family_id: str
    payload: dict[str, Any] | None
    updated_at: datetime  # Logical timestamp used for last-write-wins
    deleted: bool
    seq: int  # Server change sequence, drives pull cursors


class DomainRepository(ABC):
    """Storage for one entity type (feeding, sleep, medication, ...)."""

    @property
    @abstractmethod
    def entity_type(self) -> str:
        """Entity type served by this repository."""
        pass

    @abstractmethod
    def get(self, record_id: str) -> StoredRecord | None:
        """Get a record or tombstone by id."""
        pass

    @abstractmethod
    def apply(
        self,
        family_id: str,
        operation: Operation,
        record_id: str,
        payload: dict[str, Any] | None,
        updated_at: datetime,
    ) -> StoredRecord:
        """Apply a mutation and assign it a new change sequence.

        Raises:
            RecordNotFoundError: If an update/delete targets a missing record.
            AccessDeniedError: If the record belongs to another family.
        """
        pass

    @abstractmethod
    def touch(self, record_id: str) -> StoredRecord | None:
        """Give a record a new change sequence without changing it.

        Used to re-announce the winning version after a stale write was
        discarded, so devices holding the loser pull the winner.
        """
        pass

    @abstractmethod
    def list_since(
        self, family_id: str, since_seq: int, upto_seq: int, limit: int
    ) -> list[StoredRecord]:
        """Records of a family changed in ``(since_seq, upto_seq]``, oldest first."""
        pass
