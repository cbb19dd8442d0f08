"""Record store interface.

A record store holds one table per entity. Every method takes the owner
id and filters by it; a row belonging to another owner is invisible.

Rows are dicts with the record columns (``id``, ``owner_id``, ``version``,
``updated_at_client``, ``updated_at_server``, ``last_op_id``,
``is_deleted``) plus the entity's payload fields. Stores also maintain a
``change_seq`` per row: a write-order sequence, strictly increasing across
all entity tables, which backs the pull cursor.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


class RecordStoreError(Exception):
    """The underlying storage failed. The operation may be retried."""


class DuplicateRecordError(RecordStoreError):
    """An insert collided with an existing primary or natural key."""

    def __init__(self, message: str, natural_key: bool = False):
        super().__init__(message)
        self.natural_key = natural_key


@dataclass
class ChangeRow:
    """A row from the change feed."""

    entity: str
    seq: int
    row: dict[str, Any]


class RecordStore(ABC):
    """Owner-scoped storage for synced records."""

    @abstractmethod
    def fetch_record(self, entity: str, owner_id: str, record_id: str) -> dict[str, Any] | None:
        """Return the owner's row, or None."""

    @abstractmethod
    def record_exists(self, entity: str, owner_id: str, record_id: str) -> bool:
        """True if the owner has a row with this id (tombstones included)."""

    @abstractmethod
    def insert_record(
        self,
        entity: str,
        owner_id: str,
        record_id: str,
        *,
        op_id: str,
        updated_at_client: str | None,
        is_deleted: bool,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        """Insert a new row at version 1.

        Raises:
            DuplicateRecordError: the id (under any owner) or a natural key exists.
            RecordStoreError: on any other storage failure.
        """

    @abstractmethod
    def update_record(
        self,
        entity: str,
        owner_id: str,
        record_id: str,
        *,
        expected_version: int,
        op_id: str,
        updated_at_client: str | None,
        is_deleted: bool,
        fields: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Compare-and-swap update.

        Applies only if the row's version still equals ``expected_version``;
        the new version is ``expected_version + 1``. Returns the updated
        row, or None if the row moved on (or vanished) in the meantime.
        """

    @abstractmethod
    def changes_since(self, owner_id: str, after_seq: int, limit: int) -> list[ChangeRow]:
        """Up to ``limit`` rows with ``change_seq > after_seq``, ascending."""

    @abstractmethod
    def high_water_mark(self, owner_id: str) -> int:
        """Largest ``change_seq`` among the owner's rows (0 if none)."""

    def ping(self) -> bool:
        """Cheap liveness probe for health checks."""
        return True
