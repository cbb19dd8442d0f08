"""Storage interfaces used by the sync reconciler.

The reconciler never touches SQL directly. It talks to two collaborators:

- ``LocalStore``: the on-device copy of the user's records. Pulled
  changes are applied here and base versions for new edits are read from
  it.
- ``SyncState``: the small amount of bookkeeping that must survive a
  restart: cursor, pending mutation map, last successful sync time and
  the conflict audit trail.

``SQLiteStorage`` implements both. Tests may substitute their own.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from klettrack.types import Change, ConflictEvent, PendingMutation


class LocalStore(ABC):
    """On-device record cache."""

    @abstractmethod
    def apply_change(self, user_id: str, change: Change) -> bool:
        """Apply a pulled change. Returns False if it was older than the local copy."""
        ...

    @abstractmethod
    def version_of(self, user_id: str, entity: str, entity_id: str) -> int:
        """Server version of a record as last seen, 0 if never seen."""
        ...

    @abstractmethod
    def get_record(self, user_id: str, entity: str, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return ``{"version", "is_deleted", "doc"}`` or None."""
        ...

    @abstractmethod
    def has_tracked_data(self, user_id: str, entities: Iterable[str]) -> bool:
        """True if any live record exists for the given entities."""
        ...


class SyncState(ABC):
    """Persisted client sync bookkeeping."""

    @abstractmethod
    def get_cursor(self, user_id: str) -> Optional[str]: ...

    @abstractmethod
    def set_cursor(self, user_id: str, cursor: Optional[str]) -> None: ...

    @abstractmethod
    def get_last_sync_time(self, user_id: str) -> Optional[str]: ...

    @abstractmethod
    def set_last_sync_time(self, user_id: str, timestamp: str) -> None: ...

    @abstractmethod
    def get_device_id(self) -> str:
        """Stable per-device identifier, generated on first call."""
        ...

    @abstractmethod
    def load_pending(self, user_id: str) -> List[PendingMutation]:
        """Pending mutations in queue order."""
        ...

    @abstractmethod
    def save_pending(self, user_id: str, entries: List[PendingMutation]) -> None:
        """Replace the persisted queue with ``entries`` (in order)."""
        ...

    @abstractmethod
    def append_conflict_event(self, user_id: str, event: ConflictEvent, cap: int) -> None: ...

    @abstractmethod
    def list_conflict_events(self, user_id: str, limit: int) -> List[ConflictEvent]:
        """Most recent first."""
        ...

    @abstractmethod
    def clear_conflict_events(self, user_id: str) -> int: ...
