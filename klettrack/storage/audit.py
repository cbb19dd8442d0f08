"""Conflict audit trail.

Records when a conflict was detected and how the user settled it. The
trail is best-effort: a storage failure is logged and dropped so it can
never break a sync cycle or a resolution.
"""

import logging
import uuid
from collections import deque
from typing import Deque, List

from klettrack.logging_config import log_conflict_event
from klettrack.types import Conflict, ConflictEvent, ConflictEventType, utc_now

from .base import SyncState

logger = logging.getLogger(__name__)

MAX_AUDIT_EVENTS = 200
MAX_RECENT_EVENTS = 50


class ConflictAuditLog:
    """Capped, most-recent-first conflict event log for one user."""

    def __init__(self, state: SyncState, user_id: str, cap: int = MAX_AUDIT_EVENTS):
        self._state = state
        self._user_id = user_id
        self._cap = cap
        self._recent: Deque[ConflictEvent] = deque(maxlen=MAX_RECENT_EVENTS)

    def record(self, event_type: ConflictEventType, conflict: Conflict) -> ConflictEvent:
        event = ConflictEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=utc_now(),
            entity=conflict.entity,
            entity_id=conflict.entity_id,
            reason=conflict.reason,
        )
        self.append(event)
        return event

    def append(self, event: ConflictEvent) -> None:
        self._recent.appendleft(event)
        try:
            self._state.append_conflict_event(self._user_id, event, self._cap)
        except Exception as e:
            logger.warning(f"Failed to persist conflict event {event.event_type.value}: {e}")
        try:
            log_conflict_event(self._user_id, event.event_type.value, event.entity, event.entity_id)
        except OSError as e:
            logger.debug(f"Failed to write conflict event log: {e}")

    def events(self, limit: int = MAX_AUDIT_EVENTS) -> List[ConflictEvent]:
        """Persisted events, most recent first. Falls back to memory if storage fails."""
        try:
            return self._state.list_conflict_events(self._user_id, min(limit, self._cap))
        except Exception as e:
            logger.warning(f"Failed to read conflict events: {e}")
            return list(self._recent)[:limit]

    def recent(self) -> List[ConflictEvent]:
        """Events recorded by this process, most recent first."""
        return list(self._recent)

    def clear(self) -> int:
        self._recent.clear()
        return self._state.clear_conflict_events(self._user_id)
