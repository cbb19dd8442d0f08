"""SQLite-backed client storage.

One database file holds the sync bookkeeping and the local record cache
for every user that signs in on the device; all rows are keyed by user.
Connections are opened per operation through ``_connect()``.
"""

import contextlib
import json
import logging
import sqlite3
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from klettrack.types import (
    Change,
    Conflict,
    ConflictEvent,
    ConflictEventType,
    Mutation,
    MutationState,
    MutationType,
    PendingMutation,
    utc_now,
)
from klettrack.utils import get_default_db_path

from .base import LocalStore, SyncState
from .schema import init_db

logger = logging.getLogger(__name__)

DEVICE_SCOPE = ""  # sync_meta user_id for device-wide keys

CURSOR_KEY = "cursor"
LAST_SYNC_KEY = "last_sync_at"
DEVICE_ID_KEY = "device_id"


class SQLiteStorage(LocalStore, SyncState):
    """Client state store backed by a single SQLite file."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else get_default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error, always closes."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    # === Sync Meta ===

    def _get_meta(self, user_id: str, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE user_id = ? AND key = ?", (user_id, key)
            ).fetchone()
        return row["value"] if row else None

    def _set_meta(self, user_id: str, key: str, value: Optional[str]) -> None:
        with self._connect() as conn:
            if value is None:
                conn.execute(
                    "DELETE FROM sync_meta WHERE user_id = ? AND key = ?", (user_id, key)
                )
            else:
                conn.execute(
                    "INSERT OR REPLACE INTO sync_meta (user_id, key, value, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (user_id, key, value, utc_now()),
                )

    def get_cursor(self, user_id: str) -> Optional[str]:
        return self._get_meta(user_id, CURSOR_KEY)

    def set_cursor(self, user_id: str, cursor: Optional[str]) -> None:
        self._set_meta(user_id, CURSOR_KEY, cursor)

    def get_last_sync_time(self, user_id: str) -> Optional[str]:
        return self._get_meta(user_id, LAST_SYNC_KEY)

    def set_last_sync_time(self, user_id: str, timestamp: str) -> None:
        self._set_meta(user_id, LAST_SYNC_KEY, timestamp)

    def get_device_id(self) -> str:
        device_id = self._get_meta(DEVICE_SCOPE, DEVICE_ID_KEY)
        if device_id:
            return device_id
        device_id = str(uuid.uuid4())
        with self._connect() as conn:
            # First writer wins if two processes race
            conn.execute(
                "INSERT OR IGNORE INTO sync_meta (user_id, key, value, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (DEVICE_SCOPE, DEVICE_ID_KEY, device_id, utc_now()),
            )
        return self._get_meta(DEVICE_SCOPE, DEVICE_ID_KEY) or device_id

    # === Pending Mutations ===

    def load_pending(self, user_id: str) -> List[PendingMutation]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT op_id, state, mutation, conflict, prior_state, enqueued_at
                   FROM pending_mutations
                   WHERE user_id = ?
                   ORDER BY position ASC""",
                (user_id,),
            ).fetchall()

        entries = []
        for row in rows:
            try:
                mutation = Mutation.from_wire(json.loads(row["mutation"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping unreadable pending mutation {row['op_id']}: {e}")
                continue
            conflict = None
            if row["conflict"]:
                conflict = Conflict.from_wire(json.loads(row["conflict"]))
            entries.append(
                PendingMutation(
                    mutation=mutation,
                    state=MutationState(row["state"]),
                    enqueued_at=row["enqueued_at"],
                    conflict=conflict,
                    prior_state=MutationState(row["prior_state"]) if row["prior_state"] else None,
                )
            )
        return entries

    def save_pending(self, user_id: str, entries: List[PendingMutation]) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM pending_mutations WHERE user_id = ?", (user_id,))
            conn.executemany(
                """INSERT INTO pending_mutations
                   (user_id, op_id, position, state, entity, entity_id, mutation,
                    conflict, prior_state, enqueued_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        user_id,
                        entry.op_id,
                        position,
                        entry.state.value,
                        entry.mutation.entity,
                        entry.mutation.entity_id,
                        json.dumps(entry.mutation.to_wire()),
                        json.dumps(entry.conflict.to_wire()) if entry.conflict else None,
                        entry.prior_state.value if entry.prior_state else None,
                        entry.enqueued_at,
                    )
                    for position, entry in enumerate(entries)
                ],
            )

    # === Conflict Events ===

    def append_conflict_event(self, user_id: str, event: ConflictEvent, cap: int) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM conflict_events WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            conn.execute(
                """INSERT INTO conflict_events
                   (id, user_id, event_type, timestamp, entity, entity_id, reason, seq)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.id,
                    user_id,
                    event.event_type.value,
                    event.timestamp,
                    event.entity,
                    event.entity_id,
                    event.reason,
                    row["seq"] + 1,
                ),
            )
            conn.execute(
                """DELETE FROM conflict_events
                   WHERE user_id = ? AND id NOT IN (
                       SELECT id FROM conflict_events
                       WHERE user_id = ?
                       ORDER BY seq DESC
                       LIMIT ?
                   )""",
                (user_id, user_id, cap),
            )

    def list_conflict_events(self, user_id: str, limit: int) -> List[ConflictEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT id, event_type, timestamp, entity, entity_id, reason
                   FROM conflict_events
                   WHERE user_id = ?
                   ORDER BY seq DESC
                   LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        return [
            ConflictEvent(
                id=row["id"],
                event_type=ConflictEventType(row["event_type"]),
                timestamp=row["timestamp"],
                entity=row["entity"],
                entity_id=row["entity_id"],
                reason=row["reason"],
            )
            for row in rows
        ]

    def clear_conflict_events(self, user_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM conflict_events WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    # === Local Records ===

    def apply_change(self, user_id: str, change: Change) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT version, doc FROM local_records WHERE user_id = ? AND entity = ? AND id = ?",
                (user_id, change.entity, change.entity_id),
            ).fetchone()
            if row is not None and row["version"] > change.version:
                logger.debug(
                    f"Skipping stale change {change.entity}/{change.entity_id} "
                    f"v{change.version} < local v{row['version']}"
                )
                return False

            if change.type == MutationType.DELETE:
                doc = row["doc"] if row is not None else None
                is_deleted = 1
            else:
                doc = json.dumps(change.doc or {})
                is_deleted = 1 if (change.doc or {}).get("is_deleted") else 0

            conn.execute(
                """INSERT OR REPLACE INTO local_records
                   (user_id, entity, id, version, is_deleted, doc, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (user_id, change.entity, change.entity_id, change.version, is_deleted, doc, utc_now()),
            )
        return True

    def version_of(self, user_id: str, entity: str, entity_id: str) -> int:
        record = self.get_record(user_id, entity, entity_id)
        return record["version"] if record else 0

    def get_record(self, user_id: str, entity: str, entity_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT version, is_deleted, doc FROM local_records
                   WHERE user_id = ? AND entity = ? AND id = ?""",
                (user_id, entity, entity_id),
            ).fetchone()
        if row is None:
            return None
        return {
            "version": row["version"],
            "is_deleted": bool(row["is_deleted"]),
            "doc": json.loads(row["doc"]) if row["doc"] else None,
        }

    def has_tracked_data(self, user_id: str, entities: Iterable[str]) -> bool:
        entities = list(entities)
        if not entities:
            return False
        placeholders = ", ".join("?" for _ in entities)
        with self._connect() as conn:
            row = conn.execute(
                f"""SELECT 1 FROM local_records
                    WHERE user_id = ? AND is_deleted = 0 AND entity IN ({placeholders})
                    LIMIT 1""",
                (user_id, *entities),
            ).fetchone()
        return row is not None

    def count_records(self, user_id: str, include_deleted: bool = False) -> int:
        query = "SELECT COUNT(*) AS n FROM local_records WHERE user_id = ?"
        if not include_deleted:
            query += " AND is_deleted = 0"
        with self._connect() as conn:
            return conn.execute(query, (user_id,)).fetchone()["n"]

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass
