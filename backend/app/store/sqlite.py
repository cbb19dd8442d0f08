"""SQLite record store.

One table per entity. Payload columns hold JSON-encoded values so any
JSON scalar, array or object round-trips unchanged. A single-row
``sync_sequence`` table hands out ``change_seq`` values; it is bumped in
the same ``BEGIN IMMEDIATE`` transaction as the row write, so sequence
order is commit order.
"""

import contextlib
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from klettrack.contract import ENTITIES, ENTITY_FIELD_ALLOWLIST, NATURAL_KEYS

from .base import ChangeRow, DuplicateRecordError, RecordStore, RecordStoreError

logger = logging.getLogger(__name__)

_BASE_COLUMNS = """
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    updated_at_client TEXT,
    updated_at_server TEXT NOT NULL,
    last_op_id TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    change_seq INTEGER NOT NULL"""


def _table_ddl(entity: str) -> str:
    payload_columns = "".join(f",\n    {field} TEXT" for field in ENTITY_FIELD_ALLOWLIST[entity])
    ddl = f"CREATE TABLE IF NOT EXISTS {entity} ({_BASE_COLUMNS}{payload_columns}"
    natural_key = NATURAL_KEYS.get(entity)
    if natural_key:
        ddl += f",\n    UNIQUE (owner_id, {', '.join(natural_key)})"
    ddl += "\n);\n"
    ddl += (
        f"CREATE INDEX IF NOT EXISTS idx_{entity}_owner_seq ON {entity}(owner_id, change_seq);\n"
    )
    return ddl


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_entity(entity: str) -> str:
    # Entity names are interpolated into SQL
    if entity not in ENTITIES:
        raise ValueError(f"Invalid entity: {entity}")
    return entity


class SQLiteRecordStore(RecordStore):
    """Record store backed by a local SQLite file."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            # Each operation opens its own connection
            raise ValueError("SQLiteRecordStore needs a file path")
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        # Autocommit mode; transactions are opened explicitly
        conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _read(self):
        try:
            conn = self._get_conn()
        except sqlite3.Error as e:
            raise RecordStoreError(str(e)) from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise RecordStoreError(str(e)) from e
        finally:
            conn.close()

    @contextlib.contextmanager
    def _write(self):
        """Serialized write transaction: commit on success, rollback on error."""
        try:
            conn = self._get_conn()
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise RecordStoreError(str(e)) from e
        try:
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as e:
            conn.execute("ROLLBACK")
            # Natural keys are the only multi-column uniques and all start with owner_id
            raise DuplicateRecordError(str(e), natural_key=".owner_id" in str(e)) from e
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            raise RecordStoreError(str(e)) from e
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        script = [
            "CREATE TABLE IF NOT EXISTS sync_sequence (id INTEGER PRIMARY KEY CHECK (id = 1), value INTEGER NOT NULL);",
            "INSERT OR IGNORE INTO sync_sequence (id, value) VALUES (1, 0);",
        ]
        script.extend(_table_ddl(entity) for entity in sorted(ENTITIES))
        conn = self._get_conn()
        try:
            conn.executescript("\n".join(script))
        finally:
            conn.close()

    # === Row encoding ===

    @staticmethod
    def _decode(entity: str, row: sqlite3.Row) -> dict[str, Any]:
        record = {
            "id": row["id"],
            "owner_id": row["owner_id"],
            "version": row["version"],
            "updated_at_client": row["updated_at_client"],
            "updated_at_server": row["updated_at_server"],
            "last_op_id": row["last_op_id"],
            "is_deleted": bool(row["is_deleted"]),
        }
        for field in ENTITY_FIELD_ALLOWLIST[entity]:
            raw = row[field]
            record[field] = json.loads(raw) if raw is not None else None
        return record

    @staticmethod
    def _next_seq(conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE sync_sequence SET value = value + 1 WHERE id = 1")
        return conn.execute("SELECT value FROM sync_sequence WHERE id = 1").fetchone()["value"]

    @staticmethod
    def _encode_fields(fields: dict[str, Any]) -> dict[str, str | None]:
        return {k: (json.dumps(v) if v is not None else None) for k, v in fields.items()}

    # === RecordStore ===

    def fetch_record(self, entity, owner_id, record_id):
        table = _validate_entity(entity)
        with self._read() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ? AND owner_id = ?", (record_id, owner_id)
            ).fetchone()
        return self._decode(entity, row) if row else None

    def record_exists(self, entity, owner_id, record_id):
        table = _validate_entity(entity)
        with self._read() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ? AND owner_id = ?", (record_id, owner_id)
            ).fetchone()
        return row is not None

    def insert_record(self, entity, owner_id, record_id, *, op_id, updated_at_client, is_deleted, fields):
        table = _validate_entity(entity)
        encoded = self._encode_fields(fields)
        with self._write() as conn:
            natural_key = NATURAL_KEYS.get(entity)
            if natural_key and all(fields.get(k) is not None for k in natural_key):
                clause = " AND ".join(f"{k} = ?" for k in natural_key)
                existing = conn.execute(
                    f"SELECT id FROM {table} WHERE owner_id = ? AND {clause}",
                    (owner_id, *(encoded[k] for k in natural_key)),
                ).fetchone()
                if existing is not None:
                    raise DuplicateRecordError(
                        f"{entity} natural key exists as {existing['id']}", natural_key=True
                    )

            seq = self._next_seq(conn)
            columns = {
                "id": record_id,
                "owner_id": owner_id,
                "version": 1,
                "updated_at_client": updated_at_client,
                "updated_at_server": _now(),
                "last_op_id": op_id,
                "is_deleted": 1 if is_deleted else 0,
                "change_seq": seq,
                **encoded,
            }
            names = ", ".join(columns)
            placeholders = ", ".join("?" for _ in columns)
            conn.execute(
                f"INSERT INTO {table} ({names}) VALUES ({placeholders})", tuple(columns.values())
            )
            row = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return self._decode(entity, row)

    def update_record(
        self, entity, owner_id, record_id, *, expected_version, op_id, updated_at_client, is_deleted, fields
    ):
        table = _validate_entity(entity)
        try:
            with self._write() as conn:
                row = self._compare_and_swap(
                    conn, table, owner_id, record_id, expected_version,
                    op_id, updated_at_client, is_deleted, fields,
                )
        except _StaleWrite:
            return None
        return self._decode(entity, row)

    def _compare_and_swap(
        self, conn, table, owner_id, record_id, expected_version, op_id, updated_at_client, is_deleted, fields
    ):
        seq = self._next_seq(conn)
        columns = {
            "version": expected_version + 1,
            "updated_at_client": updated_at_client,
            "updated_at_server": _now(),
            "last_op_id": op_id,
            "is_deleted": 1 if is_deleted else 0,
            "change_seq": seq,
            **self._encode_fields(fields),
        }
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ? AND owner_id = ? AND version = ?",
            (*columns.values(), record_id, owner_id, expected_version),
        )
        if cursor.rowcount != 1:
            # Lost the race; the sequence bump is rolled back with the transaction
            raise _StaleWrite()
        return conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()

    def changes_since(self, owner_id, after_seq, limit):
        rows: list[ChangeRow] = []
        with self._read() as conn:
            for entity in sorted(ENTITIES):
                for row in conn.execute(
                    f"""SELECT * FROM {entity}
                        WHERE owner_id = ? AND change_seq > ?
                        ORDER BY change_seq ASC
                        LIMIT ?""",
                    (owner_id, after_seq, limit),
                ).fetchall():
                    rows.append(ChangeRow(entity=entity, seq=row["change_seq"], row=self._decode(entity, row)))
        rows.sort(key=lambda change: change.seq)
        return rows[:limit]

    def high_water_mark(self, owner_id):
        union = " UNION ALL ".join(
            f"SELECT MAX(change_seq) AS seq FROM {entity} WHERE owner_id = ?"
            for entity in sorted(ENTITIES)
        )
        with self._read() as conn:
            row = conn.execute(
                f"SELECT COALESCE(MAX(seq), 0) AS seq FROM ({union})",
                tuple(owner_id for _ in ENTITIES),
            ).fetchone()
        return row["seq"]

    def ping(self) -> bool:
        with self._read() as conn:
            conn.execute("SELECT value FROM sync_sequence WHERE id = 1").fetchone()
        return True


class _StaleWrite(Exception):
    pass
