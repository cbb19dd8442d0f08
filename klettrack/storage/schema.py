"""Database schema for the klettrack client SQLite store.

Contains:
- Schema DDL (SCHEMA)
- Schema version tracking (SCHEMA_VERSION)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import sqlite3

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Allowed table names for SQL queries built with f-strings
ALLOWED_TABLES = frozenset(
    {
        "schema_version",
        "sync_meta",
        "pending_mutations",
        "conflict_events",
        "local_records",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection."""
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Per-user key/value sync metadata (cursor, last sync time).
-- Device-wide values use user_id = ''.
CREATE TABLE IF NOT EXISTS sync_meta (
    user_id TEXT NOT NULL,
    key TEXT NOT NULL,
    value TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, key)
);

-- Ordered pending mutation map; position preserves insertion order
CREATE TABLE IF NOT EXISTS pending_mutations (
    user_id TEXT NOT NULL,
    op_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    state TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    mutation TEXT NOT NULL,       -- JSON wire form
    conflict TEXT,                -- JSON wire form while conflicted
    prior_state TEXT,
    enqueued_at TEXT NOT NULL,
    PRIMARY KEY (user_id, op_id)
);
CREATE INDEX IF NOT EXISTS idx_pending_user_position ON pending_mutations(user_id, position);

-- Conflict audit trail, capped per user
CREATE TABLE IF NOT EXISTS conflict_events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    entity TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    seq INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_conflict_events_user_seq ON conflict_events(user_id, seq);

-- Local copy of server records as last seen or locally edited
CREATE TABLE IF NOT EXISTS local_records (
    user_id TEXT NOT NULL,
    entity TEXT NOT NULL,
    id TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    doc TEXT,                     -- JSON
    updated_at TEXT NOT NULL,
    PRIMARY KEY (user_id, entity, id)
);
"""


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables and record the schema version."""
    conn.executescript(SCHEMA)
    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating client schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
