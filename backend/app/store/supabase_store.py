"""Supabase (PostgREST) record store.

Uses the service key, so row-level security does not apply; every query
filters on ``owner_id`` explicitly. ``change_seq`` is assigned by the
database (see ``backend/supabase/migrations/001_sync_schema.sql``) on insert and
on every update.
"""

import logging
from typing import Any

from supabase import Client

from klettrack.contract import ENTITIES

from .base import ChangeRow, DuplicateRecordError, RecordStore, RecordStoreError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"
NATURAL_KEY_CONSTRAINT_SUFFIX = "_natural_key"


def _validate_entity(entity: str) -> str:
    if entity not in ENTITIES:
        raise ValueError(f"Invalid entity: {entity}")
    return entity


def _strip(row: dict[str, Any]) -> dict[str, Any]:
    record = dict(row)
    record.pop("change_seq", None)
    return record


def _store_error(action: str, entity: str, exc: Exception) -> RecordStoreError:
    code = getattr(exc, "code", None)
    message = str(getattr(exc, "message", None) or exc)
    if code == UNIQUE_VIOLATION:
        details = f"{message} {getattr(exc, 'details', '') or ''}"
        return DuplicateRecordError(
            f"{action} {entity}: {message}",
            natural_key=NATURAL_KEY_CONSTRAINT_SUFFIX in details,
        )
    logger.error(f"Supabase {action} on {entity} failed: {message}")
    return RecordStoreError(f"{action} {entity}: {message}")


class SupabaseRecordStore(RecordStore):
    """Record store over a supabase-py client."""

    def __init__(self, client: Client):
        self.db = client

    def fetch_record(self, entity, owner_id, record_id):
        table = _validate_entity(entity)
        try:
            result = (
                self.db.table(table)
                .select("*")
                .eq("id", record_id)
                .eq("owner_id", owner_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise _store_error("fetch", entity, e) from e
        return _strip(result.data[0]) if result.data else None

    def record_exists(self, entity, owner_id, record_id):
        table = _validate_entity(entity)
        try:
            result = (
                self.db.table(table)
                .select("id")
                .eq("id", record_id)
                .eq("owner_id", owner_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise _store_error("fetch", entity, e) from e
        return bool(result.data)

    def insert_record(self, entity, owner_id, record_id, *, op_id, updated_at_client, is_deleted, fields):
        table = _validate_entity(entity)
        row = {
            **fields,
            "id": record_id,
            "owner_id": owner_id,
            "version": 1,
            "updated_at_client": updated_at_client,
            "last_op_id": op_id,
            "is_deleted": is_deleted,
        }
        try:
            result = self.db.table(table).insert(row).execute()
        except Exception as e:
            raise _store_error("insert", entity, e) from e
        if result.data:
            return _strip(result.data[0])
        inserted = self.fetch_record(entity, owner_id, record_id)
        if inserted is None:
            raise RecordStoreError(f"insert {entity}: row not visible after insert")
        return inserted

    def update_record(
        self, entity, owner_id, record_id, *, expected_version, op_id, updated_at_client, is_deleted, fields
    ):
        table = _validate_entity(entity)
        update = {
            **fields,
            "version": expected_version + 1,
            "updated_at_client": updated_at_client,
            "last_op_id": op_id,
            "is_deleted": is_deleted,
        }
        try:
            result = (
                self.db.table(table)
                .update(update)
                .eq("id", record_id)
                .eq("owner_id", owner_id)
                .eq("version", expected_version)
                .execute()
            )
        except Exception as e:
            raise _store_error("update", entity, e) from e
        # No rows matched: the version moved on
        return _strip(result.data[0]) if result.data else None

    def changes_since(self, owner_id, after_seq, limit):
        rows: list[ChangeRow] = []
        for entity in sorted(ENTITIES):
            try:
                result = (
                    self.db.table(entity)
                    .select("*")
                    .eq("owner_id", owner_id)
                    .gt("change_seq", after_seq)
                    .order("change_seq")
                    .limit(limit)
                    .execute()
                )
            except Exception as e:
                raise _store_error("pull", entity, e) from e
            for row in result.data or []:
                rows.append(ChangeRow(entity=entity, seq=int(row["change_seq"]), row=_strip(row)))
        rows.sort(key=lambda change: change.seq)
        return rows[:limit]

    def high_water_mark(self, owner_id):
        try:
            result = self.db.rpc("sync_high_water_mark", {"p_owner_id": owner_id}).execute()
        except Exception as e:
            raise _store_error("rpc", "sync_high_water_mark", e) from e
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else 0
        if isinstance(data, dict):
            data = next(iter(data.values()), 0)
        return int(data or 0)

    def ping(self) -> bool:
        try:
            self.db.table("plan_kinds").select("id").limit(1).execute()
        except Exception as e:
            raise _store_error("ping", "plan_kinds", e) from e
        return True
