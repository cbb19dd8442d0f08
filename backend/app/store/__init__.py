"""Record stores for synced entities."""

from .base import ChangeRow, DuplicateRecordError, RecordStore, RecordStoreError
from .sqlite import SQLiteRecordStore
from .supabase_store import SupabaseRecordStore

__all__ = [
    "ChangeRow",
    "DuplicateRecordError",
    "RecordStore",
    "RecordStoreError",
    "SQLiteRecordStore",
    "SupabaseRecordStore",
]
