"""Record store wiring for the sync backend."""

from typing import Annotated

from fastapi import Depends

from supabase import Client, create_client

from .config import Settings, get_settings
from .store import RecordStore, SQLiteRecordStore, SupabaseRecordStore

_supabase_client: Client | None = None
_record_store: RecordStore | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        if not settings.supabase_url:
            raise ValueError("SUPABASE_URL must be set when RECORD_STORE=supabase")
        # Prefer new secret key, fall back to legacy service_role_key
        api_key = settings.supabase_secret_key or settings.supabase_service_role_key
        if not api_key:
            raise ValueError("Either SUPABASE_SECRET_KEY or SUPABASE_SERVICE_ROLE_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, api_key)
    return _supabase_client


def get_record_store(settings: Settings | None = None) -> RecordStore:
    """Get the cached record store selected by ``RECORD_STORE``."""
    global _record_store
    if _record_store is None:
        if settings is None:
            settings = get_settings()
        if settings.record_store == "supabase":
            _record_store = SupabaseRecordStore(get_supabase_client(settings))
        else:
            _record_store = SQLiteRecordStore(settings.sqlite_path)
    return _record_store


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> RecordStore:
    """FastAPI dependency for the record store."""
    return get_record_store(settings)


# Type alias for dependency injection
Database = Annotated[RecordStore, Depends(get_db)]
