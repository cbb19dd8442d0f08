"""Parent reference checks for upserts."""

from typing import Any

from klettrack.contract import INVALID_PARENT_REFERENCE, parent_references
from klettrack.core import normalize_uuid

from ..logging_config import get_logger
from ..store import RecordStore, RecordStoreError

logger = get_logger("sync.references")


def validate_parent_references(
    store: RecordStore,
    owner_id: str,
    entity: str,
    payload: dict[str, Any] | None,
) -> str | None:
    """Check that every referenced parent exists for this owner.

    Absent or null reference fields are skipped. Returns
    ``invalid_parent_reference`` on the first failed check, else None.
    Tombstoned parents still count as existing.
    """
    if not payload:
        return None

    for field, parent in parent_references(entity):
        value = payload.get(field)
        if value is None:
            continue
        parent_id = normalize_uuid(value)
        if parent_id is None:
            return INVALID_PARENT_REFERENCE
        try:
            exists = store.record_exists(parent, owner_id, parent_id)
        except RecordStoreError as e:
            logger.warning(f"Parent lookup {parent}/{parent_id} failed: {e}")
            return INVALID_PARENT_REFERENCE
        if not exists:
            return INVALID_PARENT_REFERENCE
    return None
