"""Builders for wire-format mutations used across backend tests."""

import uuid

OWNER_A = "11111111-1111-4111-8111-111111111111"
OWNER_B = "22222222-2222-4222-8222-222222222222"


def new_id() -> str:
    return str(uuid.uuid4())


def upsert(entity, entity_id, payload, base_version=0, op_id=None, updated_at=None):
    """Build a wire-format upsert mutation."""
    mutation = {
        "opId": op_id or new_id(),
        "entity": entity,
        "entityId": entity_id,
        "type": "upsert",
        "baseVersion": base_version,
        "payload": payload,
    }
    if updated_at is not None:
        mutation["updatedAtClient"] = updated_at
    return mutation


def delete(entity, entity_id, base_version, op_id=None):
    """Build a wire-format delete mutation."""
    return {
        "opId": op_id or new_id(),
        "entity": entity,
        "entityId": entity_id,
        "type": "delete",
        "baseVersion": base_version,
    }
