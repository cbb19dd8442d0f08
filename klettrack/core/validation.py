"""Input validation for sync mutations and backend endpoints.

``validate_mutation`` is the single structural check for mutations. The
server runs it on every pushed mutation; the client runs it before a
mutation is allowed into the queue, so a mutation the server would refuse
never gets queued in the first place.

Checks run in a fixed order and the first failure wins:

- ``invalid_mutation``: not a JSON object
- ``invalid_op_id`` / ``invalid_entity_id``: not a UUID
- ``invalid_base_version``: not a non-negative integer
- ``invalid_entity``: outside the entity contract
- ``invalid_mutation_type``: not ``upsert`` or ``delete``
- ``invalid_updated_at_client``: present but not an ISO-8601 string
- ``invalid_payload``: upsert payload not an object
- ``invalid_payload_field``: payload key outside the allow-list
- ``missing_required_field``: required upsert field absent
"""

import logging
import uuid
from typing import Any, Optional
from urllib.parse import urlparse

from klettrack import contract
from klettrack.types import Mutation, MutationType, parse_datetime

logger = logging.getLogger(__name__)


class MutationValidationError(ValueError):
    """Raised when a mutation fails structural validation."""

    def __init__(self, reason: str, op_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.op_id = op_id


def normalize_uuid(value: Any) -> Optional[str]:
    """Return the canonical lowercase UUID text, or None if not a UUID."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def _is_version(value: Any) -> bool:
    # bool is an int subclass; true/false are not versions
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_mutation(raw: Any) -> Mutation:
    """Validate a wire-format mutation and return the typed form.

    Raises:
        MutationValidationError: with ``reason`` set to the first failed check.
    """
    if not isinstance(raw, dict):
        raise MutationValidationError(contract.INVALID_MUTATION)

    raw_op_id = raw.get("opId")
    reported_op_id = raw_op_id if isinstance(raw_op_id, str) else None

    op_id = normalize_uuid(raw_op_id)
    if op_id is None:
        raise MutationValidationError(contract.INVALID_OP_ID, reported_op_id)

    entity_id = normalize_uuid(raw.get("entityId"))
    if entity_id is None:
        raise MutationValidationError(contract.INVALID_ENTITY_ID, reported_op_id)

    base_version = raw.get("baseVersion")
    if not _is_version(base_version):
        raise MutationValidationError(contract.INVALID_BASE_VERSION, reported_op_id)

    entity = raw.get("entity")
    if not isinstance(entity, str) or not contract.is_entity(entity):
        raise MutationValidationError(contract.INVALID_ENTITY, reported_op_id)

    try:
        mutation_type = MutationType(raw.get("type"))
    except ValueError:
        raise MutationValidationError(contract.INVALID_MUTATION_TYPE, reported_op_id)

    updated_at_client = raw.get("updatedAtClient")
    if updated_at_client is not None and parse_datetime(updated_at_client) is None:
        raise MutationValidationError(contract.INVALID_UPDATED_AT_CLIENT, reported_op_id)

    payload = None
    if mutation_type == MutationType.UPSERT:
        payload = _sanitize_payload(entity, raw.get("payload"), reported_op_id)

    return Mutation(
        op_id=op_id,
        entity=entity,
        entity_id=entity_id,
        type=mutation_type,
        base_version=base_version,
        updated_at_client=updated_at_client,
        payload=payload,
    )


def _sanitize_payload(entity: str, payload: Any, op_id: Optional[str]) -> dict:
    if not isinstance(payload, dict):
        raise MutationValidationError(contract.INVALID_PAYLOAD, op_id)

    allowlist = contract.ENTITY_FIELD_ALLOWLIST[entity]
    for key in payload:
        if key not in allowlist:
            raise MutationValidationError(contract.INVALID_PAYLOAD_FIELD, op_id)

    for required in contract.REQUIRED_UPSERT_FIELDS.get(entity, ()):
        if required not in payload:
            raise MutationValidationError(contract.MISSING_REQUIRED_FIELD, op_id)

    return dict(payload)


def validate_backend_url(url: str, *, allow_localhost_http: bool = True) -> "str | None":
    """Validate a backend URL for safe credential transmission.

    Rejects non-http/https schemes, URLs with no host, and remote HTTP
    endpoints (only localhost/127.0.0.1 are allowed over plaintext HTTP).

    Returns:
        The URL with any trailing slash removed, or ``None`` if rejected.
    """
    if not url:
        return None

    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"}:
        logger.warning("Invalid backend_url scheme; only http/https allowed.")
        return None
    if not parsed.netloc:
        logger.warning("Invalid backend_url; missing host.")
        return None
    if parsed.scheme == "http":
        if not allow_localhost_http:
            logger.warning("HTTP not allowed in this context.")
            return None
        host = parsed.hostname or ""
        if host not in {"localhost", "127.0.0.1"}:
            logger.warning("Refusing non-local http backend_url for security.")
            return None
    return url.rstrip("/")
