"""Push handler: apply a batch of client mutations with optimistic concurrency."""

from typing import Any

from klettrack import contract
from klettrack.core import MutationValidationError, validate_mutation
from klettrack.types import Conflict, Mutation, PushFailure, PushResult

from ..logging_config import get_logger, log_sync_operation
from ..store import DuplicateRecordError, RecordStore, RecordStoreError
from .cursor import encode_cursor
from .errors import INVALID_MUTATIONS, TOO_MANY_MUTATIONS, SyncRequestError
from .references import validate_parent_references

logger = get_logger("sync.push")


def _conflict(mutation: Mutation, row: dict[str, Any] | None) -> Conflict:
    return Conflict(
        op_id=mutation.op_id,
        entity=mutation.entity,
        entity_id=mutation.entity_id,
        reason=contract.CONFLICT_REASON_VERSION_MISMATCH,
        server_version=row["version"] if row else None,
        server_doc=row,
    )


class _Batch:
    """Collects outcomes for one push request."""

    def __init__(self, owner_id: str):
        self.owner_id = owner_id
        self.result = PushResult()

    def ack(self, mutation: Mutation, outcome: str = "ack") -> None:
        self.result.acknowledged_op_ids.append(mutation.op_id)
        log_sync_operation(
            self.owner_id, mutation.type.value, mutation.entity, mutation.entity_id, outcome
        )

    def conflict(self, mutation: Mutation, row: dict[str, Any] | None) -> None:
        self.result.conflicts.append(_conflict(mutation, row))
        server_version = row["version"] if row else None
        log_sync_operation(
            self.owner_id,
            mutation.type.value,
            mutation.entity,
            mutation.entity_id,
            "conflict",
            f"base={mutation.base_version} server={server_version}",
        )

    def fail(self, op_id: str | None, reason: str, mutation: Mutation | None = None) -> None:
        self.result.failed.append(PushFailure(op_id=op_id, reason=reason))
        if mutation is not None:
            log_sync_operation(
                self.owner_id, mutation.type.value, mutation.entity, mutation.entity_id, "failed", reason
            )
        else:
            log_sync_operation(self.owner_id, "?", "?", "?", "failed", reason)


def handle_push(
    store: RecordStore,
    owner_id: str,
    mutations: Any,
    max_mutations: int = contract.MAX_MUTATIONS_PER_PUSH,
) -> PushResult:
    """Apply each mutation independently and report its outcome.

    Raises:
        SyncRequestError: ``mutations`` is not a list, or holds too many entries.
    """
    if not isinstance(mutations, list):
        raise SyncRequestError(INVALID_MUTATIONS)
    if len(mutations) > max_mutations:
        raise SyncRequestError(TOO_MANY_MUTATIONS, status_code=413)

    logger.info(f"PUSH | {owner_id} | {len(mutations)} mutations")
    batch = _Batch(owner_id)
    for raw in mutations:
        try:
            mutation = validate_mutation(raw)
        except MutationValidationError as e:
            batch.fail(e.op_id, e.reason)
            continue
        _apply(store, owner_id, mutation, batch)

    result = batch.result
    try:
        result.new_cursor = encode_cursor(store.high_water_mark(owner_id))
    except RecordStoreError as e:
        logger.warning(f"High-water mark unavailable for {owner_id}: {e}")

    logger.info(
        f"PUSH COMPLETE | {owner_id} | acknowledged={len(result.acknowledged_op_ids)} "
        f"conflicts={len(result.conflicts)} failed={len(result.failed)}"
    )
    return result


def _apply(store: RecordStore, owner_id: str, mutation: Mutation, batch: _Batch) -> None:
    if not mutation.is_delete:
        reason = validate_parent_references(store, owner_id, mutation.entity, mutation.payload)
        if reason:
            batch.fail(mutation.op_id, reason, mutation)
            return

    try:
        row = store.fetch_record(mutation.entity, owner_id, mutation.entity_id)
    except RecordStoreError as e:
        logger.error(f"Fetch {mutation.entity}/{mutation.entity_id} failed: {e}")
        batch.fail(mutation.op_id, contract.FETCH_FAILED, mutation)
        return

    if row is not None and row.get("last_op_id") == mutation.op_id:
        batch.ack(mutation, "replay")
        return

    if row is None:
        _insert(store, owner_id, mutation, batch)
        return

    if mutation.base_version != row["version"]:
        batch.conflict(mutation, row)
        return

    _update(store, owner_id, mutation, row, batch)


def _insert(store: RecordStore, owner_id: str, mutation: Mutation, batch: _Batch) -> None:
    if mutation.base_version != 0:
        batch.conflict(mutation, None)
        return

    try:
        store.insert_record(
            mutation.entity,
            owner_id,
            mutation.entity_id,
            op_id=mutation.op_id,
            updated_at_client=mutation.updated_at_client,
            is_deleted=mutation.is_delete,
            fields=dict(mutation.payload or {}),
        )
    except DuplicateRecordError as e:
        if e.natural_key:
            # The link already exists under another id; treat as applied
            batch.ack(mutation, "replay")
            return
        # Lost an insert race, or the id belongs to another owner
        _after_lost_race(store, owner_id, mutation, batch, contract.INSERT_FAILED)
        return
    except RecordStoreError as e:
        logger.error(f"Insert {mutation.entity}/{mutation.entity_id} failed: {e}")
        batch.fail(mutation.op_id, contract.INSERT_FAILED, mutation)
        return

    batch.ack(mutation)


def _update(
    store: RecordStore,
    owner_id: str,
    mutation: Mutation,
    row: dict[str, Any],
    batch: _Batch,
) -> None:
    try:
        updated = store.update_record(
            mutation.entity,
            owner_id,
            mutation.entity_id,
            expected_version=row["version"],
            op_id=mutation.op_id,
            updated_at_client=mutation.updated_at_client,
            is_deleted=mutation.is_delete,
            fields={} if mutation.is_delete else dict(mutation.payload or {}),
        )
    except RecordStoreError as e:
        logger.error(f"Update {mutation.entity}/{mutation.entity_id} failed: {e}")
        batch.fail(mutation.op_id, contract.UPDATE_FAILED, mutation)
        return

    if updated is None:
        _after_lost_race(store, owner_id, mutation, batch, contract.UPDATE_FAILED)
        return
    batch.ack(mutation)


def _after_lost_race(
    store: RecordStore,
    owner_id: str,
    mutation: Mutation,
    batch: _Batch,
    failure_reason: str,
) -> None:
    """Re-read the row after a concurrent write beat us to it."""
    try:
        fresh = store.fetch_record(mutation.entity, owner_id, mutation.entity_id)
    except RecordStoreError as e:
        logger.error(f"Re-fetch {mutation.entity}/{mutation.entity_id} failed: {e}")
        batch.fail(mutation.op_id, failure_reason, mutation)
        return

    if fresh is None:
        batch.fail(mutation.op_id, failure_reason, mutation)
    elif fresh.get("last_op_id") == mutation.op_id:
        batch.ack(mutation, "replay")
    else:
        batch.conflict(mutation, fresh)
