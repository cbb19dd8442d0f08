"""Ordered pending-mutation queue for one user.

Entries are kept in an ``OrderedDict`` keyed by opId, so iteration order is
enqueue order and lookups by opId are direct. Every state change is
written through to ``SyncState`` before the method returns.

Lifecycle::

    pending --push--> in_flight --ack-------> (removed)
                                --failed----> (removed, reported)
                                --conflict--> conflicted --keep_mine--> pending (new opId)
                                                         --keep_server-> (removed)
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterator, List, Optional

from klettrack.types import (
    Conflict,
    Mutation,
    MutationState,
    MutationType,
    PendingMutation,
)

from .base import SyncState

logger = logging.getLogger(__name__)


class MutationQueue:
    """Persistent ordered map of opId -> PendingMutation."""

    def __init__(self, state: SyncState, user_id: str):
        self._state = state
        self._user_id = user_id
        self._entries: "OrderedDict[str, PendingMutation]" = OrderedDict()

        recovered = 0
        for entry in state.load_pending(user_id):
            # A crash mid-push leaves entries in flight; the server outcome is
            # unknown, and opId replay makes resending safe.
            if entry.state == MutationState.IN_FLIGHT:
                entry.state = entry.prior_state or MutationState.PENDING
                entry.prior_state = None
                recovered += 1
            self._entries[entry.op_id] = entry
        if recovered:
            logger.info(f"Recovered {recovered} in-flight mutations for {user_id}")
            self._persist()

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PendingMutation]:
        return iter(list(self._entries.values()))

    def __contains__(self, op_id: str) -> bool:
        return op_id in self._entries

    def get(self, op_id: str) -> Optional[PendingMutation]:
        return self._entries.get(op_id)

    def entries(self, state: Optional[MutationState] = None) -> List[PendingMutation]:
        return [e for e in self._entries.values() if state is None or e.state == state]

    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in MutationState}
        for entry in self._entries.values():
            counts[entry.state.value] += 1
        return counts

    def _persist(self) -> None:
        self._state.save_pending(self._user_id, list(self._entries.values()))

    # === Enqueue ===

    def enqueue(self, mutation: Mutation) -> PendingMutation:
        """Add a mutation, folding it into an unsent edit of the same record if one exists.

        Only ``pending`` entries are folded: anything in flight or in
        conflict has been seen by the server under its opId and must stay
        as it is. The folded entry keeps its queue position and base
        version and takes the new opId.
        """
        if mutation.op_id in self._entries:
            raise ValueError(f"Duplicate opId {mutation.op_id}")

        existing = self._find_pending(mutation.entity, mutation.entity_id)
        if existing is None:
            entry = PendingMutation(mutation=mutation)
            self._entries[mutation.op_id] = entry
            self._persist()
            return entry

        merged = _coalesce(existing.mutation, mutation)
        entry = PendingMutation(mutation=merged, enqueued_at=existing.enqueued_at)
        self._replace(existing.op_id, entry)
        self._persist()
        logger.debug(
            f"Coalesced {mutation.entity}/{mutation.entity_id} into pending op {merged.op_id}"
        )
        return entry

    def _find_pending(self, entity: str, entity_id: str) -> Optional[PendingMutation]:
        for entry in reversed(self._entries.values()):
            m = entry.mutation
            if m.entity == entity and m.entity_id == entity_id:
                return entry if entry.state == MutationState.PENDING else None
        return None

    def _replace(self, old_op_id: str, entry: PendingMutation) -> None:
        """Swap an entry for another under a new key, keeping its position."""
        self._entries = OrderedDict(
            (entry.op_id, entry) if op_id == old_op_id else (op_id, existing)
            for op_id, existing in self._entries.items()
        )

    # === Push lifecycle ===

    def begin_flight(self, op_ids: List[str]) -> None:
        for op_id in op_ids:
            entry = self._entries[op_id]
            entry.prior_state = entry.state
            entry.state = MutationState.IN_FLIGHT
        self._persist()

    def abort_flight(self) -> int:
        """Return every in-flight entry to the state it had before the push."""
        restored = 0
        for entry in self._entries.values():
            if entry.state == MutationState.IN_FLIGHT:
                entry.state = entry.prior_state or MutationState.PENDING
                entry.prior_state = None
                restored += 1
        if restored:
            self._persist()
        return restored

    def acknowledge(self, op_id: str) -> Optional[PendingMutation]:
        """Drop an acknowledged entry.

        Later pending edits of the same record that were based on the same
        server version move up one version, since the acknowledged write
        produced exactly that.
        """
        entry = self._entries.pop(op_id, None)
        if entry is None:
            return None
        applied = entry.mutation
        for follower in self._entries.values():
            m = follower.mutation
            if (
                follower.state == MutationState.PENDING
                and m.entity == applied.entity
                and m.entity_id == applied.entity_id
                and m.base_version == applied.base_version
            ):
                follower.mutation = m.with_op(m.op_id, applied.base_version + 1)
        self._persist()
        return entry

    def fail(self, op_id: str) -> Optional[PendingMutation]:
        entry = self._entries.pop(op_id, None)
        if entry is not None:
            self._persist()
        return entry

    def mark_conflicted(self, op_id: str, conflict: Conflict) -> Optional[PendingMutation]:
        entry = self._entries.get(op_id)
        if entry is None:
            return None
        entry.state = MutationState.CONFLICTED
        entry.prior_state = None
        entry.conflict = conflict
        self._persist()
        return entry

    # === Conflict resolution ===

    def rebase(
        self,
        op_id: str,
        new_op_id: str,
        base_version: int,
        updated_at_client: Optional[str] = None,
    ) -> PendingMutation:
        """Replace a conflicted entry with a fresh pending copy at the same position."""
        entry = self._require_conflicted(op_id)
        rebased = PendingMutation(
            mutation=entry.mutation.with_op(new_op_id, base_version, updated_at_client),
            enqueued_at=entry.enqueued_at,
        )
        self._replace(op_id, rebased)
        self._persist()
        return rebased

    def discard(self, op_id: str) -> PendingMutation:
        entry = self._require_conflicted(op_id)
        del self._entries[op_id]
        self._persist()
        return entry

    def _require_conflicted(self, op_id: str) -> PendingMutation:
        entry = self._entries.get(op_id)
        if entry is None:
            raise KeyError(f"No queued mutation with opId {op_id}")
        if entry.state != MutationState.CONFLICTED:
            raise ValueError(f"Mutation {op_id} is {entry.state.value}, not conflicted")
        return entry


def _coalesce(older: Mutation, newer: Mutation) -> Mutation:
    if newer.type == MutationType.DELETE:
        payload = None
    elif older.type == MutationType.UPSERT:
        payload = {**(older.payload or {}), **(newer.payload or {})}
    else:
        payload = dict(newer.payload or {})
    return Mutation(
        op_id=newer.op_id,
        entity=newer.entity,
        entity_id=newer.entity_id,
        type=newer.type,
        base_version=older.base_version,
        updated_at_client=newer.updated_at_client or older.updated_at_client,
        payload=payload,
    )
