"""Tests for MutationQueue ordering, coalescing and persistence."""

import pytest

from klettrack.storage import MutationQueue
from klettrack.types import Conflict, Mutation, MutationState, MutationType

from fakes import USER, new_id


def _upsert(entity_id, payload, base_version=0, entity="exercises", op_id=None):
    return Mutation(
        op_id=op_id or new_id(),
        entity=entity,
        entity_id=entity_id,
        type=MutationType.UPSERT,
        base_version=base_version,
        payload=payload,
    )


def _delete(entity_id, base_version=0, entity="exercises"):
    return Mutation(
        op_id=new_id(),
        entity=entity,
        entity_id=entity_id,
        type=MutationType.DELETE,
        base_version=base_version,
    )


@pytest.fixture
def queue(storage):
    return MutationQueue(storage, USER)


class TestOrdering:
    def test_insertion_order_preserved(self, queue):
        ops = [queue.enqueue(_upsert(new_id(), {"name": str(i)})).op_id for i in range(5)]
        assert [e.op_id for e in queue] == ops

    def test_order_survives_reload(self, queue, storage):
        ops = [queue.enqueue(_upsert(new_id(), {"name": str(i)})).op_id for i in range(5)]
        reloaded = MutationQueue(storage, USER)
        assert [e.op_id for e in reloaded] == ops
        assert reloaded.get(ops[2]).mutation.payload == {"name": "2"}

    def test_duplicate_op_id_rejected(self, queue):
        mutation = _upsert(new_id(), {"name": "a"})
        queue.enqueue(mutation)
        with pytest.raises(ValueError):
            queue.enqueue(mutation)

    def test_queues_are_per_user(self, queue, storage):
        queue.enqueue(_upsert(new_id(), {"name": "a"}))
        assert len(MutationQueue(storage, "someone-else")) == 0


class TestCoalescing:
    def test_pending_edits_merge(self, queue):
        entity_id = new_id()
        first = queue.enqueue(_upsert(entity_id, {"name": "Hang", "notes": "20mm"}, base_version=3))
        second_mutation = _upsert(entity_id, {"name": "Hangboard"}, base_version=3)
        merged = queue.enqueue(second_mutation)

        assert len(queue) == 1
        assert first.op_id not in queue
        assert merged.op_id == second_mutation.op_id
        assert merged.mutation.payload == {"name": "Hangboard", "notes": "20mm"}
        assert merged.mutation.base_version == 3

    def test_merge_keeps_position(self, queue):
        entity_id = new_id()
        queue.enqueue(_upsert(entity_id, {"name": "a"}))
        other = queue.enqueue(_upsert(new_id(), {"name": "other"}))
        merged = queue.enqueue(_upsert(entity_id, {"name": "b"}))
        assert [e.op_id for e in queue] == [merged.op_id, other.op_id]

    def test_delete_supersedes(self, queue):
        entity_id = new_id()
        queue.enqueue(_upsert(entity_id, {"name": "a"}, base_version=2))
        merged = queue.enqueue(_delete(entity_id, base_version=2))
        assert merged.mutation.type == MutationType.DELETE
        assert merged.mutation.payload is None
        assert merged.mutation.base_version == 2

    def test_upsert_after_delete_takes_new_payload(self, queue):
        entity_id = new_id()
        queue.enqueue(_delete(entity_id, base_version=1))
        merged = queue.enqueue(_upsert(entity_id, {"name": "back"}, base_version=1))
        assert merged.mutation.type == MutationType.UPSERT
        assert merged.mutation.payload == {"name": "back"}

    def test_in_flight_entries_are_not_merged(self, queue):
        entity_id = new_id()
        first = queue.enqueue(_upsert(entity_id, {"name": "a"}))
        queue.begin_flight([first.op_id])
        queue.enqueue(_upsert(entity_id, {"name": "b"}))
        assert len(queue) == 2

    def test_conflicted_entries_are_not_merged(self, queue):
        entity_id = new_id()
        first = queue.enqueue(_upsert(entity_id, {"name": "a"}))
        queue.mark_conflicted(first.op_id, Conflict(first.op_id, "exercises", entity_id))
        queue.enqueue(_upsert(entity_id, {"name": "b"}))
        assert len(queue) == 2

    def test_different_entities_same_id_not_merged(self, queue):
        entity_id = new_id()
        queue.enqueue(_upsert(entity_id, {"name": "a"}, entity="exercises"))
        queue.enqueue(_upsert(entity_id, {"name": "a"}, entity="activities"))
        assert len(queue) == 2


class TestLifecycle:
    def test_acknowledge_removes(self, queue):
        entry = queue.enqueue(_upsert(new_id(), {"name": "a"}))
        queue.begin_flight([entry.op_id])
        assert queue.acknowledge(entry.op_id) is entry
        assert len(queue) == 0
        assert queue.acknowledge(entry.op_id) is None

    def test_acknowledge_advances_followers(self, queue):
        entity_id = new_id()
        first = queue.enqueue(_upsert(entity_id, {"name": "a"}, base_version=4))
        queue.begin_flight([first.op_id])
        follower = queue.enqueue(_upsert(entity_id, {"name": "b"}, base_version=4))

        queue.acknowledge(first.op_id)
        assert queue.get(follower.op_id).mutation.base_version == 5

    def test_fail_removes(self, queue):
        entry = queue.enqueue(_upsert(new_id(), {"name": "a"}))
        assert queue.fail(entry.op_id) is entry
        assert entry.op_id not in queue

    def test_abort_flight_restores_prior_state(self, queue):
        pending = queue.enqueue(_upsert(new_id(), {"name": "a"}))
        conflicted = queue.enqueue(_upsert(new_id(), {"name": "b"}))
        queue.mark_conflicted(conflicted.op_id, Conflict(conflicted.op_id, "exercises", "x"))

        queue.begin_flight([pending.op_id, conflicted.op_id])
        assert queue.counts()["in_flight"] == 2
        assert queue.abort_flight() == 2
        assert queue.get(pending.op_id).state == MutationState.PENDING
        assert queue.get(conflicted.op_id).state == MutationState.CONFLICTED

    def test_in_flight_recovered_on_reload(self, queue, storage):
        entry = queue.enqueue(_upsert(new_id(), {"name": "a"}))
        queue.begin_flight([entry.op_id])

        reloaded = MutationQueue(storage, USER)
        assert reloaded.get(entry.op_id).state == MutationState.PENDING

    def test_conflict_survives_reload(self, queue, storage):
        entry = queue.enqueue(_upsert(new_id(), {"name": "a"}))
        conflict = Conflict(entry.op_id, "exercises", entry.mutation.entity_id, server_version=3, server_doc={"name": "srv"})
        queue.mark_conflicted(entry.op_id, conflict)

        reloaded = MutationQueue(storage, USER).get(entry.op_id)
        assert reloaded.state == MutationState.CONFLICTED
        assert reloaded.conflict.server_version == 3
        assert reloaded.conflict.server_doc == {"name": "srv"}


class TestResolution:
    def _conflicted(self, queue):
        entity_id = new_id()
        entry = queue.enqueue(_upsert(entity_id, {"name": "a"}))
        queue.mark_conflicted(entry.op_id, Conflict(entry.op_id, "exercises", entity_id, server_version=2))
        return entry

    def test_rebase_keeps_position_with_new_op(self, queue):
        before = queue.enqueue(_upsert(new_id(), {"name": "first"}))
        entry = self._conflicted(queue)
        after = queue.enqueue(_upsert(new_id(), {"name": "last"}))

        new_op = new_id()
        rebased = queue.rebase(entry.op_id, new_op, 2)
        assert [e.op_id for e in queue] == [before.op_id, new_op, after.op_id]
        assert rebased.state == MutationState.PENDING
        assert rebased.mutation.base_version == 2
        assert rebased.mutation.payload == {"name": "a"}
        assert rebased.conflict is None

    def test_rebase_refreshes_client_timestamp(self, queue):
        entry = self._conflicted(queue)
        rebased = queue.rebase(entry.op_id, new_id(), 2, updated_at_client="2026-10-19T08:00:00Z")
        assert rebased.mutation.updated_at_client == "2026-10-19T08:00:00Z"
        assert queue.get(rebased.op_id).mutation.updated_at_client == "2026-10-19T08:00:00Z"

    def test_discard(self, queue):
        entry = self._conflicted(queue)
        queue.discard(entry.op_id)
        assert len(queue) == 0

    def test_resolution_requires_conflict(self, queue):
        entry = queue.enqueue(_upsert(new_id(), {"name": "a"}))
        with pytest.raises(ValueError):
            queue.discard(entry.op_id)
        with pytest.raises(KeyError):
            queue.rebase(new_id(), new_id(), 0)
