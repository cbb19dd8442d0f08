"""Tests for the pull handler and cursor codec."""

import pytest

from app.store import RecordStoreError
from app.sync import (
    InvalidCursorError,
    SyncRequestError,
    clamp_limit,
    decode_cursor,
    encode_cursor,
    handle_pull,
    handle_push,
)
from factories import OWNER_A, OWNER_B, delete, new_id, upsert


def _seed(store, count, owner=OWNER_A):
    ids = [new_id() for _ in range(count)]
    handle_push(store, owner, [upsert("activities", i, {"name": f"a{n}"}) for n, i in enumerate(ids)])
    return ids


class TestCursor:
    def test_encode_is_fixed_width(self):
        assert encode_cursor(42) == "00000000000000000042"
        assert encode_cursor(0) == "0" * 20

    def test_null_cursor_is_the_beginning(self):
        assert decode_cursor(None) == 0

    def test_decode_round_trip(self):
        assert decode_cursor(encode_cursor(1234)) == 1234

    @pytest.mark.parametrize("cursor", ["", "abc", "-1", "1.5", " 12", "1" * 21, "١٢"])
    def test_malformed_cursors(self, cursor):
        with pytest.raises(InvalidCursorError):
            decode_cursor(cursor)


class TestClampLimit:
    def test_default(self):
        assert clamp_limit(None) == 200

    def test_bounds(self):
        assert clamp_limit(0) == 1
        assert clamp_limit(-5) == 1
        assert clamp_limit(10_000) == 500
        assert clamp_limit(50) == 50


class TestHandlePull:
    def test_empty_feed(self, store):
        page = handle_pull(store, OWNER_A, None)
        assert page.changes == []
        assert page.has_more is False
        assert page.next_cursor == "0" * 20

    def test_empty_page_keeps_request_cursor(self, store):
        _seed(store, 2)
        first = handle_pull(store, OWNER_A, None)
        again = handle_pull(store, OWNER_A, first.next_cursor)
        assert again.changes == []
        assert again.next_cursor == first.next_cursor

    def test_changes_in_write_order(self, store):
        ids = _seed(store, 3)
        page = handle_pull(store, OWNER_A, None)
        assert [c.entity_id for c in page.changes] == ids
        assert all(c.type.value == "upsert" for c in page.changes)
        assert page.changes[0].doc["name"] == "a0"
        assert page.changes[0].version == 1

    def test_pagination_is_complete(self, store):
        ids = _seed(store, 7)
        seen, cursor, pages = [], None, 0
        while True:
            page = handle_pull(store, OWNER_A, cursor, limit=3)
            pages += 1
            seen.extend(c.entity_id for c in page.changes)
            cursor = page.next_cursor
            if not page.has_more:
                break
        assert seen == ids
        assert pages == 3

    def test_has_more_is_exact_at_page_boundary(self, store):
        _seed(store, 3)
        page = handle_pull(store, OWNER_A, None, limit=3)
        assert len(page.changes) == 3
        assert page.has_more is False

    def test_pull_has_no_side_effects(self, store):
        _seed(store, 2)
        assert handle_pull(store, OWNER_A, None) == handle_pull(store, OWNER_A, None)

    def test_tombstones_are_delete_changes(self, store):
        (entity_id,) = _seed(store, 1)
        handle_push(store, OWNER_A, [delete("activities", entity_id, base_version=1)])

        page = handle_pull(store, OWNER_A, None)
        assert len(page.changes) == 1
        change = page.changes[0]
        assert change.type.value == "delete"
        assert change.version == 2
        assert change.doc is None
        assert "doc" not in change.to_wire()

    def test_updated_rows_move_to_the_end(self, store):
        first, second = _seed(store, 2)
        handle_push(store, OWNER_A, [upsert("activities", first, {"name": "renamed"}, base_version=1)])

        page = handle_pull(store, OWNER_A, None)
        assert [c.entity_id for c in page.changes] == [second, first]

    def test_changes_span_entities(self, store):
        session_id = new_id()
        handle_push(
            store,
            OWNER_A,
            [
                upsert("sessions", session_id, {"session_date": "2026-05-01"}),
                upsert("session_items", new_id(), {"session_id": session_id, "exercise_name": "Campus"}),
            ],
        )
        page = handle_pull(store, OWNER_A, None)
        assert [c.entity for c in page.changes] == ["sessions", "session_items"]

    def test_owner_isolation(self, store):
        _seed(store, 2, owner=OWNER_B)
        assert handle_pull(store, OWNER_A, None).changes == []
        assert len(handle_pull(store, OWNER_B, None).changes) == 2

    def test_invalid_cursor(self, store):
        with pytest.raises(SyncRequestError) as exc:
            handle_pull(store, OWNER_A, "not-a-cursor")
        assert exc.value.code == "invalid_cursor"
        assert exc.value.status_code == 400

    def test_store_failure(self, store):
        class Broken:
            def changes_since(self, *args):
                raise RecordStoreError("boom")

        with pytest.raises(SyncRequestError) as exc:
            handle_pull(Broken(), OWNER_A, None)
        assert exc.value.code == "pull_failed"
        assert exc.value.status_code == 500
