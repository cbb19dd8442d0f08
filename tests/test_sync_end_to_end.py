"""Two devices syncing through the real backend app.

The HTTP layer is FastAPI's TestClient; the server side uses a temporary
SQLite record store.
"""

import pytest
from fastapi.testclient import TestClient

from app.auth import create_access_token
from app.config import get_settings
from app.database import get_db
from app.main import app
from app.rate_limit import limiter
from app.store import SQLiteRecordStore
from klettrack.storage import SyncAPIClient, SyncReconciler
from klettrack.types import Mutation, MutationState, MutationType

from fakes import USER, new_id


@pytest.fixture
def server_store(tmp_path):
    return SQLiteRecordStore(tmp_path / "server.db")


@pytest.fixture
def http_client(server_store):
    app.dependency_overrides[get_db] = lambda: server_store
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_db, None)
        limiter.enabled = True


@pytest.fixture
def token():
    return create_access_token(USER, get_settings())


@pytest.fixture
def device(http_client, token, storage_factory):
    """Build a reconciler with its own local database, talking to the app."""

    def _make(name: str) -> SyncReconciler:
        local = storage_factory(name)
        api = SyncAPIClient("http://localhost", lambda: token, http_client=http_client)
        return SyncReconciler(USER, api, local, local)

    return _make


class TestTwoDevices:
    def test_records_converge(self, device, storage_factory):
        phone, tablet = device("phone"), device("tablet")
        activity_id, training_type_id = new_id(), new_id()
        phone.enqueue_local_mutation("activities", activity_id, "upsert", {"name": "Bouldering"})
        phone.enqueue_local_mutation(
            "training_types",
            training_type_id,
            "upsert",
            {"name": "Limit bouldering", "activity_id": activity_id},
        )

        report = phone.sync()
        assert report.success
        assert report.acknowledged == 2
        assert report.failed == []

        tablet.sync()
        local = storage_factory("tablet")
        assert local.get_record(USER, "activities", activity_id)["version"] == 1
        doc = local.get_record(USER, "training_types", training_type_id)["doc"]
        assert doc["name"] == "Limit bouldering"
        assert doc["activity_id"] == activity_id

    def test_concurrent_edit_conflict_then_keep_mine(self, device, storage_factory):
        phone, tablet = device("phone"), device("tablet")
        gym_id = new_id()
        phone.enqueue_local_mutation("climb_gyms", gym_id, "upsert", {"name": "Halle A", "is_default": False})
        phone.sync()
        tablet.sync()

        phone.enqueue_local_mutation("climb_gyms", gym_id, "upsert", {"name": "Halle B", "is_default": False})
        tablet_edit = tablet.enqueue_local_mutation(
            "climb_gyms", gym_id, "upsert", {"name": "Halle C", "is_default": True}
        )
        assert phone.sync().acknowledged == 1

        report = tablet.sync()
        assert report.conflict_count == 1
        entry = tablet.queue.get(tablet_edit.op_id)
        assert entry.state == MutationState.CONFLICTED
        assert entry.conflict.server_version == 2
        assert entry.conflict.server_doc["name"] == "Halle B"

        tablet.keep_mine(tablet_edit.op_id)
        assert tablet.last_report.reason == "resolve_keep_mine"
        assert tablet.last_report.acknowledged == 1
        assert len(tablet.queue) == 0

        phone.sync()
        record = storage_factory("phone").get_record(USER, "climb_gyms", gym_id)
        assert record["version"] == 3
        assert record["doc"]["name"] == "Halle C"
        assert record["doc"]["is_default"] is True

    def test_delete_propagates(self, device, storage_factory):
        phone, tablet = device("phone"), device("tablet")
        session_id = new_id()
        phone.enqueue_local_mutation("sessions", session_id, "upsert", {"session_date": "2026-05-01"})
        phone.sync()
        tablet.sync()

        tablet.enqueue_local_mutation("sessions", session_id, "delete")
        assert tablet.sync().acknowledged == 1

        phone.sync()
        record = storage_factory("phone").get_record(USER, "sessions", session_id)
        assert record["is_deleted"] is True
        assert record["version"] == 2

    def test_orphan_is_refused(self, device):
        phone = device("phone")
        phone.enqueue_local_mutation(
            "session_items", new_id(), "upsert", {"exercise_name": "Pull-ups", "session_id": new_id()}
        )
        report = phone.sync()
        assert [f.reason for f in report.failed] == ["invalid_parent_reference"]
        assert len(phone.queue) == 0


class TestReplay:
    def test_resent_push_is_acknowledged_once(self, http_client, token):
        api = SyncAPIClient("http://localhost", lambda: token, http_client=http_client)
        mutation = Mutation(
            op_id=new_id(),
            entity="climb_styles",
            entity_id=new_id(),
            type=MutationType.UPSERT,
            base_version=0,
            payload={"name": "Crimpy", "is_default": False},
        )

        first = api.push("device-1", None, [mutation])
        second = api.push("device-1", None, [mutation])

        assert first.acknowledged_op_ids == [mutation.op_id]
        assert second.acknowledged_op_ids == [mutation.op_id]
        assert second.conflicts == []

        page = api.pull(None)
        assert len(page.changes) == 1
        assert page.changes[0].version == 1
