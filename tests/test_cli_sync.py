"""Tests for the ``klettrack sync`` CLI commands."""

import json
from argparse import Namespace

import pytest

from klettrack.cli.__main__ import main, user_id_from_token
from klettrack.cli.commands import cmd_sync
from klettrack.storage import SyncReconciler
from klettrack.storage.cloud import SyncNetworkError

from fakes import USER, FakeSyncAPI, new_id

GYM = {"name": "Boulderwelt", "is_default": False}


@pytest.fixture
def api():
    return FakeSyncAPI()


@pytest.fixture
def reconciler(api, storage):
    return SyncReconciler(USER, api, storage, storage)


def _args(action, **kwargs):
    defaults = {"json": False}
    defaults.update(kwargs)
    return Namespace(command="sync", sync_action=action, **defaults)


def _make_conflict(reconciler, api):
    entity_id = new_id()
    api.server_write("climb_gyms", entity_id, {"name": "Other", "is_default": False})
    entry = reconciler.enqueue_local_mutation("climb_gyms", entity_id, "upsert", GYM)
    reconciler.sync()
    return entry


class TestRun:
    def test_success(self, reconciler, capsys):
        reconciler.enqueue_local_mutation("climb_gyms", new_id(), "upsert", GYM)
        cmd_sync(_args("run", reason="manual"), reconciler)
        assert "Sync complete: 1/1 pushed, 1 pulled" in capsys.readouterr().out

    def test_json_report(self, reconciler, capsys):
        cmd_sync(_args("run", reason="app_foreground", json=True), reconciler)
        report = json.loads(capsys.readouterr().out)
        assert report["reason"] == "app_foreground"
        assert report["success"] is True
        assert report["conflicts"] == []

    def test_conflicts_are_announced(self, reconciler, api, capsys):
        _make_conflict(reconciler, api)
        cmd_sync(_args("run", reason="manual"), reconciler)
        assert "1 conflict(s) need review" in capsys.readouterr().out

    def test_failure_exits_nonzero(self, reconciler, api, capsys):
        api.pull_error = SyncNetworkError("offline")
        with pytest.raises(SystemExit) as exc:
            cmd_sync(_args("run", reason="manual"), reconciler)
        assert exc.value.code == 1
        assert "Network issue during sync" in capsys.readouterr().out

    def test_backend_not_configured(self, storage, capsys):
        reconciler = SyncReconciler(USER, None, storage, storage)
        with pytest.raises(SystemExit):
            cmd_sync(_args("run", reason="manual"), reconciler)
        assert "Backend not configured" in capsys.readouterr().out


class TestConflictCommands:
    def test_list(self, reconciler, api, capsys):
        entry = _make_conflict(reconciler, api)
        cmd_sync(_args("conflicts", json=True), reconciler)
        (view,) = json.loads(capsys.readouterr().out)
        assert view["opId"] == entry.op_id
        assert view["entity"] == "Gyms"
        assert view["changes"] == [{"field": "name", "local": "Boulderwelt", "server": "Other"}]
        assert view["suggestion"] in ("keep_mine", "keep_server")

    def test_list_empty(self, reconciler, capsys):
        cmd_sync(_args("conflicts"), reconciler)
        assert "No conflicts." in capsys.readouterr().out

    def test_resolve_keep_server(self, reconciler, api, capsys):
        entry = _make_conflict(reconciler, api)
        cmd_sync(_args("resolve", op_id=entry.op_id, all=False, keep="server"), reconciler)
        assert "Kept server version" in capsys.readouterr().out
        assert reconciler.conflicts() == []

    def test_resolve_all_keep_mine(self, reconciler, api, capsys):
        entry = _make_conflict(reconciler, api)
        cmd_sync(_args("resolve", op_id=None, all=True, keep="mine"), reconciler)
        out = capsys.readouterr().out
        assert "Resolved 1 conflict(s) keeping mine" in out
        assert "Synced: 1/1 pushed" in out
        assert reconciler.get_status()["pending"] == 0
        assert api.records[("climb_gyms", entry.mutation.entity_id)]["doc"]["name"] == "Boulderwelt"

    def test_resolve_keep_mine_pushes(self, reconciler, api, capsys):
        entry = _make_conflict(reconciler, api)
        pushes_before = len(api.pushes)
        cmd_sync(_args("resolve", op_id=entry.op_id, all=False, keep="mine"), reconciler)
        out = capsys.readouterr().out
        assert "Kept mine; re-issued as" in out
        assert "Synced: 1/1 pushed" in out
        assert len(api.pushes) == pushes_before + 1

    def test_resolve_without_backend(self, reconciler, api, storage, capsys):
        entry = _make_conflict(reconciler, api)
        offline = SyncReconciler(USER, None, storage, storage)
        cmd_sync(_args("resolve", op_id=entry.op_id, all=False, keep="mine"), offline)
        assert "changes will go out on the next sync" in capsys.readouterr().out
        assert offline.get_status()["pending"] == 1

    def test_resolve_unknown_op(self, reconciler, capsys):
        with pytest.raises(SystemExit):
            cmd_sync(_args("resolve", op_id=new_id(), all=False, keep="mine"), reconciler)

    def test_audit(self, reconciler, api, capsys):
        _make_conflict(reconciler, api)
        cmd_sync(_args("audit", limit=10, clear=False, json=True), reconciler)
        events = json.loads(capsys.readouterr().out)
        assert [e["eventType"] for e in events] == ["detected"]

        cmd_sync(_args("audit", limit=10, clear=True), reconciler)
        assert "Cleared 1 audit event(s)" in capsys.readouterr().out


class TestEnqueue:
    def test_enqueue(self, reconciler, capsys):
        entity_id = new_id()
        args = _args(
            "enqueue",
            entity="climb_gyms",
            entity_id=entity_id,
            type="upsert",
            payload=json.dumps(GYM),
            base_version=None,
        )
        cmd_sync(args, reconciler)
        assert f"Queued upsert climb_gyms/{entity_id}" in capsys.readouterr().out
        assert len(reconciler.queue) == 1

    def test_rejected(self, reconciler, capsys):
        args = _args(
            "enqueue", entity="users", entity_id=new_id(), type="upsert", payload="{}", base_version=None
        )
        with pytest.raises(SystemExit):
            cmd_sync(args, reconciler)
        assert "(invalid_entity)" in capsys.readouterr().out

    def test_bad_json(self, reconciler, capsys):
        args = _args(
            "enqueue", entity="climb_gyms", entity_id=new_id(), type="upsert", payload="{", base_version=None
        )
        with pytest.raises(SystemExit):
            cmd_sync(args, reconciler)
        assert "not valid JSON" in capsys.readouterr().out


class TestMain:
    def test_enqueue_then_status(self, tmp_path, capsys):
        db = str(tmp_path / "cli.db")
        main(
            [
                "--user", USER, "--db", db,
                "sync", "enqueue", "climb_styles", new_id(),
                "--payload", json.dumps({"name": "Slab", "is_default": False}),
            ]
        )
        capsys.readouterr()

        main(["--user", USER, "--db", db, "sync", "status", "--json"])
        status = json.loads(capsys.readouterr().out)
        assert status["user_id"] == USER
        assert status["pending"] == 1

    def test_user_from_environment(self, monkeypatch, capsys):
        monkeypatch.setenv("KLETTRACK_USER_ID", USER)
        monkeypatch.setenv("KLETTRACK_BACKEND_URL", "https://sync.example.com")
        monkeypatch.setenv("KLETTRACK_AUTH_TOKEN", "token")
        main(["sync", "status", "--json"])
        assert json.loads(capsys.readouterr().out)["user_id"] == USER

    def test_no_user(self):
        with pytest.raises(SystemExit) as exc:
            main(["sync", "status"])
        assert exc.value.code == 1

    def test_user_id_from_token(self):
        from jose import jwt

        token = jwt.encode({"sub": USER}, "any-secret", algorithm="HS256")
        assert user_id_from_token(token) == USER
        assert user_id_from_token("not-a-jwt") is None
