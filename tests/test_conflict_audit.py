"""Tests for the conflict audit trail."""

from datetime import date

from klettrack.storage import ConflictAuditLog
from klettrack.types import Conflict, ConflictEventType

from fakes import USER, new_id


def _conflict(entity="climb_entries"):
    return Conflict(op_id=new_id(), entity=entity, entity_id=new_id())


class TestConflictAuditLog:
    def test_newest_first(self, storage):
        log = ConflictAuditLog(storage, USER)
        log.record(ConflictEventType.DETECTED, _conflict("plans"))
        log.record(ConflictEventType.KEEP_MINE, _conflict("sessions"))

        events = log.events()
        assert [e.event_type for e in events] == [ConflictEventType.KEEP_MINE, ConflictEventType.DETECTED]
        assert events[0].entity == "sessions"
        assert events[0].reason == "version_mismatch"

    def test_capped(self, storage):
        log = ConflictAuditLog(storage, USER, cap=5)
        conflicts = [_conflict() for _ in range(8)]
        for conflict in conflicts:
            log.record(ConflictEventType.DETECTED, conflict)

        events = log.events()
        assert len(events) == 5
        assert [e.entity_id for e in events] == [c.entity_id for c in reversed(conflicts[-5:])]

    def test_recent_is_in_memory(self, storage):
        log = ConflictAuditLog(storage, USER)
        for _ in range(60):
            log.record(ConflictEventType.DETECTED, _conflict())
        assert len(log.recent()) == 50

    def test_storage_failure_is_swallowed(self, storage, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(storage, "append_conflict_event", broken)
        monkeypatch.setattr(storage, "list_conflict_events", broken)
        log = ConflictAuditLog(storage, USER)

        event = log.record(ConflictEventType.KEEP_SERVER, _conflict())
        assert log.events() == [event]

    def test_clear(self, storage):
        log = ConflictAuditLog(storage, USER)
        log.record(ConflictEventType.DETECTED, _conflict())
        assert log.clear() == 1
        assert log.events() == []
        assert log.recent() == []

    def test_events_written_to_sync_event_log(self, storage, klettrack_home):
        log = ConflictAuditLog(storage, USER)
        log.record(ConflictEventType.DETECTED, _conflict("plans"))

        log_file = klettrack_home / "logs" / f"sync-events-{date.today().isoformat()}.log"
        content = log_file.read_text()
        assert "| conflict |" in content
        assert "event=detected, entity=plans" in content
