import json

from buildcrew.audit_logger import AuditLogger
from buildcrew.event_bus import EventBus, TaskEventType


def test_events_are_appended_as_json_lines(tmp_path):
    path = tmp_path / "logs" / "audit.jsonl"
    bus = EventBus()
    audit = AuditLogger(str(path), bus)

    bus.emit(TaskEventType.SUBMITTED, "task-1", {"kind": "testing"})
    bus.emit(TaskEventType.COMPLETED, "task-1", agent_name="tester")

    lines = path.read_text().splitlines()
    assert len(lines) == 2
    first, second = (json.loads(line) for line in lines)
    assert first["event_type"] == "task:submitted"
    assert first["payload"] == {"kind": "testing"}
    assert second["agent_name"] == "tester"
    audit.close()


def test_close_unsubscribes(tmp_path):
    path = tmp_path / "audit.jsonl"
    bus = EventBus()
    audit = AuditLogger(str(path), bus)
    audit.close()
    audit.close()

    bus.emit(TaskEventType.STARTED, "task-1")
    assert not path.exists() or path.read_text() == ""


def test_failed_write_is_counted_and_later_events_still_land(tmp_path):
    path = tmp_path / "audit.jsonl"
    bus = EventBus()
    audit = AuditLogger(str(path), bus)

    path.mkdir()
    bus.emit(TaskEventType.SUBMITTED, "task-1")
    assert audit.dropped == 1

    path.rmdir()
    bus.emit(TaskEventType.STARTED, "task-1")
    assert audit.dropped == 1
    assert json.loads(path.read_text())["event_type"] == "task:started"
    audit.close()
