from patchwright.audit_logger import AuditLogger
from patchwright.event_bus import EventBus


def test_batches_until_flush(tmp_path):
    audit = AuditLogger(tmp_path / "logs" / "audit.jsonl", batch_size=3)
    bus = EventBus()
    bus.subscribe(audit)

    bus.emit("task-1", "one")
    bus.emit("task-1", "two")
    assert audit.read() == []

    bus.emit("task-1", "three")
    assert [entry["message"] for entry in audit.read()] == ["one", "two", "three"]


def test_errors_are_written_immediately(tmp_path):
    audit = AuditLogger(tmp_path / "audit.jsonl", batch_size=100)
    bus = EventBus()
    bus.subscribe(audit)

    bus.emit("task-1", "routine")
    bus.emit("task-1", "Task failed: cancelled", severity="error")

    entries = audit.read()
    assert [e["severity"] for e in entries] == ["info", "error"]
    assert entries[1]["task_id"] == "task-1"


def test_explicit_flush(tmp_path):
    audit = AuditLogger(tmp_path / "audit.jsonl")
    bus = EventBus()
    bus.subscribe(audit)
    bus.emit("task-1", "pending")

    audit.flush()
    audit.flush()
    assert len(audit.read()) == 1
