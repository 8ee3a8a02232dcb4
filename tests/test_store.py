import sqlite3

import pytest

from patchwright.errors import TerminalStateError
from patchwright.store import TaskStore
from patchwright.store.migrations import LATEST_VERSION, applied_versions, ensure_schema, run_migrations


def test_open_applies_all_migrations(store):
    assert applied_versions(store.engine) == set(range(1, LATEST_VERSION + 1))


def test_migrations_and_guard_are_idempotent(store):
    assert run_migrations(store.engine) == []
    assert ensure_schema(store.engine) == []
    assert ensure_schema(store.engine) == []


def test_guard_repairs_column_dropped_after_recording(tmp_path):
    db = tmp_path / "drift.db"
    TaskStore.open(db).close()

    # Simulate a migration that was recorded but only partially applied.
    conn = sqlite3.connect(db)
    conn.execute("ALTER TABLE tasks DROP COLUMN last_diff")
    conn.commit()
    conn.close()

    store = TaskStore.open(db)
    try:
        assert ensure_schema(store.engine) == []
        project = store.create_project("demo", tmp_path)
        task = store.create_task("Add a greeting", project.project_id)
        updated = store.update_task(task.task_id, last_diff="diff --git a/x b/x\n")
        assert updated.last_diff == "diff --git a/x b/x\n"
    finally:
        store.close()


def test_guard_reports_added_columns(tmp_path):
    db = tmp_path / "drift.db"
    store = TaskStore.open(db)
    with store.engine.begin() as conn:
        conn.exec_driver_sql("ALTER TABLE tasks DROP COLUMN cancel_requested")

    assert ensure_schema(store.engine) == ["tasks.cancel_requested"]
    store.close()


def test_create_task_defaults(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    assert task.state == "queued"
    assert task.source_branch == "main"
    assert task.target_branch == f"patchwright/{task.task_id[:8]}"
    assert task.iteration_count == 0
    assert not task.is_terminal


def test_target_must_differ_from_source(store, project):
    with pytest.raises(ValueError):
        store.create_task("Add a greeting", project.project_id, source_branch="main", target_branch="main")


def test_empty_prompt_rejected(store, project):
    with pytest.raises(ValueError):
        store.create_task("   ", project.project_id)


def test_unknown_project_rejected(store):
    with pytest.raises(ValueError):
        store.create_task("Add a greeting", "no-such-project")


def test_duplicate_project_name_rejected(store, project, tmp_path):
    with pytest.raises(ValueError):
        store.create_project("demo", tmp_path)


def test_terminal_tasks_are_immutable(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    store.update_task(task.task_id, state="running")
    store.update_task(task.task_id, state="completed", reason="done")

    with pytest.raises(TerminalStateError):
        store.update_task(task.task_id, reason="changed my mind")
    with pytest.raises(TerminalStateError):
        store.request_cancel(task.task_id)
    assert store.get_task(task.task_id).reason == "done"


def test_iteration_count_is_monotonic(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    store.update_task(task.task_id, iteration_count=2)
    with pytest.raises(ValueError):
        store.update_task(task.task_id, iteration_count=1)


def test_immutable_fields_rejected(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    with pytest.raises(ValueError):
        store.update_task(task.task_id, prompt="something else")


def test_update_missing_task(store):
    with pytest.raises(KeyError):
        store.update_task("missing", reason="x")


def test_claim_is_exclusive(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    assert store.claim_task(task.task_id)
    assert not store.claim_task(task.task_id)
    assert store.get_task(task.task_id).state == "running"


def test_next_queued_task_is_oldest(store, project):
    first = store.create_task("first", project.project_id)
    second = store.create_task("second", project.project_id)
    assert store.next_queued_task().task_id == first.task_id
    store.claim_task(first.task_id)
    assert store.next_queued_task().task_id == second.task_id


def test_events_keep_arrival_order(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    for i in range(5):
        store.append_event(task.task_id, f"event {i}", "warning" if i % 2 else "info")

    events = store.events_for(task.task_id)
    assert [e.message for e in events] == [f"event {i}" for i in range(5)]
    later = store.events_for(task.task_id, after_id=events[2].event_id)
    assert [e.message for e in later] == ["event 3", "event 4"]


def test_unknown_severity_rejected(store, project):
    task = store.create_task("Add a greeting", project.project_id)
    with pytest.raises(ValueError):
        store.append_event(task.task_id, "hm", "debug")


def test_list_tasks_filters(store, project, tmp_path):
    other = store.create_project("other", tmp_path)
    a = store.create_task("a", project.project_id)
    store.create_task("b", other.project_id)
    store.claim_task(a.task_id)

    assert [t.prompt for t in store.list_tasks(project_id=project.project_id)] == ["a"]
    assert [t.prompt for t in store.list_tasks(state="queued")] == ["b"]


def test_records_survive_reopen(tmp_path):
    db = tmp_path / "reopen.db"
    store = TaskStore.open(db)
    project = store.create_project("demo", tmp_path)
    task = store.create_task("Add a greeting", project.project_id)
    store.close()

    reopened = TaskStore.open(db)
    assert reopened.get_task(task.task_id).prompt == "Add a greeting"
    assert reopened.get_project_by_name("demo").project_id == project.project_id
    reopened.close()
