import pytest

from patchwright.errors import ConfigurationError
from patchwright.jobs import JobService, StreamComplete
from patchwright.store.models import EventRecord
from patchwright.workspace import is_git_repository

from conftest import README_DIFF, FakeRouter


@pytest.fixture
def service(config, store):
    return JobService(config, store, router_factory=lambda cfg: FakeRouter([README_DIFF]))


def test_register_fresh_project(service, config):
    project = service.register_project("fresh")

    assert project.remote_url is None
    assert str(config.workspace.repos_path) in project.local_path
    assert project.project_id in project.local_path
    assert is_git_repository(project.local_path)


def test_register_adopts_existing_checkout(service, repo):
    project = service.register_project("adopted", local_path=repo)
    assert project.local_path == str(repo.resolve())


def test_register_rejects_non_repository(service, tmp_path):
    with pytest.raises(ConfigurationError):
        service.register_project("plain", local_path=tmp_path)


def test_register_rejects_duplicate_name(service, project):
    with pytest.raises(ValueError):
        service.register_project(project.name)


def test_submit_resolves_project_by_name_or_id(service, store, project):
    by_name = service.submit_task("Add a greeting", "demo")
    by_id = service.submit_task("Add another greeting", project.project_id, target_branch="feature/greet")

    assert by_name.state == "queued"
    assert by_id.target_branch == "feature/greet"
    assert store.events_for(by_name.task_id)[0].message.startswith("Task queued: main →")


def test_submit_unknown_project(service):
    with pytest.raises(ConfigurationError):
        service.submit_task("Anything", "nope")


def test_subscribe_replays_history_and_ends_with_completion(service, project):
    task = service.submit_task("Add a greeting to the README", "demo")
    service.run_task(task.task_id)

    items = list(service.subscribe(task.task_id, poll_interval=0))

    *events, last = items
    assert all(isinstance(e, EventRecord) for e in events)
    assert [e.event_id for e in events] == sorted(e.event_id for e in events)
    assert events[-1].message.startswith("Task completed")
    assert isinstance(last, StreamComplete)
    assert last.type == "complete"
    assert last.state == "completed"


def test_subscribe_times_out_on_live_task(service, project):
    task = service.submit_task("Add a greeting", "demo")
    with pytest.raises(TimeoutError):
        list(service.subscribe(task.task_id, poll_interval=0.01, timeout=0.05))


def test_subscribe_unknown_task(service):
    with pytest.raises(KeyError):
        next(service.subscribe("missing"))


def test_cancel_queued_task_fails_it(service, store, project):
    task = service.submit_task("Add a greeting", "demo")

    cancelled = service.cancel(task.task_id)

    assert cancelled.state == "failed"
    assert cancelled.reason == "cancelled"
    assert service.run_next() is None


def test_run_next_runs_oldest(service, project):
    first = service.submit_task("Add a greeting to the README", "demo")
    service.submit_task("Something else", "demo", target_branch="patchwright/other")

    done = service.run_next()

    assert done.task_id == first.task_id
    assert done.state == "completed"
