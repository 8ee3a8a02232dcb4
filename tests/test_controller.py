import pytest

from patchwright.config_loader import LimitsConfig, PreflightConfig
from patchwright.controller import CANCELLED, DIFF_EXHAUSTED, Controller
from patchwright.diffs import NO_CHANGES
from patchwright.event_bus import EventBus
from patchwright.publisher import Publisher
from patchwright.workspace import CHECKPOINT_TAG_PREFIX

from conftest import README_DIFF, FakeRouter, commit_file, git

INDEX_TS = "export function greet(name: string): string {\n  return `Hello ${name}`;\n}\n"

INDEX_DIFF = """diff --git a/src/index.ts b/src/index.ts
--- a/src/index.ts
+++ b/src/index.ts
@@ -1,3 +1,7 @@
 export function greet(name: string): string {
   return `Hello ${name}`;
 }
+
+export function farewell(name: string): string {
+  return `Goodbye ${name}`;
+}
"""

STALE_DIFF = """diff --git a/README.md b/README.md
--- a/README.md
+++ b/README.md
@@ -1 +1,2 @@
 # a completely different title
+Hello
"""

REPLACE_README_DIFF = """diff --git a/README.md b/README.md
--- a/README.md
+++ b/README.md
@@ -1 +1,2 @@
-# demo
+# demo
+Hello from a patch
"""


def _controller(config, store, router, **kwargs):
    return Controller(config, store, router_factory=lambda cfg: router, **kwargs)


def _messages(store, task_id):
    return [e.message for e in store.events_for(task_id)]


def test_diff_exhaustion_with_ceiling_one(config, store, project):
    config.limits = LimitsConfig(max_consecutive_diff_failures=1)
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = FakeRouter(["I would rather not."])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "failed"
    assert final.reason == DIFF_EXHAUSTED
    assert final.consecutive_failures == 1
    assert len(router.calls) == 3


def test_diff_failures_accumulate_across_iterations(config, store, project):
    config.limits = LimitsConfig(max_consecutive_diff_failures=2)
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = FakeRouter(["no"])

    final = _controller(config, store, router).run(task.task_id)

    assert final.reason == DIFF_EXHAUSTED
    assert final.consecutive_failures == 2
    assert len(router.calls) == 6
    assert final.iteration_count == 2


def test_local_project_completes_without_remote(config, store, project, repo):
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = FakeRouter([README_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "completed"
    assert final.reason == "completed locally (no remote configured)"
    assert final.pr_url is None
    assert final.iteration_count == 1
    assert final.last_diff == README_DIFF

    messages = _messages(store, task.task_id)
    assert any(m.startswith("No remote configured; completed locally") for m in messages)
    assert messages[-1] == "Task completed: completed locally (no remote configured)"

    assert git(repo, "rev-list", "--count", f"main..{task.target_branch}") == "1"
    assert git(repo, "tag", "--list", f"{CHECKPOINT_TAG_PREFIX}{task.task_id}")
    assert "Hello from a patch" in git(repo, "show", f"{task.target_branch}:README.md")
    # The project checkout itself is never touched.
    assert git(repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"


def test_running_event_precedes_terminal_event(config, store, project, repo):
    commit_file(repo, "src/index.ts", INDEX_TS)
    task = store.create_task("Add a farewell function to src/index.ts", project.project_id)
    router = FakeRouter([INDEX_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "completed"
    messages = _messages(store, task.task_id)
    running = messages.index("Task picked up: queued → running")
    terminal = next(i for i, m in enumerate(messages) if m.startswith("Task completed"))
    assert running < terminal
    # The named file was shown to the model.
    assert "--- src/index.ts ---" in router.user_message(0)


def test_no_changes_sentinel_completes_without_commits(config, store, project, repo):
    task = store.create_task("Make sure the README has a title", project.project_id)
    router = FakeRouter([NO_CHANGES])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "completed"
    assert final.reason == "no changes needed"
    assert final.iteration_count == 1
    assert git(repo, "rev-list", "--count", f"main..{task.target_branch}") == "0"


def test_apply_failure_ceiling(config, store, project, repo):
    config.limits = LimitsConfig(max_apply_failures=2)
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = FakeRouter([STALE_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "failed"
    assert final.reason == "patch application failed 2 times"
    assert final.iteration_count == 2
    assert "PATCH FAILURE FEEDBACK" in router.user_message(1)
    assert "Fallback mode: full file replacement for README.md" in _messages(store, task.task_id)
    assert git(repo, "rev-list", "--count", f"main..{task.target_branch}") == "0"


def test_preflight_failure_is_fed_back(config, store, project):
    config.preflight = PreflightConfig(test="echo 'expected 2 got 3' && exit 1")
    task = store.create_task("Add a greeting to the README", project.project_id)
    second = README_DIFF.replace("+Hello from a patch", " Hello from a patch\n+Second line")
    second = second.replace("@@ -1 +1,2 @@", "@@ -1,2 +1,3 @@")
    router = FakeRouter([README_DIFF, second])
    config.limits = LimitsConfig(max_iterations=2)

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "failed"
    assert final.iteration_count == 2
    assert "iteration limit reached (2)" in final.reason
    feedback = router.user_message(1)
    assert "the test check failed" in feedback
    assert "expected 2 got 3" in feedback


def test_preflight_pass_then_converge(config, store, project):
    config.preflight = PreflightConfig(lint="true", test="test -f README.md")
    task = store.create_task("Add a greeting to the README", project.project_id)

    final = _controller(config, store, FakeRouter([README_DIFF])).run(task.task_id)

    assert final.state == "completed"
    messages = _messages(store, task.task_id)
    assert "Preflight passed" in messages
    assert "[test] test passed" in messages


def test_cancel_before_first_iteration(config, store, project):
    task = store.create_task("Add a greeting to the README", project.project_id)
    store.request_cancel(task.task_id)
    router = FakeRouter([README_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "failed"
    assert final.reason == CANCELLED
    assert router.calls == []


def _cancel_on_first_call(store, task_id, replies):
    router = FakeRouter(replies)
    complete = router.complete

    def complete_then_cancel(messages):
        store.request_cancel(task_id)
        return complete(messages)

    router.complete = complete_then_cancel
    return router


def test_cancel_between_iterations_keeps_commits(config, store, project, repo):
    config.preflight = PreflightConfig(test="exit 1")
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = _cancel_on_first_call(store, task.task_id, [README_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "failed"
    assert final.reason == CANCELLED
    assert final.iteration_count == 1
    assert len(router.calls) == 1
    assert git(repo, "rev-list", "--count", f"main..{task.target_branch}") == "1"


def test_cancel_rolls_back_when_configured(config, store, project, repo):
    config.preflight = PreflightConfig(test="exit 1")
    config.limits = LimitsConfig(rollback_on_cancel=True)
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = _cancel_on_first_call(store, task.task_id, [README_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.reason == CANCELLED
    assert f"Rolled back {task.target_branch} to main" in _messages(store, task.task_id)
    assert git(repo, "rev-list", "--count", f"main..{task.target_branch}") == "0"


def test_missing_token_with_remote_fails_before_model_call(config, store, project, repo, tmp_path):
    origin = tmp_path / "origin.git"
    git(tmp_path, "clone", "--bare", str(repo), str(origin))
    git(repo, "remote", "add", "origin", str(origin))
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = FakeRouter([README_DIFF])
    publisher = Publisher(config.publish, environ={})

    final = _controller(config, store, router, publisher=publisher).run(task.task_id)

    assert final.state == "failed"
    assert final.reason.startswith("configuration error")
    assert "GH_TOKEN" in final.reason
    assert router.calls == []


def test_repeated_apply_failures_switch_to_full_file_replacement(config, store, project, repo):
    config.limits = LimitsConfig(max_apply_failures=3)
    task = store.create_task("Add a greeting to the README", project.project_id)
    router = FakeRouter([STALE_DIFF, STALE_DIFF, REPLACE_README_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.state == "completed"
    assert final.iteration_count == 3
    assert "FALLBACK MODE" not in router.user_message(1)
    assert "FALLBACK MODE for files: README.md" in router.user_message(2)
    assert "REPLACE THE ENTIRE FILE CONTENT" in router.user_message(2)
    assert "Hello from a patch" in git(repo, "show", f"{task.target_branch}:README.md")


def test_missing_working_copy_is_configuration_error(config, store, tmp_path):
    project = store.create_project("ghost", tmp_path / "does-not-exist")
    task = store.create_task("Anything", project.project_id)

    final = _controller(config, store, FakeRouter([README_DIFF])).run(task.task_id)

    assert final.state == "failed"
    assert final.reason.startswith("configuration error")


def test_missing_source_branch_is_configuration_error(config, store, project):
    task = store.create_task("Anything", project.project_id, source_branch="develop")

    final = _controller(config, store, FakeRouter([README_DIFF])).run(task.task_id)

    assert final.state == "failed"
    assert "develop" in final.reason


def test_terminal_task_is_returned_untouched(config, store, project):
    task = store.create_task("Add a greeting", project.project_id)
    store.update_task(task.task_id, state="failed", reason="manual")
    router = FakeRouter([README_DIFF])

    final = _controller(config, store, router).run(task.task_id)

    assert final.reason == "manual"
    assert router.calls == []


def test_events_are_mirrored_on_the_bus(config, store, project):
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    task = store.create_task("Add a greeting to the README", project.project_id)

    _controller(config, store, FakeRouter([README_DIFF]), bus=bus).run(task.task_id)

    stored = store.events_for(task.task_id)
    assert [e.message for e in seen] == [e.message for e in stored]
    assert [e.event_id for e in seen] == [e.event_id for e in stored]


def test_unknown_task_raises(config, store):
    with pytest.raises(KeyError):
        _controller(config, store, FakeRouter([NO_CHANGES])).run("missing")
