"""
PATCHWRIGHT Controller: The Executor Loop

It is NOT smart. It is deterministic.

Responsibilities:
  - Claim a queued task
  - Prepare the task branch in its own worktree
  - Ask the generator for a diff, apply it, run preflight
  - Track the consecutive diff-failure and apply-failure ceilings
  - Ask for whole-file replacements after repeated apply failures
  - Honour cancellation at iteration boundaries
  - Publish, tag, and record the terminal state
  - Append an event for every transition

It never writes code. It only coordinates.

States: queued → running → completed | failed. Terminal states are final.
"""

from __future__ import annotations

from typing import Callable

from loguru import logger
from rich.console import Console
from rich.panel import Panel

from patchwright.config_loader import PatchwrightConfig
from patchwright.context import build_context
from patchwright.diffs import NO_CHANGES, extract_failed_files
from patchwright.errors import ConfigurationError, PublishError, TerminalStateError, WorkspaceError
from patchwright.event_bus import EventBus
from patchwright.generator import IterationContext, PatchGenerator
from patchwright.publisher import Publisher
from patchwright.router import Router
from patchwright.store import TaskStore
from patchwright.store.models import ProjectRecord, TaskRecord, TaskState
from patchwright.workspace import WorkingCopy, is_git_repository
from patchwright.workspace.locks import ProjectLocks
from patchwright.workspace.preflight import PreflightResult, run_preflight

DIFF_EXHAUSTED = "diff generation exhausted"
CANCELLED = "cancelled"


class Controller:
    """
    Drives one task at a time from queued to a terminal state.

    The store and the lock registry are explicit so several controllers on
    worker threads can share them.
    """

    def __init__(
        self,
        config: PatchwrightConfig,
        store: TaskStore,
        locks: ProjectLocks | None = None,
        bus: EventBus | None = None,
        router_factory: Callable[[PatchwrightConfig], Router] = Router,
        publisher: Publisher | None = None,
        console: Console | None = None,
    ):
        self.config = config
        self.store = store
        self.locks = locks or ProjectLocks()
        self.bus = bus or EventBus()
        self.router_factory = router_factory
        self.publisher = publisher or Publisher(config.publish, on_event=self._log_event)
        self.console = console

    # -----------------------------------------------------------------------
    # Entry point
    # -----------------------------------------------------------------------

    def run(self, task_id: str) -> TaskRecord:
        """Run a task to a terminal state and return its final record."""
        task = self.store.get_task(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        if task.is_terminal:
            return task

        if task.state == TaskState.QUEUED.value:
            if not self.store.claim_task(task_id):
                logger.info(f"[CONTROLLER] Task {task_id} was claimed by another worker")
                return self.store.get_task(task_id)
            self._log_event(task_id, "info", "Task picked up: queued → running")
        else:
            self._log_event(task_id, "warning", "Resuming task that was left running")

        self._print(Panel(
            f"[bold]{task.prompt}[/]\n\n{task.source_branch} → {task.target_branch}",
            title=f"PATCHWRIGHT · {task_id[:8]}",
            border_style="cyan",
        ))

        project = self.store.get_project(task.project_id)
        if project is None:
            return self._fail(task_id, f"configuration error: project {task.project_id} not found")
        if not is_git_repository(project.local_path):
            return self._fail(task_id, f"configuration error: no git working copy at {project.local_path}")

        working_copy = WorkingCopy(
            project.local_path,
            task_id,
            worktree_root=self.config.workspace.worktrees_path / project.project_id,
            timeout=self.config.workspace.git_timeout_seconds,
            author_name=self.config.workspace.author_name,
            author_email=self.config.workspace.author_email,
        )

        try:
            with self.locks.hold(project.project_id):
                if working_copy.sync():
                    self.store.mark_synced(project.project_id)
                working_copy.ensure_branch(
                    task.source_branch, task.target_branch, self.config.workspace.force_reset_branches,
                )
            self.publisher.check_credentials(working_copy)
            self._log_event(task_id, "info", f"Branch {task.target_branch} prepared from {task.source_branch}")
        except (ConfigurationError, WorkspaceError) as e:
            with self.locks.hold(project.project_id):
                working_copy.cleanup()
            return self._fail(task_id, f"configuration error: {e}")

        try:
            return self._iterate(task_id, project, working_copy)
        except Exception as e:
            logger.exception("Controller error")
            return self._fail(task_id, f"internal error: {type(e).__name__}: {e}")
        finally:
            with self.locks.hold(project.project_id):
                working_copy.cleanup()

    # -----------------------------------------------------------------------
    # Iteration loop
    # -----------------------------------------------------------------------

    def _iterate(self, task_id: str, project: ProjectRecord, working_copy: WorkingCopy) -> TaskRecord:
        limits = self.config.limits
        generator = PatchGenerator(
            self.router_factory(self.config),
            max_attempts=limits.max_diff_attempts,
            max_diff_lines=limits.max_diff_lines,
            on_event=self._log_event,
        )

        apply_feedback: str | None = None
        apply_failures = 0
        fallback_files: list[str] = []
        global_fallback = False
        preflight: PreflightResult | None = None

        while True:
            task = self.store.get_task(task_id)

            if task.cancel_requested:
                return self._cancel(task, working_copy)

            if task.iteration_count >= limits.max_iterations:
                return self._fail(
                    task_id,
                    f"iteration limit reached ({limits.max_iterations}) without converging",
                )

            task = self.store.update_task(task_id, iteration_count=task.iteration_count + 1)
            loop_pass = task.iteration_count
            self._log_event(task_id, "info", f"Iteration {loop_pass}/{limits.max_iterations}: requesting diff")

            context = build_context(working_copy.path, task.prompt, limits.max_context_chars)
            diff = generator.generate_diff(
                task,
                IterationContext(
                    iteration=loop_pass,
                    repository_context=context.to_prompt(),
                    apply_feedback=apply_feedback,
                    worktree=working_copy.path,
                    fallback_files=fallback_files,
                    global_fallback=global_fallback,
                ),
            )

            # ── No usable diff ──
            if diff is None:
                failures = task.consecutive_failures + 1
                if failures >= limits.max_consecutive_diff_failures:
                    return self._fail(task_id, DIFF_EXHAUSTED, consecutive_failures=failures)
                self.store.update_task(task_id, consecutive_failures=failures)
                self._log_event(
                    task_id, "warning",
                    f"No valid diff this iteration ({failures}/{limits.max_consecutive_diff_failures} "
                    "consecutive failures); retrying",
                )
                continue

            # ── Converged ──
            if diff == NO_CHANGES:
                self._log_event(task_id, "info", "Model reports no changes needed - skipping git apply")
                return self._converge(task_id, project, working_copy, preflight)

            # ── Apply ──
            message = f"PATCHWRIGHT iteration {loop_pass}: {task.prompt[:50]}"
            with self.locks.hold(project.project_id):
                result = working_copy.apply_patch(diff, message)

            if not result.ok:
                apply_failures += 1
                self._log_event(
                    task_id, "error",
                    f"Patch did not apply ({apply_failures}/{limits.max_apply_failures}): {result.error}",
                )
                if apply_failures >= limits.fallback_after_apply_failures:
                    failed_files = extract_failed_files(result.error or "")
                    if failed_files:
                        fallback_files.extend(f for f in failed_files if f not in fallback_files)
                        self._log_event(
                            task_id, "warning",
                            f"Fallback mode: full file replacement for {', '.join(failed_files)}",
                        )
                    else:
                        global_fallback = True
                        self._log_event(task_id, "warning", "Fallback mode: global full file replacement")
                if apply_failures >= limits.max_apply_failures:
                    return self._fail(task_id, f"patch application failed {apply_failures} times")
                apply_feedback = f"Git apply failed: {result.error}"
                continue

            apply_failures = 0
            apply_feedback = None
            fallback_files = []
            global_fallback = False
            task = self.store.update_task(task_id, consecutive_failures=0, last_diff=diff)
            self._log_event(
                task_id, "info",
                f"Changes committed (iteration {loop_pass}): {result.commit[:8]}",
            )

            # ── Preflight ──
            preflight = run_preflight(
                working_copy.path,
                self.config.preflight,
                on_progress=lambda stage, output: self._log_event(task_id, "info", f"[{stage}] {output}"),
            )
            if preflight.success:
                self._log_event(task_id, "info", "Preflight passed")
                return self._converge(task_id, project, working_copy, preflight)

            failed = preflight.failure
            self._log_event(
                task_id, "warning",
                f"Preflight failed at stage {preflight.stage}; will retry "
                f"({loop_pass}/{limits.max_iterations})",
            )
            apply_feedback = (
                f"The change applied, but the {preflight.stage} check failed ({failed.error}):\n{failed.output}"
            )

    # -----------------------------------------------------------------------
    # Terminal transitions
    # -----------------------------------------------------------------------

    def _converge(
        self,
        task_id: str,
        project: ProjectRecord,
        working_copy: WorkingCopy,
        preflight: PreflightResult | None,
    ) -> TaskRecord:
        task = self.store.get_task(task_id)
        ahead = working_copy.commits_ahead(task.source_branch)

        if ahead == 0:
            self._log_event(task_id, "info", "No changes; no PR created")
            return self._complete(task_id, "no changes needed")

        try:
            with self.locks.hold(project.project_id):
                published = self.publisher.publish(task, project, working_copy, preflight)
        except (PublishError, WorkspaceError) as e:
            self._log_event(task_id, "error", f"Publication failed: {e}")
            self._tag(task_id, project, working_copy)
            return self._complete(task_id, f"completed on {task.target_branch}; not published: {e}")

        self._tag(task_id, project, working_copy)
        if published.is_local:
            return self._complete(task_id, "completed locally (no remote configured)")

        self._log_event(task_id, "info", f"Pull request created: {published.url}")
        return self._complete(task_id, "pull request opened", pr_url=published.url)

    def _tag(self, task_id: str, project: ProjectRecord, working_copy: WorkingCopy) -> None:
        try:
            with self.locks.hold(project.project_id):
                tag = working_copy.checkpoint_tag()
            self._log_event(task_id, "info", f"Created checkpoint tag: {tag}")
        except WorkspaceError as e:
            self._log_event(task_id, "warning", f"Failed to create checkpoint tag: {e}")

    def _cancel(self, task: TaskRecord, working_copy: WorkingCopy) -> TaskRecord:
        self._log_event(task.task_id, "warning", "Cancellation requested; stopping at iteration boundary")
        if self.config.limits.rollback_on_cancel and working_copy.commits_ahead(task.source_branch):
            with self.locks.hold(task.project_id):
                working_copy.rollback(task.source_branch)
            self._log_event(task.task_id, "info", f"Rolled back {task.target_branch} to {task.source_branch}")
        return self._fail(task.task_id, CANCELLED)

    def _complete(self, task_id: str, reason: str, **fields) -> TaskRecord:
        return self._finish(task_id, TaskState.COMPLETED, reason, **fields)

    def _fail(self, task_id: str, reason: str, **fields) -> TaskRecord:
        return self._finish(task_id, TaskState.FAILED, reason, **fields)

    def _finish(self, task_id: str, state: TaskState, reason: str, **fields) -> TaskRecord:
        try:
            task = self.store.update_task(task_id, state=state, reason=reason, **fields)
        except TerminalStateError as e:
            logger.warning(f"[CONTROLLER] {e}")
            return self.store.get_task(task_id)

        severity = "info" if state == TaskState.COMPLETED else "error"
        self._log_event(task_id, severity, f"Task {state.value}: {reason}")
        style = "green" if state == TaskState.COMPLETED else "red"
        self._print(f"[{style}]{state.value.upper()}[/] {task_id[:8]}: {reason}")
        return task

    # -----------------------------------------------------------------------
    # Utilities
    # -----------------------------------------------------------------------

    def _log_event(self, task_id: str, severity: str, message: str) -> None:
        record = self.store.append_event(task_id, message, severity)
        self.bus.emit(
            task_id, message, severity,
            event_id=record.event_id, timestamp=record.created_at.isoformat(),
        )
        logger.debug(f"[EVENT] {task_id[:8]} {severity}: {message}")

    def _print(self, renderable) -> None:
        if self.console is not None:
            self.console.print(renderable)
