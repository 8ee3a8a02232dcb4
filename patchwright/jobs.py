"""
Job submission interface.

What the surrounding application (CLI, a web API) talks to: register
projects, submit tasks, read them back, follow their event stream, cancel
them, and drain the queue.
"""

from __future__ import annotations

import shutil
import time
import uuid
from collections.abc import Iterator
from pathlib import Path
from typing import Callable, Literal, Union

from loguru import logger
from pydantic import BaseModel

from patchwright.audit_logger import AuditLogger
from patchwright.config_loader import PatchwrightConfig
from patchwright.controller import Controller
from patchwright.errors import ConfigurationError, WorkspaceError
from patchwright.event_bus import EventBus
from patchwright.router import Router
from patchwright.store import TaskStore
from patchwright.store.models import EventRecord, ProjectRecord, TaskRecord
from patchwright.workspace import clone_repository, init_repository, is_git_repository
from patchwright.workspace.locks import ProjectLocks


class StreamComplete(BaseModel):
    """Last item of a `subscribe` stream."""
    type: Literal["complete"] = "complete"
    task_id: str
    state: str
    reason: str | None = None


StreamItem = Union[EventRecord, StreamComplete]


class JobService:
    def __init__(
        self,
        config: PatchwrightConfig,
        store: TaskStore,
        locks: ProjectLocks | None = None,
        bus: EventBus | None = None,
        router_factory: Callable[[PatchwrightConfig], Router] = Router,
        audit_log: AuditLogger | None = None,
    ):
        self.config = config
        self.store = store
        self.locks = locks or ProjectLocks()
        self.bus = bus or EventBus()
        self.router_factory = router_factory
        self.audit_log = audit_log
        if audit_log is not None:
            self.bus.subscribe(audit_log)

    def close(self) -> None:
        if self.audit_log is not None:
            self.audit_log.flush()
        self.store.close()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def register_project(
        self,
        name: str,
        remote_url: str | None = None,
        local_path: Path | None = None,
    ) -> ProjectRecord:
        """
        Register a project and make sure it has a working copy.

        With `local_path`, an existing git checkout is adopted as-is.
        Otherwise a directory is allocated under the repos dir and either
        cloned from `remote_url` or initialized with a README on `main`.
        """
        if self.store.get_project_by_name(name) is not None:
            raise ValueError(f"Project name already registered: {name}")

        ws = self.config.workspace
        if local_path is not None:
            local_path = Path(local_path).expanduser().resolve()
            if not is_git_repository(local_path):
                raise ConfigurationError(f"Not a git working copy: {local_path}")
            return self.store.create_project(name, local_path, remote_url)

        project_id = str(uuid.uuid4())
        path = ws.repos_path / project_id
        try:
            if remote_url:
                clone_repository(remote_url, path, timeout=ws.git_timeout_seconds)
            else:
                init_repository(path, name, ws.author_name, ws.author_email, timeout=ws.git_timeout_seconds)
        except WorkspaceError:
            shutil.rmtree(path, ignore_errors=True)
            raise

        project = self.store.create_project(name, path, remote_url, project_id=project_id)
        if remote_url:
            self.store.mark_synced(project_id)
        logger.info(f"[JOBS] Project {name} registered at {path}")
        return project

    def resolve_project(self, ref: str) -> ProjectRecord:
        """Look a project up by id, then by name."""
        project = self.store.get_project(ref) or self.store.get_project_by_name(ref)
        if project is None:
            raise ConfigurationError(f"Unknown project: {ref}")
        return project

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def submit_task(
        self,
        prompt: str,
        project: str,
        source_branch: str = "main",
        target_branch: str | None = None,
    ) -> TaskRecord:
        """Queue a task. Returns it in the `queued` state."""
        record = self.resolve_project(project)
        task = self.store.create_task(prompt, record.project_id, source_branch, target_branch)
        self.store.append_event(task.task_id, f"Task queued: {source_branch} → {task.target_branch}")
        return task

    def get_task(self, task_id: str) -> TaskRecord:
        task = self.store.get_task(task_id)
        if task is None:
            raise KeyError(f"Unknown task: {task_id}")
        return task

    def cancel(self, task_id: str) -> TaskRecord:
        """Ask a queued or running task to stop. Queued tasks fail at once."""
        task = self.store.request_cancel(task_id)
        self.store.append_event(task_id, "Cancellation requested", "warning")
        if self.store.claim_task(task_id):
            task = self.store.update_task(task_id, state="failed", reason="cancelled")
            self.store.append_event(task_id, "Task failed: cancelled", "error")
        return task

    def run_task(self, task_id: str) -> TaskRecord:
        controller = Controller(
            self.config, self.store, locks=self.locks, bus=self.bus, router_factory=self.router_factory,
        )
        return controller.run(task_id)

    def run_next(self) -> TaskRecord | None:
        """Run the oldest queued task, if any."""
        task = self.store.next_queued_task()
        if task is None:
            return None
        return self.run_task(task.task_id)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def subscribe(
        self,
        task_id: str,
        poll_interval: float = 0.5,
        timeout: float | None = None,
    ) -> Iterator[StreamItem]:
        """
        Yield the task's events in arrival order, then a StreamComplete once
        the task is terminal. Starts from the first event, so late
        subscribers see the whole history.
        """
        self.get_task(task_id)
        last_id = 0
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            for event in self.store.events_for(task_id, after_id=last_id):
                last_id = event.event_id
                yield event

            task = self.get_task(task_id)
            if task.is_terminal:
                # The terminal event is appended right after the state change.
                time.sleep(poll_interval)
                for event in self.store.events_for(task_id, after_id=last_id):
                    last_id = event.event_id
                    yield event
                yield StreamComplete(task_id=task_id, state=task.state, reason=task.reason)
                return

            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError(f"Task {task_id} still {task.state} after {timeout}s")
            time.sleep(poll_interval)
