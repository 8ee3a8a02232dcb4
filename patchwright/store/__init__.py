"""
PATCHWRIGHT Task State Store

Durable record of projects, tasks and their event logs in SQLite via
SQLAlchemy. Every write is a single-row transaction. Completed and
failed tasks are immutable: updates raise TerminalStateError.
"""

from __future__ import annotations

import sqlite3
import uuid
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy import create_engine, event, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from patchwright.errors import TerminalStateError
from patchwright.store.migrations import ensure_schema, run_migrations
from patchwright.store.models import (
    SEVERITIES,
    TERMINAL_STATES,
    EventRecord,
    EventRow,
    ProjectRecord,
    ProjectRow,
    TaskRecord,
    TaskRow,
    TaskState,
    utc_now,
)

__all__ = [
    "EventRecord",
    "ProjectRecord",
    "TaskRecord",
    "TaskState",
    "TaskStore",
    "build_sqlite_engine",
]

# Fields the orchestrator may change after creation.
MUTABLE_TASK_FIELDS = {
    "state",
    "iteration_count",
    "consecutive_failures",
    "reason",
    "pr_url",
    "last_diff",
    "cancel_requested",
}


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = 5000) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(dbapi_connection, busy_timeout_ms=busy_timeout_ms),
    )
    return engine


def default_target_branch(task_id: str) -> str:
    return f"patchwright/{task_id[:8]}"


class TaskStore:
    """Projects, tasks and events. Safe to share between worker threads."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def open(cls, db_path: Path, busy_timeout_ms: int = 5000) -> "TaskStore":
        """Open (or create) the database, migrate it and repair schema drift."""
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

        applied = run_migrations(engine)
        repaired = ensure_schema(engine)
        logger.debug(f"[STORE] Opened {db_path} (migrated: {applied or 'none'}, repaired: {repaired or 'none'})")
        return cls(engine)

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        local_path: str | Path,
        remote_url: str | None = None,
        project_id: str | None = None,
    ) -> ProjectRecord:
        row = ProjectRow(
            project_id=project_id or str(uuid.uuid4()),
            name=name,
            local_path=str(local_path),
            remote_url=remote_url or None,
            created_at=utc_now(),
        )
        try:
            with self._session.begin() as session:
                session.add(row)
        except IntegrityError as exc:
            raise ValueError(f"Project name already registered: {name}") from exc
        return ProjectRecord.from_row(row)

    def get_project(self, project_id: str) -> ProjectRecord | None:
        with self._session() as session:
            row = session.get(ProjectRow, project_id)
            return ProjectRecord.from_row(row) if row else None

    def get_project_by_name(self, name: str) -> ProjectRecord | None:
        with self._session() as session:
            row = session.scalars(select(ProjectRow).where(ProjectRow.name == name)).first()
            return ProjectRecord.from_row(row) if row else None

    def list_projects(self) -> list[ProjectRecord]:
        with self._session() as session:
            rows = session.scalars(select(ProjectRow).order_by(ProjectRow.created_at)).all()
            return [ProjectRecord.from_row(row) for row in rows]

    def mark_synced(self, project_id: str) -> None:
        with self._session.begin() as session:
            session.execute(
                update(ProjectRow).where(ProjectRow.project_id == project_id).values(last_synced_at=utc_now())
            )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(
        self,
        prompt: str,
        project_id: str,
        source_branch: str = "main",
        target_branch: str | None = None,
        task_id: str | None = None,
    ) -> TaskRecord:
        if not prompt or not prompt.strip():
            raise ValueError("Task prompt must not be empty")
        task_id = task_id or str(uuid.uuid4())
        target_branch = target_branch or default_target_branch(task_id)
        if target_branch == source_branch:
            raise ValueError(f"Target branch must differ from source branch ({source_branch})")

        now = utc_now()
        row = TaskRow(
            task_id=task_id,
            prompt=prompt,
            project_id=project_id,
            source_branch=source_branch,
            target_branch=target_branch,
            state=TaskState.QUEUED.value,
            iteration_count=0,
            consecutive_failures=0,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._session.begin() as session:
                session.add(row)
        except IntegrityError as exc:
            raise ValueError(f"Cannot create task {task_id}: unknown project {project_id} or duplicate id") from exc
        logger.debug(f"[STORE] Task {task_id} queued on {target_branch}")
        return TaskRecord.from_row(row)

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._session() as session:
            row = session.get(TaskRow, task_id)
            return TaskRecord.from_row(row) if row else None

    def list_tasks(
        self,
        project_id: str | None = None,
        state: str | None = None,
        limit: int = 50,
    ) -> list[TaskRecord]:
        query = select(TaskRow).order_by(TaskRow.created_at.desc()).limit(limit)
        if project_id:
            query = query.where(TaskRow.project_id == project_id)
        if state:
            query = query.where(TaskRow.state == state)
        with self._session() as session:
            return [TaskRecord.from_row(row) for row in session.scalars(query).all()]

    def update_task(self, task_id: str, **fields: Any) -> TaskRecord:
        """Change mutable fields of a live task.

        Raises:
            KeyError: no such task.
            ValueError: unknown/immutable field, or iteration_count going backwards.
            TerminalStateError: the task is already completed or failed.
        """
        unknown = set(fields) - MUTABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {sorted(unknown)}")

        with self._session.begin() as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise KeyError(task_id)
            if row.state in TERMINAL_STATES:
                raise TerminalStateError(task_id, row.state)
            if "iteration_count" in fields and fields["iteration_count"] < (row.iteration_count or 0):
                raise ValueError("iteration_count is monotonic")

            for key, value in fields.items():
                setattr(row, key, value.value if isinstance(value, TaskState) else value)
            row.updated_at = utc_now()
            return TaskRecord.from_row(row)

    def claim_task(self, task_id: str) -> bool:
        """Atomically move a queued task to running. False if someone else got it."""
        with self._session.begin() as session:
            result = session.execute(
                update(TaskRow)
                .where(TaskRow.task_id == task_id, TaskRow.state == TaskState.QUEUED.value)
                .values(state=TaskState.RUNNING.value, updated_at=utc_now())
            )
            return result.rowcount == 1

    def next_queued_task(self) -> TaskRecord | None:
        """Oldest queued task, or None."""
        with self._session() as session:
            row = session.scalars(
                select(TaskRow)
                .where(TaskRow.state == TaskState.QUEUED.value)
                .order_by(TaskRow.created_at, TaskRow.task_id)
            ).first()
            return TaskRecord.from_row(row) if row else None

    def request_cancel(self, task_id: str) -> TaskRecord:
        return self.update_task(task_id, cancel_requested=True)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def append_event(self, task_id: str, message: str, severity: str = "info") -> EventRecord:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        row = EventRow(task_id=task_id, created_at=utc_now(), severity=severity, message=message)
        with self._session.begin() as session:
            session.add(row)
            session.flush()
            return EventRecord.from_row(row)

    def events_for(self, task_id: str, after_id: int = 0) -> list[EventRecord]:
        """Events of one task in arrival order, optionally only those after `after_id`."""
        with self._session() as session:
            rows = session.scalars(
                select(EventRow)
                .where(EventRow.task_id == task_id, EventRow.event_id > after_id)
                .order_by(EventRow.event_id)
            ).all()
            return [EventRecord.from_row(row) for row in rows]
