"""ORM rows and the pydantic records the rest of PATCHWRIGHT sees."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands datetimes back naive; everything stored is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {TaskState.COMPLETED.value, TaskState.FAILED.value}

SEVERITIES = ("info", "warning", "error")


# ---------------------------------------------------------------------------
# ORM
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class ProjectRow(Base):
    __tablename__ = "projects"

    project_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, unique=True)
    local_path: Mapped[str] = mapped_column(Text)
    remote_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class TaskRow(Base):
    __tablename__ = "tasks"

    task_id: Mapped[str] = mapped_column(String, primary_key=True)
    prompt: Mapped[str] = mapped_column(Text)
    project_id: Mapped[str] = mapped_column(String, ForeignKey("projects.project_id"))
    source_branch: Mapped[str] = mapped_column(String)
    target_branch: Mapped[str] = mapped_column(String)
    state: Mapped[str] = mapped_column(String, default=TaskState.QUEUED.value)
    iteration_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    pr_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_diff: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(DateTime)


class EventRow(Base):
    __tablename__ = "events"

    event_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String, ForeignKey("tasks.task_id"))
    created_at: Mapped[datetime] = mapped_column(DateTime)
    severity: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ProjectRecord(BaseModel):
    project_id: str
    name: str
    local_path: str
    remote_url: str | None = None
    created_at: datetime
    last_synced_at: datetime | None = None

    @classmethod
    def from_row(cls, row: ProjectRow) -> "ProjectRecord":
        return cls(
            project_id=row.project_id,
            name=row.name,
            local_path=row.local_path,
            remote_url=row.remote_url,
            created_at=_aware(row.created_at),
            last_synced_at=_aware(row.last_synced_at),
        )


class TaskRecord(BaseModel):
    task_id: str
    prompt: str
    project_id: str
    source_branch: str
    target_branch: str
    state: str
    iteration_count: int = 0
    consecutive_failures: int = 0
    reason: str | None = None
    pr_url: str | None = None
    last_diff: str | None = None
    cancel_requested: bool = False
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @classmethod
    def from_row(cls, row: TaskRow) -> "TaskRecord":
        return cls(
            task_id=row.task_id,
            prompt=row.prompt,
            project_id=row.project_id,
            source_branch=row.source_branch,
            target_branch=row.target_branch,
            state=row.state,
            iteration_count=row.iteration_count or 0,
            consecutive_failures=row.consecutive_failures or 0,
            reason=row.reason,
            pr_url=row.pr_url,
            last_diff=row.last_diff,
            cancel_requested=bool(row.cancel_requested),
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )


class EventRecord(BaseModel):
    event_id: int
    task_id: str
    created_at: datetime
    severity: str
    message: str

    @classmethod
    def from_row(cls, row: EventRow) -> "EventRecord":
        return cls(
            event_id=row.event_id,
            task_id=row.task_id,
            created_at=_aware(row.created_at),
            severity=row.severity,
            message=row.message,
        )
