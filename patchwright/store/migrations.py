"""
Schema migrations and the boot-time schema guard.

Migrations are applied in version order and recorded in
`schema_migrations(version, name, applied_at)`. A record is a claim, not
a proof: a migration can be recorded yet only partially applied, or the
file can be edited by hand afterwards. `ensure_schema` therefore checks
every table and column the highest recorded version implies and adds
whatever is missing with a definition that accepts existing rows.

Both functions are idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection, Engine

from patchwright.store.models import utc_now


@dataclass(frozen=True)
class ColumnSpec:
    table: str
    name: str
    ddl: str  # must be valid for ALTER TABLE ADD COLUMN on a populated table


@dataclass(frozen=True)
class Migration:
    version: int
    name: str
    statements: list[str] = field(default_factory=list)
    columns: list[ColumnSpec] = field(default_factory=list)


MIGRATIONS: list[Migration] = [
    Migration(
        version=1,
        name="initial_schema",
        statements=[
            """
            CREATE TABLE IF NOT EXISTS projects (
                project_id VARCHAR PRIMARY KEY,
                name VARCHAR NOT NULL UNIQUE,
                local_path TEXT NOT NULL,
                created_at DATETIME NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS tasks (
                task_id VARCHAR PRIMARY KEY,
                prompt TEXT NOT NULL,
                project_id VARCHAR REFERENCES projects(project_id),
                source_branch VARCHAR NOT NULL,
                target_branch VARCHAR NOT NULL,
                state VARCHAR NOT NULL,
                iteration_count INTEGER NOT NULL DEFAULT 0,
                created_at DATETIME NOT NULL,
                updated_at DATETIME NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS events (
                event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                task_id VARCHAR NOT NULL REFERENCES tasks(task_id),
                created_at DATETIME NOT NULL,
                severity VARCHAR NOT NULL,
                message TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_events_by_task ON events(task_id, event_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_by_project ON tasks(project_id)",
        ],
        columns=[
            ColumnSpec("projects", "name", "VARCHAR"),
            ColumnSpec("projects", "local_path", "TEXT NOT NULL DEFAULT ''"),
            ColumnSpec("projects", "created_at", "DATETIME"),
            ColumnSpec("tasks", "prompt", "TEXT NOT NULL DEFAULT ''"),
            ColumnSpec("tasks", "project_id", "VARCHAR"),
            ColumnSpec("tasks", "source_branch", "VARCHAR NOT NULL DEFAULT 'main'"),
            ColumnSpec("tasks", "target_branch", "VARCHAR NOT NULL DEFAULT ''"),
            ColumnSpec("tasks", "state", "VARCHAR NOT NULL DEFAULT 'queued'"),
            ColumnSpec("tasks", "iteration_count", "INTEGER NOT NULL DEFAULT 0"),
            ColumnSpec("tasks", "created_at", "DATETIME"),
            ColumnSpec("tasks", "updated_at", "DATETIME"),
            ColumnSpec("events", "task_id", "VARCHAR NOT NULL DEFAULT ''"),
            ColumnSpec("events", "created_at", "DATETIME"),
            ColumnSpec("events", "severity", "VARCHAR NOT NULL DEFAULT 'info'"),
            ColumnSpec("events", "message", "TEXT NOT NULL DEFAULT ''"),
        ],
    ),
    Migration(
        version=2,
        name="add_remote_and_failure_tracking",
        columns=[
            ColumnSpec("projects", "remote_url", "TEXT"),
            ColumnSpec("tasks", "consecutive_failures", "INTEGER NOT NULL DEFAULT 0"),
            ColumnSpec("tasks", "reason", "TEXT"),
            ColumnSpec("tasks", "pr_url", "TEXT"),
        ],
    ),
    Migration(
        version=3,
        name="add_cancellation_and_sync",
        columns=[
            ColumnSpec("tasks", "cancel_requested", "BOOLEAN NOT NULL DEFAULT 0"),
            ColumnSpec("tasks", "last_diff", "TEXT"),
            ColumnSpec("projects", "last_synced_at", "DATETIME"),
        ],
    ),
]

LATEST_VERSION = MIGRATIONS[-1].version

_CREATE_MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    name VARCHAR NOT NULL,
    applied_at DATETIME NOT NULL
)
"""


def _column_names(conn: Connection, table: str) -> set[str]:
    inspector = inspect(conn)
    if not inspector.has_table(table):
        return set()
    return {col["name"] for col in inspector.get_columns(table)}


def _add_missing_columns(conn: Connection, columns: list[ColumnSpec]) -> list[str]:
    added = []
    for spec in columns:
        if spec.name in _column_names(conn, spec.table):
            continue
        conn.execute(text(f"ALTER TABLE {spec.table} ADD COLUMN {spec.name} {spec.ddl}"))
        added.append(f"{spec.table}.{spec.name}")
    return added


def applied_versions(engine: Engine) -> set[int]:
    with engine.begin() as conn:
        conn.execute(text(_CREATE_MIGRATIONS_TABLE))
        return {row[0] for row in conn.execute(text("SELECT version FROM schema_migrations"))}


def run_migrations(engine: Engine) -> list[int]:
    """Apply every migration not yet recorded. Returns the versions applied."""
    done = applied_versions(engine)
    applied = []

    for migration in MIGRATIONS:
        if migration.version in done:
            continue
        logger.info(f"[STORE] Applying migration v{migration.version}: {migration.name}")
        with engine.begin() as conn:
            for statement in migration.statements:
                conn.execute(text(statement))
            _add_missing_columns(conn, migration.columns)
            conn.execute(
                text("INSERT INTO schema_migrations (version, name, applied_at) VALUES (:v, :n, :t)"),
                {"v": migration.version, "n": migration.name, "t": utc_now().isoformat()},
            )
        applied.append(migration.version)

    return applied


def ensure_schema(engine: Engine) -> list[str]:
    """
    Repair drift between recorded migrations and the physical schema.

    Returns the `table.column` names that had to be added; an empty list
    means the schema already matched.
    """
    recorded = applied_versions(engine)
    if not recorded:
        return []
    highest = max(recorded)

    repaired: list[str] = []
    with engine.begin() as conn:
        for migration in MIGRATIONS:
            if migration.version > highest:
                break
            for statement in migration.statements:
                conn.execute(text(statement))
            repaired += _add_missing_columns(conn, migration.columns)

    for name in repaired:
        logger.warning(f"[STORE] Schema guard added missing column {name}")
    return repaired
