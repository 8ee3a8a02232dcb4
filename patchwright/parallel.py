"""
PATCHWRIGHT Parallel Runner

Runs several tasks at once on a thread pool. Every worker gets its own
Controller but they share one TaskStore and one ProjectLocks, so git
mutations on the same project are serialized while model calls overlap.
Each task still works in its own worktree on its own branch.
"""

from __future__ import annotations

import concurrent.futures
from typing import Callable

from loguru import logger
from rich.console import Console
from rich.table import Table

from patchwright.config_loader import PatchwrightConfig
from patchwright.controller import Controller
from patchwright.event_bus import EventBus
from patchwright.router import Router
from patchwright.store import TaskStore
from patchwright.store.models import TaskRecord
from patchwright.workspace.locks import ProjectLocks

console = Console()


def run_parallel(
    config: PatchwrightConfig,
    store: TaskStore,
    task_ids: list[str],
    max_workers: int = 3,
    locks: ProjectLocks | None = None,
    bus: EventBus | None = None,
    router_factory: Callable[[PatchwrightConfig], Router] = Router,
    show_summary: bool = True,
) -> list[TaskRecord]:
    """Run `task_ids` to terminal states and return their final records in input order."""
    locks = locks or ProjectLocks()
    bus = bus or EventBus()

    if show_summary:
        _print_parallel_header(len(task_ids), max_workers)

    def _run_single_task(task_id: str) -> TaskRecord:
        controller = Controller(config, store, locks=locks, bus=bus, router_factory=router_factory)
        return controller.run(task_id)

    results: dict[str, TaskRecord] = {}
    with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_to_id = {executor.submit(_run_single_task, task_id): task_id for task_id in task_ids}

        for future in concurrent.futures.as_completed(future_to_id):
            task_id = future_to_id[future]
            try:
                record = future.result()
            except Exception as e:
                logger.error(f"[PARALLEL] Task {task_id} crashed: {e}")
                record = store.get_task(task_id)
            if record is None:
                continue
            results[task_id] = record
            if show_summary:
                _log_task_completion(record)

    ordered = [results[task_id] for task_id in task_ids if task_id in results]
    if show_summary:
        _print_parallel_summary(ordered)
    return ordered


# --- Helpers ---

def _print_parallel_header(count: int, workers: int) -> None:
    console.print(f"\n[bold]PATCHWRIGHT parallel mode — {count} tasks, {workers} workers[/]")
    console.print("[dim]Each task runs in its own worktree; git writes are serialized per project.[/]\n")


def _log_task_completion(record: TaskRecord) -> None:
    color = "green" if record.state == "completed" else "red"
    console.print(f"  [{color}]{record.task_id[:8]}: {record.state}[/] [dim]{record.reason or ''}[/]")


def _print_parallel_summary(records: list[TaskRecord]) -> None:
    table = Table(title="Parallel Run Results", border_style="bright_green")
    table.add_column("Task")
    table.add_column("State")
    table.add_column("Iterations")
    table.add_column("PR / Branch")
    table.add_column("Reason")

    for r in records:
        color = "green" if r.state == "completed" else "red"
        table.add_row(
            r.task_id[:8],
            f"[{color}]{r.state}[/]",
            str(r.iteration_count),
            (r.pr_url or r.target_branch)[:60],
            (r.reason or "")[:60],
        )

    console.print(table)
    successes = sum(1 for r in records if r.state == "completed")
    console.print(f"\n[bold]{successes}/{len(records)} completed[/]")
