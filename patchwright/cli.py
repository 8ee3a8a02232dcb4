"""
PATCHWRIGHT CLI: The Interface

Projects:
  - patchwright project create <name> [--remote URL | --path DIR]
  - patchwright project list

Tasks:
  - patchwright submit "<prompt>" --project <name> [--run]
  - patchwright show <task-id>
  - patchwright logs <task-id> [--follow]
  - patchwright cancel <task-id>
  - patchwright run <task-id> / patchwright run-next
  - patchwright batch [--project <name>]   (parallel execution of the queue)

Plus:
  - patchwright status   (config, credentials, system tools)
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table

from patchwright.audit_logger import AuditLogger
from patchwright.config_loader import PatchwrightConfig, load_config, validate_api_keys
from patchwright.errors import ConfigurationError, PatchwrightError
from patchwright.event_bus import EventBus, TaskEvent
from patchwright.identity import BANNER, __codename__, __tagline__, __version__
from patchwright.jobs import JobService, StreamComplete
from patchwright.parallel import run_parallel
from patchwright.store import TaskStore
from patchwright.store.models import TaskRecord

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".patchwright" / ".env")

app = typer.Typer(
    name="patchwright",
    help=f"{__codename__} — {__tagline__}\nAutonomous code-modification executor.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
project_app = typer.Typer(help="Register and list projects.", no_args_is_help=True)
app.add_typer(project_app, name="project")

console = Console()

_SEVERITY_STYLE = {"info": "cyan", "warning": "yellow", "error": "red"}
_STATE_STYLE = {"queued": "dim", "running": "yellow", "completed": "green", "failed": "red"}


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner / wiring
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_green]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


def _service(config: PatchwrightConfig, live: bool = False) -> JobService:
    """Open the store and wire the audit log (and optionally a live printer) onto a fresh bus."""
    store = TaskStore.open(config.workspace.database_path)
    bus = EventBus()
    if live:
        bus.subscribe(_print_event)
    audit = AuditLogger(config.workspace.log_path / "audit.jsonl")
    return JobService(config, store, bus=bus, audit_log=audit)


def _print_event(event: TaskEvent) -> None:
    style = _SEVERITY_STYLE.get(event.severity, "white")
    console.print(f"[dim]{event.timestamp[11:19]}[/] [{style}]{event.severity:<7}[/] {event.message}")


def _print_task(task: TaskRecord) -> None:
    table = Table(title=f"Task {task.task_id}", border_style="cyan", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    style = _STATE_STYLE.get(task.state, "white")
    table.add_row("State", f"[{style}]{task.state}[/]")
    table.add_row("Prompt", task.prompt)
    table.add_row("Project", task.project_id)
    table.add_row("Branches", f"{task.source_branch} → {task.target_branch}")
    table.add_row("Iterations", str(task.iteration_count))
    table.add_row("Consecutive failures", str(task.consecutive_failures))
    if task.cancel_requested:
        table.add_row("Cancel requested", "yes")
    if task.reason:
        table.add_row("Reason", task.reason)
    if task.pr_url:
        table.add_row("Pull request", task.pr_url)
    table.add_row("Updated", task.updated_at.isoformat(timespec="seconds"))
    console.print(table)


def _exit_for(task: TaskRecord) -> None:
    style = _STATE_STYLE.get(task.state, "white")
    console.print(f"\n[bold {style}]Status: {task.state}[/] [dim]{task.reason or ''}[/]")
    if task.state != "completed":
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def status():
    """Check PATCHWRIGHT configuration and readiness."""
    _print_banner()
    config = load_config()

    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    console.print("\n[bold]Routing:[/]")
    console.print(f"  Implementer: {config.routing.implementer}")

    console.print("\n[bold]Limits:[/]")
    console.print(f"  Diff attempts/iteration:   {config.limits.max_diff_attempts}")
    console.print(f"  Consecutive diff failures: {config.limits.max_consecutive_diff_failures}")
    console.print(f"  Apply failures:            {config.limits.max_apply_failures}")
    console.print(f"  Fallback after:            {config.limits.fallback_after_apply_failures} apply failures")
    console.print(f"  Max iterations:            {config.limits.max_iterations}")
    console.print(f"  Max tokens/task:           {config.limits.max_tokens_per_task:,}")

    console.print("\n[bold]Workspace:[/]")
    console.print(f"  Database:  {config.workspace.database_path}")
    console.print(f"  Repos:     {config.workspace.repos_path}")
    console.print(f"  Worktrees: {config.workspace.worktrees_path}")

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")

    for tool in ["git", "gh"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)

    console.print(tools_table)


@project_app.command("create")
def project_create(
    name: str = typer.Argument(..., help="Unique project name"),
    remote: Optional[str] = typer.Option(None, "--remote", help="Clone from this git remote"),
    path: Optional[Path] = typer.Option(None, "--path", "-p", help="Adopt an existing local git checkout"),
):
    """Register a project (clone, adopt, or initialize a fresh repository)."""
    service = _service(load_config())
    try:
        project = service.register_project(name, remote_url=remote, local_path=path)
    except (ValueError, PatchwrightError) as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    finally:
        service.close()

    console.print(f"[green]Project {project.name} registered[/] [dim]{project.project_id}[/]")
    console.print(f"  Working copy: {project.local_path}")
    console.print(f"  Remote:       {project.remote_url or '(none; tasks complete locally)'}")


@project_app.command("list")
def project_list():
    """List registered projects."""
    service = _service(load_config())
    try:
        projects = service.store.list_projects()
    finally:
        service.close()

    if not projects:
        console.print("[dim]No projects yet. Create one with `patchwright project create`.[/]")
        return

    table = Table(title="Projects", border_style="cyan")
    table.add_column("Name")
    table.add_column("ID", style="dim")
    table.add_column("Working copy")
    table.add_column("Remote")
    for p in projects:
        table.add_row(p.name, p.project_id[:8], p.local_path, p.remote_url or "-")
    console.print(table)


@app.command()
def submit(
    prompt: str = typer.Argument(..., help="What to change, in plain language"),
    project: str = typer.Option(..., "--project", "-P", help="Project name or id"),
    source: str = typer.Option("main", "--source", "-s", help="Branch to start from and open the PR against"),
    target: Optional[str] = typer.Option(None, "--target", help="Task branch (default patchwright/<id>)"),
    run_now: bool = typer.Option(False, "--run", help="Execute the task immediately"),
    test_cmd: Optional[str] = typer.Option(None, "--test", "-t", help="Preflight test command"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Queue a change request against a project."""
    _configure_logging(verbose)
    config = _with_test_command(load_config(), test_cmd)
    service = _service(config, live=run_now)
    try:
        try:
            task = service.submit_task(prompt, project, source_branch=source, target_branch=target)
        except (ValueError, ConfigurationError) as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(1)

        console.print(f"[green]Queued[/] {task.task_id} [dim]({task.source_branch} → {task.target_branch})[/]")
        if not run_now:
            return

        _print_banner()
        task = service.run_task(task.task_id)
    finally:
        service.close()
    _exit_for(task)


@app.command()
def show(task_id: str = typer.Argument(..., help="Task id")):
    """Show a task's current state."""
    service = _service(load_config())
    try:
        task = service.get_task(task_id)
    except KeyError:
        console.print(f"[red]Unknown task: {task_id}[/]")
        raise typer.Exit(1)
    finally:
        service.close()
    _print_task(task)


@app.command()
def logs(
    task_id: str = typer.Argument(..., help="Task id"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep streaming until the task finishes"),
    poll: float = typer.Option(0.5, "--poll", help="Polling interval in seconds when following"),
):
    """Print a task's event log."""
    service = _service(load_config())
    try:
        if follow:
            for item in service.subscribe(task_id, poll_interval=poll):
                if isinstance(item, StreamComplete):
                    style = _STATE_STYLE.get(item.state, "white")
                    console.print(f"\n[bold {style}]Status: {item.state}[/] [dim]{item.reason or ''}[/]")
                else:
                    _print_event(_as_task_event(item))
            return

        service.get_task(task_id)
        for event in service.store.events_for(task_id):
            _print_event(_as_task_event(event))
    except KeyError:
        console.print(f"[red]Unknown task: {task_id}[/]")
        raise typer.Exit(1)
    finally:
        service.close()


@app.command()
def cancel(task_id: str = typer.Argument(..., help="Task id")):
    """Ask a task to stop at its next iteration boundary."""
    service = _service(load_config())
    try:
        task = service.cancel(task_id)
    except KeyError:
        console.print(f"[red]Unknown task: {task_id}[/]")
        raise typer.Exit(1)
    except PatchwrightError as e:
        console.print(f"[yellow]{e}[/]")
        raise typer.Exit(1)
    finally:
        service.close()
    console.print(f"[yellow]Cancellation requested[/] for {task.task_id} (state: {task.state})")


@app.command()
def run(
    task_id: str = typer.Argument(..., help="Task id"),
    test_cmd: Optional[str] = typer.Option(None, "--test", "-t", help="Preflight test command"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Execute one queued task."""
    _print_banner()
    _configure_logging(verbose)
    service = _service(_with_test_command(load_config(), test_cmd), live=True)
    try:
        task = service.run_task(task_id)
    except KeyError:
        console.print(f"[red]Unknown task: {task_id}[/]")
        raise typer.Exit(1)
    finally:
        service.close()
    _exit_for(task)


@app.command("run-next")
def run_next(
    test_cmd: Optional[str] = typer.Option(None, "--test", "-t", help="Preflight test command"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Execute the oldest queued task."""
    _print_banner()
    _configure_logging(verbose)
    service = _service(_with_test_command(load_config(), test_cmd), live=True)
    try:
        task = service.run_next()
    finally:
        service.close()

    if task is None:
        console.print("[dim]Queue is empty.[/]")
        return
    _exit_for(task)


@app.command()
def batch(
    project: Optional[str] = typer.Option(None, "--project", "-P", help="Only run this project's tasks"),
    workers: int = typer.Option(3, "--workers", "-w", help="Max concurrent tasks"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max tasks to pick up"),
    test_cmd: Optional[str] = typer.Option(None, "--test", "-t"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run every queued task in parallel."""
    _print_banner()
    _configure_logging(verbose)

    config = _with_test_command(load_config(), test_cmd)
    service = _service(config)
    try:
        project_id = service.resolve_project(project).project_id if project else None
        queued = service.store.list_tasks(project_id=project_id, state="queued", limit=limit)
        if not queued:
            console.print("[dim]No queued tasks.[/]")
            return

        console.print(f"[cyan]Found {len(queued)} queued tasks[/]")
        for t in queued:
            console.print(f"  [dim]{t.task_id[:8]}  {t.prompt[:60]}[/]")

        results = run_parallel(
            config,
            service.store,
            [t.task_id for t in reversed(queued)],
            max_workers=workers,
            locks=service.locks,
            bus=service.bus,
        )
    except ConfigurationError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    finally:
        service.close()

    # Exit code based on results
    failures = sum(1 for r in results if r.state != "completed")
    if failures:
        raise typer.Exit(1)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _with_test_command(config: PatchwrightConfig, test_cmd: str | None) -> PatchwrightConfig:
    if not test_cmd:
        return config
    preflight = config.preflight.model_copy(update={"test": test_cmd})
    return config.model_copy(update={"preflight": preflight})


def _as_task_event(event) -> TaskEvent:
    return TaskEvent(
        event_id=event.event_id,
        timestamp=event.created_at.isoformat(),
        task_id=event.task_id,
        severity=event.severity,
        message=event.message,
    )


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
