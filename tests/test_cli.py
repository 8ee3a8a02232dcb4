from typer.testing import CliRunner

from patchwright import __version__
from patchwright.cli import app

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"PATCHWRIGHT v{__version__}" in result.stdout


def test_project_submit_show_cancel_flow(tmp_path, monkeypatch):
    monkeypatch.setenv("PATCHWRIGHT_HOME", str(tmp_path / "home"))

    created = runner.invoke(app, ["project", "create", "demo"])
    assert created.exit_code == 0, created.stdout
    assert "Project demo registered" in created.stdout

    listed = runner.invoke(app, ["project", "list"])
    assert "demo" in listed.stdout

    submitted = runner.invoke(app, ["submit", "Add a greeting to the README", "--project", "demo"])
    assert submitted.exit_code == 0, submitted.stdout
    task_id = submitted.stdout.split("Queued")[1].split()[0]

    shown = runner.invoke(app, ["show", task_id])
    assert "queued" in shown.stdout

    cancelled = runner.invoke(app, ["cancel", task_id])
    assert cancelled.exit_code == 0
    assert "failed" in cancelled.stdout

    logs = runner.invoke(app, ["logs", task_id])
    assert "Task failed: cancelled" in logs.stdout


def test_submit_to_unknown_project_fails(tmp_path, monkeypatch):
    monkeypatch.setenv("PATCHWRIGHT_HOME", str(tmp_path / "home"))
    result = runner.invoke(app, ["submit", "Anything", "--project", "nope"])
    assert result.exit_code == 1
    assert "Unknown project" in result.stdout


def test_show_unknown_task(tmp_path, monkeypatch):
    monkeypatch.setenv("PATCHWRIGHT_HOME", str(tmp_path / "home"))
    result = runner.invoke(app, ["show", "missing"])
    assert result.exit_code == 1
