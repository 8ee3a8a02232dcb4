import subprocess
from pathlib import Path

import pytest

from patchwright.config_loader import LimitsConfig, PatchwrightConfig, WorkspaceConfig
from patchwright.router import RouterResponse
from patchwright.store import TaskStore
from patchwright.workspace import init_repository

AUTHOR = ("Test Author", "test@example.com")

README_DIFF = """diff --git a/README.md b/README.md
--- a/README.md
+++ b/README.md
@@ -1 +1,2 @@
 # demo
+Hello from a patch
"""


class FakeRouter:
    """Replays canned model replies. An Exception in the list is raised instead."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls: list[list[dict]] = []

    def complete(self, messages):
        self.calls.append(messages)
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return RouterResponse(content=reply, model="fake/model")

    def user_message(self, call: int) -> str:
        return self.calls[call][-1]["content"]


def git(repo: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True,
    ).stdout.strip()


def commit_file(repo: Path, rel_path: str, content: str, message: str = "add file") -> None:
    target = repo / rel_path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    git(repo, "add", rel_path)
    git(repo, "-c", f"user.name={AUTHOR[0]}", "-c", f"user.email={AUTHOR[1]}", "commit", "-m", message)


@pytest.fixture
def repo(tmp_path) -> Path:
    path = tmp_path / "repo"
    init_repository(path, "demo", *AUTHOR)
    return path


@pytest.fixture
def config(tmp_path) -> PatchwrightConfig:
    return PatchwrightConfig(
        workspace=WorkspaceConfig(home=str(tmp_path / "home"), author_name=AUTHOR[0], author_email=AUTHOR[1]),
        limits=LimitsConfig(),
    )


@pytest.fixture
def store(tmp_path):
    s = TaskStore.open(tmp_path / "state" / "patchwright.db")
    yield s
    s.close()


@pytest.fixture
def project(store, repo):
    return store.create_project("demo", repo)
