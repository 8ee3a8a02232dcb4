"""
PATCHWRIGHT Publisher: opens the pull request.

Uses the `gh` CLI with GH_TOKEN as the bearer credential. Projects without
a remote are completed locally: the branch and its checkpoint tag are the
deliverable.
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from patchwright.config_loader import PublishConfig
from patchwright.errors import ConfigurationError, PublishError
from patchwright.store.models import ProjectRecord, TaskRecord
from patchwright.workspace import WorkingCopy
from patchwright.workspace.preflight import PreflightResult

_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


@dataclass(frozen=True)
class PublishResult:
    url: str | None = None
    remote_id: str | None = None
    is_local: bool = False

    @classmethod
    def local(cls) -> "PublishResult":
        return cls(is_local=True)


def build_title(prompt: str, prefix: str = "PATCHWRIGHT", max_chars: int = 60) -> str:
    """`<prefix>: ` + the first `max_chars` characters of the prompt, `...` if cut."""
    flat = " ".join(prompt.split())
    title = flat[:max_chars]
    if len(flat) > max_chars:
        title += "..."
    return f"{prefix}: {title}"


def build_body(task: TaskRecord, preflight: PreflightResult | None) -> str:
    preflight_text = preflight.summary() if preflight else "Not run"
    return f"""## PATCHWRIGHT Automated PR

**Task ID:** {task.task_id}
**Iterations:** {task.iteration_count}
**Source Branch:** {task.source_branch}
**Target Branch:** {task.target_branch}

### Original Prompt
{task.prompt}

### Preflight Results
{preflight_text}

---
*Generated by PATCHWRIGHT — Prompt In. Pull Request Out.*
"""


def github_token(environ: dict[str, str] | None = None) -> str | None:
    environ = os.environ if environ is None else environ
    return environ.get("GH_TOKEN") or environ.get("GITHUB_TOKEN") or None


class Publisher:
    """Turns a task branch with commits into a reviewable pull request."""

    def __init__(
        self,
        config: PublishConfig,
        on_event: Callable[[str, str, str], None] | None = None,
        environ: dict[str, str] | None = None,
    ):
        self.config = config
        self.on_event = on_event or (lambda task_id, severity, message: None)
        self.environ = environ

    def check_credentials(self, working_copy: WorkingCopy) -> None:
        """Fail early when a PR will be needed but no token is available.

        Raises:
            ConfigurationError: the project has a remote and neither GH_TOKEN nor
                GITHUB_TOKEN is set.
        """
        if working_copy.has_remote() and not github_token(self.environ):
            raise ConfigurationError("GH_TOKEN (or GITHUB_TOKEN) is not set; cannot publish to origin")

    def publish(
        self,
        task: TaskRecord,
        project: ProjectRecord,
        working_copy: WorkingCopy,
        preflight: PreflightResult | None = None,
    ) -> PublishResult:
        """
        Push the task branch and open a PR against the source branch.

        Raises:
            PublishError: nothing to publish, missing token, push or `gh` failure.
        """
        ahead = working_copy.commits_ahead(task.source_branch)
        if ahead == 0:
            raise PublishError(f"Branch {task.target_branch} has no commits ahead of {task.source_branch}")

        if not working_copy.has_remote():
            self.on_event(
                task.task_id, "info",
                f"No remote configured; completed locally on {task.target_branch} ({ahead} commit(s)), "
                "PR creation skipped",
            )
            logger.info(f"[PUBLISH] {project.name} has no remote; local completion")
            return PublishResult.local()

        token = github_token(self.environ)
        if not token:
            raise PublishError("GH_TOKEN (or GITHUB_TOKEN) is not set; cannot create a pull request")

        if self.config.push:
            self.on_event(task.task_id, "info", f"Pushing {task.target_branch} to origin")
            working_copy.push()

        title = build_title(task.prompt, self.config.title_prefix, self.config.title_max_chars)
        body = build_body(task, preflight)
        env = {**(self.environ if self.environ is not None else os.environ), "GH_TOKEN": token}

        try:
            result = subprocess.run(
                [
                    "gh", "pr", "create",
                    "--title", title,
                    "--body", body,
                    "--head", task.target_branch,
                    "--base", task.source_branch,
                ],
                cwd=working_copy.repo_path,
                capture_output=True,
                text=True,
                env=env,
                timeout=120,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise PublishError(f"PR creation failed: {exc}") from exc

        if result.returncode != 0:
            raise PublishError(f"PR creation failed: {result.stderr.strip()}")

        url = result.stdout.strip().splitlines()[-1] if result.stdout.strip() else ""
        match = _PR_NUMBER_RE.search(url)
        logger.info(f"[PUBLISH] Pull request created: {url}")
        return PublishResult(url=url or None, remote_id=match.group(1) if match else None)
