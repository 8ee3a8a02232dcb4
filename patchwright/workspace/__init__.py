"""
PATCHWRIGHT Working-Copy Manager

Each task gets its own `git worktree` checked out on the task's target
branch, so concurrent tasks on one project never share a checkout. The
project's clone is the single source of refs; branch-mutating calls are
expected to run under that project's lock (see `locks.ProjectLocks`).

Apply failures never corrupt the branch: on any failure the worktree is
hard-reset to the last good commit.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from patchwright.errors import BranchConflict, ConfigurationError, WorkspaceError

CHECKPOINT_TAG_PREFIX = "patchwright/job-"

# Never let git block on a credential prompt.
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


@dataclass(frozen=True)
class ApplyResult:
    ok: bool
    error: str = ""
    commit: str | None = None


def _run_cmd(
    cmd: list[str],
    cwd: Path,
    timeout: float = 60,
    check: bool = True,
    input_text: str | None = None,
) -> subprocess.CompletedProcess:
    env = {**os.environ, **_GIT_ENV}
    try:
        result = subprocess.run(
            cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout, input=input_text, env=env,
        )
    except subprocess.TimeoutExpired as exc:
        raise WorkspaceError(f"Git timed out after {timeout}s: {' '.join(cmd)}") from exc
    except FileNotFoundError as exc:
        raise WorkspaceError(f"Cannot run {cmd[0]} in {cwd}: {exc}") from exc
    if check and result.returncode != 0:
        raise WorkspaceError(f"Git failed: {' '.join(cmd)}\n{result.stderr}")
    return result


def is_git_repository(path: Path) -> bool:
    path = Path(path)
    if not (path / ".git").exists():
        return False
    result = subprocess.run(
        ["git", "rev-parse", "--is-inside-work-tree"], cwd=path, capture_output=True, text=True,
    )
    return result.returncode == 0 and result.stdout.strip() == "true"


def init_repository(
    path: Path,
    name: str,
    author_name: str,
    author_email: str,
    timeout: float = 60,
) -> None:
    """Create a fresh repository with a README and one commit on `main`."""
    path.mkdir(parents=True, exist_ok=True)
    identity = ["-c", f"user.name={author_name}", "-c", f"user.email={author_email}"]

    _run_cmd(["git", "init"], cwd=path, timeout=timeout)
    (path / "README.md").write_text(f"# {name}\n")
    _run_cmd(["git", "add", "README.md"], cwd=path, timeout=timeout)
    _run_cmd(["git", *identity, "commit", "-m", "Initial commit"], cwd=path, timeout=timeout)
    _run_cmd(["git", "branch", "-M", "main"], cwd=path, timeout=timeout)
    logger.info(f"[WORKSPACE] Initialized repository {name} at {path}")


def clone_repository(remote_url: str, path: Path, timeout: float = 60) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    _run_cmd(["git", "clone", remote_url, str(path)], cwd=path.parent, timeout=timeout)
    logger.info(f"[WORKSPACE] Cloned {remote_url} into {path}")


class WorkingCopy:
    """
    One task's view of a project's repository.

    Lifecycle: ensure_branch → apply_patch (repeat) → commits_ahead / push /
    checkpoint_tag → cleanup. The branch survives cleanup; the worktree does not.
    """

    def __init__(
        self,
        repo_path: Path,
        task_id: str,
        worktree_root: Path,
        timeout: float = 60,
        author_name: str = "PATCHWRIGHT Bot",
        author_email: str = "patchwright@localhost",
    ):
        self.repo_path = Path(repo_path).resolve()
        self.task_id = task_id
        self.worktree_path = Path(worktree_root).resolve() / task_id
        self.timeout = timeout
        self.author_name = author_name
        self.author_email = author_email
        self.branch: str | None = None

    @property
    def path(self) -> Path:
        return self.worktree_path

    # ------------------------------------------------------------------
    # Branch management
    # ------------------------------------------------------------------

    def ensure_branch(self, source: str, target: str, force_reset: bool = True) -> Path:
        """
        Check out `target` in this task's worktree, starting at the tip of `source`.

        If `target` already has commits that `source` lacks, it is reset only
        when `force_reset` is set; otherwise BranchConflict is raised.
        """
        if not is_git_repository(self.repo_path):
            raise ConfigurationError(f"Project path is not a git working copy: {self.repo_path}")

        start = self._start_point(source)

        if self._branch_exists(target):
            ahead = self._count(f"{start}..refs/heads/{target}", cwd=self.repo_path)
            if ahead and not force_reset:
                raise BranchConflict(
                    f"Branch {target} has {ahead} commit(s) not on {source}; refusing to reset it"
                )
            if ahead:
                logger.warning(f"[WORKSPACE] Resetting divergent branch {target} ({ahead} commits) to {source}")

        if self.worktree_path.exists():
            logger.warning(f"[WORKSPACE] Found stale worktree for {self.task_id}. Removing...")
            self.cleanup()

        self.worktree_path.parent.mkdir(parents=True, exist_ok=True)
        self._git("worktree", "add", "-B", target, str(self.worktree_path), start)
        self.branch = target
        logger.info(f"[WORKSPACE] {target} ready at {self.worktree_path} (from {start})")
        return self.worktree_path

    def head(self) -> str:
        return self._worktree_git("rev-parse", "HEAD").stdout.strip()

    def commits_ahead(self, source: str) -> int:
        return self._count(f"{self._start_point(source)}..HEAD", cwd=self.worktree_path)

    def rollback(self, source: str) -> None:
        """Drop every commit the task made, returning the branch to the source tip."""
        start = self._start_point(source)
        self._worktree_git("reset", "--hard", start)
        self._worktree_git("clean", "-fd")
        logger.info(f"[WORKSPACE] Rolled back {self.branch} to {start}")

    # ------------------------------------------------------------------
    # Patching
    # ------------------------------------------------------------------

    def apply_patch(self, diff: str, message: str) -> ApplyResult:
        """
        `git apply --check`, then `git apply`, then commit.

        On failure git's stderr is returned verbatim and the worktree is
        restored to the commit it had before the call.
        """
        last_good = self.head()

        check = self._worktree_git("apply", "--check", "-", input_text=diff, check=False)
        if check.returncode != 0:
            self._restore(last_good)
            return ApplyResult(ok=False, error=check.stderr.strip() or check.stdout.strip())

        applied = self._worktree_git("apply", "-", input_text=diff, check=False)
        if applied.returncode != 0:
            self._restore(last_good)
            return ApplyResult(ok=False, error=applied.stderr.strip() or applied.stdout.strip())

        try:
            self._worktree_git("add", "-A")
            if not self._worktree_git("status", "--porcelain").stdout.strip():
                self._restore(last_good)
                return ApplyResult(ok=False, error="Patch applied cleanly but changed nothing")
            self._worktree_git(
                "-c", f"user.name={self.author_name}",
                "-c", f"user.email={self.author_email}",
                "commit", "-m", message,
            )
        except WorkspaceError as exc:
            self._restore(last_good)
            return ApplyResult(ok=False, error=str(exc))

        sha = self.head()
        logger.info(f"[WORKSPACE] Applied patch on {self.branch}: {sha[:8]}")
        return ApplyResult(ok=True, commit=sha)

    def _restore(self, commit: str) -> None:
        self._worktree_git("reset", "--hard", commit, check=False)
        self._worktree_git("clean", "-fd", check=False)

    # ------------------------------------------------------------------
    # Remote, tags, cleanup
    # ------------------------------------------------------------------

    def has_remote(self) -> bool:
        return self._git("remote", "get-url", "origin", check=False).returncode == 0

    def sync(self) -> bool:
        """Fetch from origin when one is configured. Returns whether a fetch happened."""
        if not self.has_remote():
            return False
        self._git("fetch", "--prune", "origin")
        logger.info(f"[WORKSPACE] Fetched origin for {self.repo_path.name}")
        return True

    def push(self, force: bool = True) -> None:
        """Push the task branch. Force by default: the branch belongs to the task."""
        cmd = ["push", "-u", "origin", self.branch]
        if force:
            cmd.insert(1, "--force")
        self._worktree_git(*cmd)
        logger.info(f"[WORKSPACE] Pushed (force={force}): {self.branch}")

    def checkpoint_tag(self) -> str:
        tag = f"{CHECKPOINT_TAG_PREFIX}{self.task_id}"
        self._worktree_git("tag", "-f", tag, "HEAD")
        return tag

    def cleanup(self) -> None:
        """Remove the worktree. The task branch is kept for review."""
        self._git("worktree", "remove", "--force", str(self.worktree_path), check=False)
        if self.worktree_path.exists():
            shutil.rmtree(self.worktree_path, ignore_errors=True)
        self._git("worktree", "prune", check=False)
        logger.debug(f"[WORKSPACE] Worktree removed: {self.task_id}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start_point(self, source: str) -> str:
        """Prefer origin's copy of the source branch when it exists."""
        for ref in (f"refs/remotes/origin/{source}", f"refs/heads/{source}"):
            if self._git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False).returncode == 0:
                return ref
        raise ConfigurationError(f"Source branch {source!r} not found in {self.repo_path}")

    def _branch_exists(self, name: str) -> bool:
        return self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False).returncode == 0

    def _count(self, revision_range: str, cwd: Path) -> int:
        out = _run_cmd(["git", "rev-list", "--count", revision_range], cwd=cwd, timeout=self.timeout)
        return int(out.stdout.strip() or 0)

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return _run_cmd(["git", *args], cwd=self.repo_path, timeout=self.timeout, check=check)

    def _worktree_git(
        self, *args: str, check: bool = True, input_text: str | None = None,
    ) -> subprocess.CompletedProcess:
        return _run_cmd(
            ["git", *args], cwd=self.worktree_path, timeout=self.timeout, check=check, input_text=input_text,
        )
