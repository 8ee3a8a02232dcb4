"""
Patch Generator: bounded retry loop around one model call.

Each attempt ends in exactly one AttemptResult:

    Success(diff)          sanitized, validated, sane against the worktree
    Sentinel()             the model said NO_CHANGES
    ContentError(reason)   the reply was not a usable diff
    TransportError(reason) the provider call itself failed

The loop stops on Success or Sentinel and otherwise spends the attempt
budget, feeding the last content error back into the next prompt.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol, Union

from loguru import logger

from patchwright.agents import AgentContext
from patchwright.agents.implementer import DiffAgent
from patchwright.diffs import NO_CHANGES, check_against_worktree, sanitize, sanitize_reason, validate
from patchwright.errors import ModelError
from patchwright.router import Router


# ---------------------------------------------------------------------------
# Attempt results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Success:
    diff: str


@dataclass(frozen=True)
class Sentinel:
    pass


@dataclass(frozen=True)
class ContentError:
    reason: str


@dataclass(frozen=True)
class TransportError:
    reason: str


AttemptResult = Union[Success, Sentinel, ContentError, TransportError]


@dataclass
class IterationContext:
    """What the current iteration knows beyond the immutable task prompt."""
    iteration: int = 1
    repository_context: str = ""
    apply_feedback: str | None = None
    worktree: Path | None = None
    fallback_files: list[str] = field(default_factory=list)
    global_fallback: bool = False


class TaskLike(Protocol):
    task_id: str
    prompt: str


EventSink = Callable[[str, str, str], None]  # (task_id, severity, message)


def _discard_event(task_id: str, severity: str, message: str) -> None:
    logger.debug(f"[GENERATOR] {task_id} {severity}: {message}")


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------

class PatchGenerator:
    """Asks the model for a diff until it gets a usable one or runs out of attempts."""

    def __init__(
        self,
        router: Router,
        max_attempts: int = 3,
        max_diff_lines: int = 5000,
        on_event: EventSink | None = None,
        agent: DiffAgent | None = None,
    ):
        self.agent = agent or DiffAgent(router)
        self.max_attempts = max_attempts
        self.max_diff_lines = max_diff_lines
        self.on_event = on_event or _discard_event

    def generate_diff(self, task: TaskLike, context: IterationContext) -> str | None:
        """Return a validated diff, the NO_CHANGES sentinel, or None when exhausted."""
        validation_error: str | None = None

        for attempt in range(1, self.max_attempts + 1):
            result = self._attempt(task, context, attempt, validation_error)
            label = f"Iteration {context.iteration}, diff attempt {attempt}/{self.max_attempts}"

            if isinstance(result, Success):
                lines = result.diff.count("\n")
                self.on_event(task.task_id, "info", f"{label}: valid diff ({lines} lines)")
                return result.diff

            if isinstance(result, Sentinel):
                self.on_event(task.task_id, "info", f"{label}: model reported {NO_CHANGES}")
                return NO_CHANGES

            if isinstance(result, ContentError):
                validation_error = result.reason
                self.on_event(task.task_id, "warning", f"{label} rejected: {result.reason}")
            else:
                self.on_event(task.task_id, "warning", f"{label} failed (model call): {result.reason}")

        logger.warning(f"[GENERATOR] {task.task_id}: no usable diff after {self.max_attempts} attempts")
        return None

    def _attempt(
        self,
        task: TaskLike,
        context: IterationContext,
        attempt: int,
        validation_error: str | None,
    ) -> AttemptResult:
        agent_context = AgentContext(
            task_id=task.task_id,
            prompt=task.prompt,
            repo_path=str(context.worktree or ""),
            repository_context=context.repository_context,
            apply_feedback=context.apply_feedback,
            fallback_files=list(context.fallback_files),
            global_fallback=context.global_fallback,
            validation_error=validation_error if attempt > 1 else None,
            attempt=attempt,
        )

        try:
            raw = self.agent.run(agent_context)["raw"]
        except ModelError as exc:
            return TransportError(str(exc))

        if raw.strip() == NO_CHANGES:
            return Sentinel()

        diff = sanitize(raw)
        if diff is None:
            return ContentError(f"Sanitization failed: {sanitize_reason(raw)}")

        result = validate(diff, max_lines=self.max_diff_lines)
        if not result.ok:
            return ContentError(f"Invalid diff format: {result.describe()}")

        if context.worktree is not None:
            problems = check_against_worktree(diff, context.worktree, task.prompt)
            if problems:
                return ContentError("; ".join(problems))

        return Success(diff)
