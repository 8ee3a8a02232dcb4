"""
Error taxonomy shared across PATCHWRIGHT components.

Content, apply and transport failures are retried inside their own
budgets and never raise past the controller. Configuration errors are
fatal to the task. Publication errors are fatal to publication only.
"""

from __future__ import annotations


class PatchwrightError(Exception):
    """Base class for all PATCHWRIGHT errors."""


class ConfigurationError(PatchwrightError):
    """A precondition no retry can fix: missing project, credential or working copy."""


class TerminalStateError(PatchwrightError):
    """Raised when something tries to mutate a completed or failed task."""

    def __init__(self, task_id: str, state: str):
        super().__init__(f"Task {task_id} is terminal ({state}); refusing to modify it")
        self.task_id = task_id
        self.state = state


class WorkspaceError(PatchwrightError):
    """A git subprocess failed or timed out."""


class BranchConflict(WorkspaceError):
    """Target branch exists with divergent history and force reset is disabled."""


class PublishError(PatchwrightError):
    """Pull request creation failed."""


class ModelError(PatchwrightError):
    """The model provider call failed or timed out."""


class BudgetExceededError(ModelError):
    """Token or dollar budget for the task has been spent."""
