"""
PATCHWRIGHT Agents

An agent is:
  - A system prompt
  - A structured input template
  - A parser for the raw model reply

Agents are stateless between calls. State lives in the store and the repo.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from patchwright.router import Router, RouterResponse


class AgentContext(BaseModel):
    """Everything one model call needs to know about the task."""
    task_id: str
    prompt: str
    repo_path: str
    repository_context: str = ""
    apply_feedback: str | None = None  # git apply stderr from the previous iteration
    validation_error: str | None = None  # only set on retries within an iteration
    fallback_files: list[str] = Field(default_factory=list)
    global_fallback: bool = False
    attempt: int = 1


class BaseAgent(ABC):
    """
    Base class for PATCHWRIGHT agents.

    Subclasses define:
      - role: str - used for logging
      - system_prompt: str - output contract for the model
      - build_messages() - constructs the chat messages
      - parse_response() - extracts structured output
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    def run(self, context: AgentContext) -> dict[str, Any]:
        """Execute the agent: build messages → call model → parse."""
        messages = self.build_messages(context)
        response = self.router.complete(messages)
        return self.parse_response(response, context)

    @abstractmethod
    def build_messages(self, context: AgentContext) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    @abstractmethod
    def parse_response(self, response: RouterResponse, context: AgentContext) -> dict[str, Any]:
        """Parse the LLM response into structured output."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
