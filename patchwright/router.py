"""
PATCHWRIGHT Router: Vendor-Agnostic Model Abstraction

Routes model calls through LiteLLM so the generator never knows
which vendor is backing it. Handles budget tracking, per-call
timeouts, rate-limit retries, and structured logging.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from patchwright.config_loader import PatchwrightConfig
from patchwright.errors import BudgetExceededError, ModelError


# ---------------------------------------------------------------------------
# Usage Tracking
# ---------------------------------------------------------------------------

@dataclass
class UsageRecord:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    call_count: int = 0


@dataclass
class BudgetTracker:
    """Tracks token + dollar spend per task."""
    max_tokens: int = 400_000
    max_dollars: float = 10.0
    usage: UsageRecord = field(default_factory=UsageRecord)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.max_tokens - self.usage.total_tokens)

    @property
    def dollars_remaining(self) -> float:
        return max(0.0, self.max_dollars - self.usage.estimated_cost)

    @property
    def budget_exceeded(self) -> bool:
        return self.usage.total_tokens >= self.max_tokens or self.usage.estimated_cost >= self.max_dollars

    def record(self, response: Any) -> None:
        """Record usage from a LiteLLM response.

        Token counts come from `response.usage`. Cost comes from LiteLLM's
        price table; models missing from it are counted as free.
        """
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            self.usage.estimated_cost += litellm.completion_cost(completion_response=response)
        except Exception as exc:  # unknown model pricing
            logger.debug(f"[ROUTER] No cost data for response: {exc}")

        self.usage.call_count += 1

    def summary(self) -> dict:
        return {
            "total_tokens": self.usage.total_tokens,
            "estimated_cost": round(self.usage.estimated_cost, 4),
            "call_count": self.usage.call_count,
            "tokens_remaining": self.tokens_remaining,
            "dollars_remaining": round(self.dollars_remaining, 4),
        }


# ---------------------------------------------------------------------------
# Model capability helpers
# ---------------------------------------------------------------------------

def _is_gpt5_model(model: str) -> bool:
    """GPT-5 family models have restricted parameter support."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith("gpt-5")


def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    timeout: float,
) -> dict[str, Any]:
    """Build LiteLLM kwargs with per-model param filtering."""
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "timeout": timeout,
    }

    if not _is_gpt5_model(model) and not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    return kwargs


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------

class RouterResponse(BaseModel):
    content: str
    model: str
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0


class Router:
    """
    Vendor-agnostic model router.

    The generator calls `router.complete(messages)`. The router resolves the
    model, enforces the task budget, retries provider rate limits, and turns
    every other provider failure into a `ModelError`.

    One Router per task: the budget it carries is that task's budget.
    """

    def __init__(self, config: PatchwrightConfig):
        self.config = config
        self.model = config.routing.implementer
        self.budget = BudgetTracker(
            max_tokens=config.limits.max_tokens_per_task,
            max_dollars=config.limits.max_dollars_per_task,
        )

        litellm.suppress_debug_info = True

    def _retrying(self) -> Retrying:
        return Retrying(
            retry=retry_if_exception_type(litellm.RateLimitError),
            stop=stop_after_attempt(self.config.limits.rate_limit_retries + 1),
            wait=wait_exponential(min=1, max=10),
            reraise=True,
        )

    def complete(self, messages: list[dict[str, str]]) -> RouterResponse:
        """Send one completion request through LiteLLM.

        Args:
            messages: Standard chat messages [{"role": ..., "content": ...}].

        Returns:
            RouterResponse: content, model, tokens, cost and latency.

        Raises:
            BudgetExceededError: The task's token or dollar budget is spent.
            ModelError: The provider failed, timed out, or kept rate-limiting.
        """
        if self.budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {self.budget.summary()}")

        routing = self.config.routing
        kwargs = _build_kwargs(
            self.model, messages, routing.temperature, routing.max_tokens, routing.timeout_seconds,
        )

        logger.debug(f"[ROUTER] implementer → {self.model} ({len(messages)} messages)")
        start = time.monotonic()

        try:
            response = self._retrying()(litellm.completion, **kwargs)
        except litellm.Timeout as exc:
            raise ModelError(f"Model call timed out after {routing.timeout_seconds}s: {exc}") from exc
        except Exception as exc:
            raise ModelError(f"Model call failed: {type(exc).__name__}: {exc}") from exc

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.budget.record(response)

        if not getattr(response, "choices", None):
            raise ModelError(f"Model returned no choices ({self.model})")
        message = getattr(response.choices[0], "message", None)
        content = getattr(message, "content", None) or ""

        logger.debug(
            f"[ROUTER] implementer complete: "
            f"{self.budget.usage.total_tokens} tokens, "
            f"${self.budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )

        return RouterResponse(
            content=content,
            model=self.model,
            tokens_used=getattr(getattr(response, "usage", None), "total_tokens", 0) or 0,
            cost=self.budget.usage.estimated_cost,
            latency_ms=elapsed_ms,
        )
