from types import SimpleNamespace

import litellm
import pytest

from patchwright.config_loader import LimitsConfig, PatchwrightConfig
from patchwright.errors import BudgetExceededError, ModelError
from patchwright.router import Router, _build_kwargs

MESSAGES = [{"role": "user", "content": "hi"}]


def _response(content="NO_CHANGES", tokens=12):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=tokens - 2, completion_tokens=2, total_tokens=tokens),
    )


@pytest.fixture(autouse=True)
def no_cost_lookup(monkeypatch):
    monkeypatch.setattr(litellm, "completion_cost", lambda completion_response: 0.0)


def test_temperature_dropped_for_reasoning_models():
    assert "temperature" in _build_kwargs("anthropic/claude-sonnet-4-5", MESSAGES, 0.0, 100, 30)
    assert "temperature" not in _build_kwargs("openai/o3-mini", MESSAGES, 0.0, 100, 30)
    assert "temperature" not in _build_kwargs("gpt-5", MESSAGES, 0.0, 100, 30)


def test_complete_records_usage(monkeypatch):
    calls = []

    def fake_completion(**kwargs):
        calls.append(kwargs)
        return _response("diff --git a/x b/x", tokens=40)

    monkeypatch.setattr(litellm, "completion", fake_completion)
    router = Router(PatchwrightConfig())

    response = router.complete(MESSAGES)

    assert response.content == "diff --git a/x b/x"
    assert response.tokens_used == 40
    assert router.budget.usage.call_count == 1
    assert calls[0]["timeout"] == router.config.routing.timeout_seconds


def test_provider_failure_becomes_model_error(monkeypatch):
    def broken(**kwargs):
        raise ConnectionError("connection reset")

    monkeypatch.setattr(litellm, "completion", broken)

    with pytest.raises(ModelError, match="connection reset"):
        Router(PatchwrightConfig()).complete(MESSAGES)


def test_budget_exhaustion(monkeypatch):
    monkeypatch.setattr(litellm, "completion", lambda **kwargs: _response(tokens=50))
    router = Router(PatchwrightConfig(limits=LimitsConfig(max_tokens_per_task=50)))

    router.complete(MESSAGES)
    with pytest.raises(BudgetExceededError):
        router.complete(MESSAGES)


def test_rate_limits_are_retried(monkeypatch):
    attempts = []

    def flaky(**kwargs):
        attempts.append(1)
        if len(attempts) < 2:
            raise litellm.RateLimitError("slow down", llm_provider="openai", model="gpt-4o")
        return _response()

    monkeypatch.setattr(litellm, "completion", flaky)
    router = Router(PatchwrightConfig(limits=LimitsConfig(rate_limit_retries=2)))
    monkeypatch.setattr(router, "_retrying", _no_wait(router._retrying))

    assert router.complete(MESSAGES).content == "NO_CHANGES"
    assert len(attempts) == 2


def _no_wait(factory):
    def build():
        retrying = factory()
        return retrying.copy(wait=lambda retry_state: 0)
    return build


def test_empty_choices_become_model_error(monkeypatch):
    monkeypatch.setattr(
        litellm, "completion",
        lambda **kwargs: SimpleNamespace(choices=[], usage=None),
    )

    with pytest.raises(ModelError, match="no choices"):
        Router(PatchwrightConfig()).complete(MESSAGES)
