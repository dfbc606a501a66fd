from types import SimpleNamespace
from unittest.mock import AsyncMock

import litellm
import pytest

from actiongate.config_loader import ActionGateConfig
from actiongate.router import (
    BudgetExceededError,
    OracleUnavailable,
    RateLimitExceeded,
    Router,
    _build_kwargs,
)


def _response(content):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15),
    )


@pytest.fixture
def router():
    return Router(ActionGateConfig())


@pytest.mark.asyncio
async def test_complete_routes_by_role(router, monkeypatch):
    mock = AsyncMock(return_value=_response('{"ok": true}'))
    monkeypatch.setattr(litellm, "acompletion", mock)

    response = await router.complete("classifier", [{"role": "user", "content": "hi"}], temperature=0.0)

    assert response.content == '{"ok": true}'
    assert response.model == ActionGateConfig().routing.classifier
    assert response.tokens_used == 15
    assert mock.await_args.kwargs["temperature"] == 0.0
    assert router.budget_for(None).usage.call_count == 1


@pytest.mark.asyncio
async def test_complete_prompt(router, monkeypatch):
    monkeypatch.setattr(litellm, "acompletion", AsyncMock(return_value=_response("pong")))
    assert await router.complete_prompt("responder", "ping") == "pong"


@pytest.mark.asyncio
async def test_unknown_role(router):
    with pytest.raises(ValueError):
        await router.complete("poet", [])


@pytest.mark.asyncio
async def test_budget_exceeded_is_a_rate_limit(router, monkeypatch):
    mock = AsyncMock(return_value=_response("unused"))
    monkeypatch.setattr(litellm, "acompletion", mock)
    budget = router.budget_for("conv-a")
    budget.usage.total_tokens = budget.max_tokens

    with pytest.raises(RateLimitExceeded) as exc_info:
        await router.complete("classifier", [], conversation_id="conv-a")

    assert isinstance(exc_info.value, BudgetExceededError)
    mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_provider_rate_limit(router, monkeypatch):
    error = litellm.RateLimitError(message="quota", llm_provider="gemini", model="gemini/gemini-2.0-flash")
    monkeypatch.setattr(litellm, "acompletion", AsyncMock(side_effect=error))

    with pytest.raises(RateLimitExceeded):
        await router.complete("classifier", [])


@pytest.mark.asyncio
async def test_transient_errors_retried_then_unavailable(router, monkeypatch):
    error = litellm.APIConnectionError(message="reset", llm_provider="gemini", model="gemini/gemini-2.0-flash")
    mock = AsyncMock(side_effect=error)
    monkeypatch.setattr(litellm, "acompletion", mock)
    # Skip the exponential wait between attempts
    monkeypatch.setattr(Router._acompletion.retry, "wait", lambda retry_state: 0)

    with pytest.raises(OracleUnavailable):
        await router.complete("classifier", [])

    assert mock.await_count == 3


def test_o_series_models_drop_temperature():
    kwargs = _build_kwargs("openai/o3-mini", [], 0.2, 100, None)
    assert "temperature" not in kwargs
    kwargs = _build_kwargs("gemini/gemini-2.0-flash", [], 0.2, 100, {"type": "json_object"})
    assert kwargs["temperature"] == 0.2
    assert kwargs["response_format"] == {"type": "json_object"}


@pytest.mark.asyncio
async def test_budget_is_kept_per_conversation(router, monkeypatch):
    monkeypatch.setattr(litellm, "acompletion", AsyncMock(return_value=_response("ok")))
    spent = router.budget_for("conv-a")
    spent.usage.total_tokens = spent.max_tokens

    response = await router.complete("classifier", [], conversation_id="conv-b")

    assert response.content == "ok"
    assert router.budget_for("conv-b").usage.total_tokens == 15
    with pytest.raises(BudgetExceededError):
        await router.complete("classifier", [], conversation_id="conv-a")


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [
    litellm.BadRequestError(message="bad", model="gemini/gemini-2.0-flash", llm_provider="gemini"),
    litellm.ContextWindowExceededError(message="too long", model="gemini/gemini-2.0-flash", llm_provider="gemini"),
])
async def test_rejected_calls_are_unavailable(router, monkeypatch, error):
    monkeypatch.setattr(litellm, "acompletion", AsyncMock(side_effect=error))

    with pytest.raises(OracleUnavailable):
        await router.complete("classifier", [])
