"""
ACTIONGATE Router: Language Oracle Adapter

Routes agent calls through LiteLLM so agents never know
which vendor is backing them. Handles per-conversation budgets,
transient-failure retries, and structured logging.

No business logic lives here: prompt in, text out.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

import litellm
from loguru import logger
from pydantic import BaseModel
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from actiongate.config_loader import ActionGateConfig


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class OracleUnavailable(Exception):
    """Network, timeout or provider failure calling the language oracle."""


class RateLimitExceeded(Exception):
    """The oracle or the execution path reported a usage limit."""


class BudgetExceededError(RateLimitExceeded):
    pass


_TRANSIENT_ERRORS = (
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    litellm.InternalServerError,
)


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
    """Tracks token + dollar spend per conversation engine."""
    max_tokens: int = 200_000
    max_dollars: float = 2.0
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

        Token counts come from the response's `usage` block. Cost comes from
        LiteLLM's cost calculator, which fails for models it has no price
        table for; those calls are counted with zero cost.
        """
        usage = getattr(response, "usage", None)
        if usage:
            self.usage.prompt_tokens += getattr(usage, "prompt_tokens", 0) or 0
            self.usage.completion_tokens += getattr(usage, "completion_tokens", 0) or 0
            self.usage.total_tokens += getattr(usage, "total_tokens", 0) or 0

        try:
            cost = litellm.completion_cost(completion_response=response)
            self.usage.estimated_cost += cost or 0.0
        except Exception as e:
            logger.debug(f"[ROUTER] No cost data for response: {e}")

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

def _is_o_series_model(model: str) -> bool:
    """OpenAI o-series reasoning models don't support temperature."""
    normalized = model.lower().replace("openai/", "")
    return normalized.startswith(("o1", "o3", "o4", "gpt-5"))


def _build_kwargs(
    model: str,
    messages: list[dict[str, str]],
    temperature: float,
    max_tokens: int,
    response_format: dict | None,
) -> dict[str, Any]:
    """
    Build LiteLLM kwargs with per-model param filtering.
    Different model families support different parameters.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
    }

    if not _is_o_series_model(model):
        kwargs["temperature"] = temperature

    if response_format:
        kwargs["response_format"] = response_format

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
    Vendor-agnostic oracle adapter.

    Agents call `await router.complete(role, messages)`.
    The router resolves the model, enforces budget, and returns the raw text.
    Transient provider errors are retried here; everything that survives the
    retries is raised as `OracleUnavailable` or `RateLimitExceeded`.
    """

    def __init__(self, config: ActionGateConfig):
        self.config = config
        self.budgets: dict[str, BudgetTracker] = {}
        self._role_model_map = {
            "classifier": config.routing.classifier,
            "continuity": config.routing.continuity,
            "checklist": config.routing.checklist,
            "responder": config.routing.responder,
        }

        litellm.suppress_debug_info = True

    def budget_for(self, conversation_id: str | None) -> BudgetTracker:
        """The spend tracker of one conversation. Calls without an id share one tracker."""
        key = conversation_id or ""
        if key not in self.budgets:
            self.budgets[key] = BudgetTracker(
                max_tokens=self.config.limits.max_tokens_per_conversation,
                max_dollars=self.config.limits.max_dollars_per_conversation,
            )
        return self.budgets[key]

    def resolve_model(self, role: str) -> str:
        model = self._role_model_map.get(role)
        if not model:
            raise ValueError(f"Unknown agent role: {role}. Known: {list(self._role_model_map)}")
        return model

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def _acompletion(self, **kwargs: Any) -> Any:
        return await litellm.acompletion(**kwargs)

    async def complete(
        self,
        role: str,
        messages: list[dict[str, str]],
        temperature: float = 0.2,
        max_tokens: int = 2048,
        response_format: dict | None = None,
        conversation_id: str | None = None,
    ) -> RouterResponse:
        """Send a chat completion request through LiteLLM.

        Args:
            role (str): Agent role name (classifier, continuity, checklist, responder).
            messages (list[dict[str, str]]): Standard chat messages [{"role": ..., "content": ...}].
            temperature (float, optional): Sampling temperature. Defaults to 0.2.
            max_tokens (int, optional): Max response tokens. Defaults to 2048.
            response_format (dict | None, optional): Provider-side output format hint.
            conversation_id (str | None, optional): Conversation whose budget is charged.

        Returns:
            RouterResponse: The completion text plus model, token and latency data.

        Raises:
            BudgetExceededError: If the conversation's token or dollar budget is spent.
            RateLimitExceeded: If the provider rejects the call for quota reasons.
            OracleUnavailable: If the provider cannot be reached after retries or rejects the call.
        """
        budget = self.budget_for(conversation_id)
        if budget.budget_exceeded:
            raise BudgetExceededError(f"Budget exceeded: {budget.summary()}")

        model = self.resolve_model(role)
        start = time.monotonic()

        logger.debug(f"[ROUTER] {role} → {model} ({len(messages)} messages)")

        kwargs = _build_kwargs(model, messages, temperature, max_tokens, response_format)

        try:
            response = await self._acompletion(**kwargs)
        except litellm.RateLimitError as e:
            logger.warning(f"[ROUTER] {role} rate limited by provider: {e}")
            raise RateLimitExceeded(str(e)) from e
        except _TRANSIENT_ERRORS as e:
            logger.error(f"[ROUTER] {role} oracle unavailable after retries: {e}")
            raise OracleUnavailable(str(e)) from e
        except Exception as e:
            # Bad request, context window, auth and not-found errors do not
            # share a litellm base class
            logger.error(f"[ROUTER] {role} oracle error: {e.__class__.__name__}: {e}")
            raise OracleUnavailable(f"{e.__class__.__name__}: {e}") from e

        elapsed_ms = int((time.monotonic() - start) * 1000)
        budget.record(response)

        content = response.choices[0].message.content or ""

        logger.debug(
            f"[ROUTER] {role} complete — "
            f"{budget.usage.total_tokens} tokens, "
            f"${budget.usage.estimated_cost:.4f}, "
            f"{elapsed_ms}ms"
        )

        usage = getattr(response, "usage", None)
        return RouterResponse(
            content=content,
            model=model,
            tokens_used=getattr(usage, "total_tokens", 0) or 0,
            cost=budget.usage.estimated_cost,
            latency_ms=elapsed_ms,
        )

    async def complete_prompt(self, role: str, prompt: str, **kwargs: Any) -> str:
        """Single-prompt form of `complete`: prompt text in, completion text out."""
        response = await self.complete(role, [{"role": "user", "content": prompt}], **kwargs)
        return response.content
