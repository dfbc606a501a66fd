"""
ACTIONGATE Execution Client

Talks to the external analysis service that actually refines, updates or
re-runs pipeline steps. Only ever called after the user confirmed.
What the service does with the request is outside this package; we only
learn whether it accepted it.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from actiongate.config_loader import ExecutionConfig
from actiongate.router import RateLimitExceeded
from actiongate.state import Action, Step


class ExecutionFailure(Exception):
    """The analysis service rejected or failed a confirmed action."""


class ActionDescriptor(BaseModel):
    submission_id: str
    conversation_id: str
    step: Step
    action: Action
    instructions: list[str] = Field(default_factory=list)
    explanation: str = ""


class ExecutionResult(BaseModel):
    success: bool
    message: str = ""
    run_id: str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class ExecutionClient(Protocol):
    async def execute(self, action: ActionDescriptor) -> ExecutionResult: ...


class HttpExecutionClient:
    """
    POSTs confirmed actions to `<base_url>/api/submission/<id>/actions`.

    A 429 becomes `RateLimitExceeded`; any other non-2xx, transport error or
    explicit `success: false` body becomes `ExecutionFailure`.
    """

    def __init__(self, config: ExecutionConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def execute(self, action: ActionDescriptor) -> ExecutionResult:
        url = f"{self.config.base_url.rstrip('/')}/api/submission/{action.submission_id}/actions"
        payload = {
            "step": action.step.value,
            "action": action.action.value,
            "instructions": action.instructions,
            "explanation": action.explanation,
            "conversation_id": action.conversation_id,
        }

        logger.info(f"[EXEC] {action.action.value} on {action.step.value} → {url}")

        timeout = httpx.Timeout(self.config.timeout_seconds)
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error(f"[EXEC] Request failed: {e}")
            raise ExecutionFailure(f"could not reach the analysis service ({e.__class__.__name__})") from e

        if resp.status_code == 429:
            raise RateLimitExceeded(resp.text or "usage limit reached")

        if resp.status_code >= 400:
            logger.error(f"[EXEC] Service returned {resp.status_code}: {resp.text[:300]}")
            raise ExecutionFailure(f"the analysis service returned HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        message = str(body.get("message") or "")
        if body.get("success") is False:
            raise ExecutionFailure(message or "the analysis service reported a failure")

        result = ExecutionResult(
            success=True,
            message=message,
            run_id=str(body["run_id"]) if body.get("run_id") is not None else None,
            raw=body,
        )
        logger.info(f"[EXEC] Accepted (run_id={result.run_id})")
        return result
