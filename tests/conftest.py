from __future__ import annotations

import json
from typing import Any

import pytest

from actiongate.router import OracleUnavailable, RouterResponse


class ScriptedRouter:
    """Stands in for the oracle: pops one scripted reply per call, per role.

    A role with nothing left behaves like an unreachable oracle.
    Exceptions in the script are raised instead of returned.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None):
        self.script = {role: list(items) for role, items in (script or {}).items()}
        self.calls: list[tuple[str, list[dict[str, str]]]] = []
        self.conversation_ids: list[str | None] = []

    def add(self, role: str, *items: Any) -> None:
        self.script.setdefault(role, []).extend(items)

    def roles_called(self) -> list[str]:
        return [role for role, _ in self.calls]

    async def complete(self, role: str, messages: list[dict[str, str]], **kwargs: Any) -> RouterResponse:
        self.calls.append((role, messages))
        self.conversation_ids.append(kwargs.get("conversation_id"))
        queue = self.script.get(role) or []
        if not queue:
            raise OracleUnavailable(f"no scripted response for {role}")
        item = queue.pop(0)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, dict):
            item = json.dumps(item)
        return RouterResponse(content=item, model=f"test/{role}")


@pytest.fixture
def router() -> ScriptedRouter:
    return ScriptedRouter()
