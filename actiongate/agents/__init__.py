"""
ACTIONGATE Agent Roster

Each agent is:
  - A system prompt
  - A structured input template
  - A constrained output schema with a safe fallback

Agents are stateless between turns. State lives in the message store.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from actiongate.router import Router, RouterResponse


class MalformedOracleOutput(ValueError):
    """The oracle answered, but not in the shape we asked for."""


def extract_json_object(text: str) -> dict[str, Any]:
    """Return the first balanced `{...}` object in `text`.

    The oracle may wrap its JSON in prose or code fences. Braces inside JSON
    strings are skipped while matching.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : i + 1]
                    try:
                        parsed = json.loads(candidate)
                    except json.JSONDecodeError as e:
                        raise MalformedOracleOutput(f"Invalid JSON object: {e}") from e
                    if not isinstance(parsed, dict):
                        raise MalformedOracleOutput("JSON payload is not an object")
                    return parsed
        # Unbalanced from this brace; try the next one
        start = text.find("{", start + 1)
    raise MalformedOracleOutput("No JSON object found in oracle output")


def format_transcript(lines: list[tuple[str, str]]) -> str:
    """Render (role, content) pairs as a plain `User:` / `Assistant:` transcript."""
    rendered = []
    for role, content in lines:
        speaker = "User" if role == "user" else "Assistant"
        rendered.append(f"{speaker}: {content}")
    return "\n".join(rendered)


class BaseAgent(ABC):
    """
    Base class for all ACTIONGATE agents.

    Subclasses define:
      - role: str, maps to router model
      - system_prompt: str, agent personality + output contract
    and build their own messages and parsing in their public method.
    """

    role: str = "unknown"
    system_prompt: str = "You are a helpful assistant."

    def __init__(self, router: Router):
        self.router = router

    async def _ask(self, messages: list[dict[str, str]], **kwargs: Any) -> RouterResponse:
        return await self.router.complete(role=self.role, messages=messages, **kwargs)

    @abstractmethod
    def build_messages(self, *args: Any, **kwargs: Any) -> list[dict[str, str]]:
        """Build the message list for the LLM call."""
        ...

    def _system_msg(self) -> dict[str, str]:
        return {"role": "system", "content": self.system_prompt}

    def _user_msg(self, content: str) -> dict[str, str]:
        return {"role": "user", "content": content}
