"""
Checklist IR.

A checklist is the restatement of pending requests shown to the user for
approval. Replies are parsed once into a `Checklist`; everything downstream
(rendering, prose rewriting) works on the item list.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

CHECKLIST_SENTINEL = "Here's a summary of what you're asking for:"
CHECKLIST_QUESTION = "Would you like me to proceed with these changes?"

_BULLET_RE = re.compile(r"^\s*[-*•]\s+(.+?)\s*$")
_CLAUSE_SPLIT_RE = re.compile(r"(?<=[.!?;])\s+|\n+")

# Lexical families that mark a clause as a request for change
ACTION_KEYWORDS = (
    "remove", "eliminate", "delete", "get rid of", "don't need", "not needed",
    "add", "include", "create", "insert", "implement", "need",
    "change", "modify", "update", "edit", "adjust", "fix",
)

_QUESTION_OPENERS = ("what", "explain", "tell me", "can you tell", "how", "why", "which", "who")


class Checklist(BaseModel):
    items: list[str] = Field(default_factory=list)
    is_checklist: bool = False
    prose: str = ""  # non-bullet text, framing removed

    @property
    def description(self) -> str:
        """Items joined into a single run of text, no trailing punctuation."""
        return " ".join(item.rstrip(" .") for item in self.items).strip()

    def render(self) -> str:
        lines = [CHECKLIST_SENTINEL, ""]
        lines.extend(f"- {item}" for item in self.items)
        lines.extend(["", CHECKLIST_QUESTION])
        return "\n".join(lines)


def parse_checklist(text: str) -> Checklist:
    """Split a reply into bullet items and the remaining prose.

    A reply counts as a checklist only when it carries the sentinel title and
    at least one bullet.
    """
    items: list[str] = []
    prose_lines: list[str] = []
    for line in (text or "").splitlines():
        match = _BULLET_RE.match(line)
        if match:
            items.append(match.group(1))
            continue
        stripped = line.strip()
        if stripped in (CHECKLIST_SENTINEL, CHECKLIST_QUESTION):
            continue
        if stripped.startswith("Would you like me to proceed"):
            continue
        prose_lines.append(line)

    has_sentinel = CHECKLIST_SENTINEL.lower() in (text or "").lower()
    return Checklist(
        items=items,
        is_checklist=has_sentinel and bool(items),
        prose="\n".join(prose_lines).strip(),
    )


def first_clause(message: str) -> str:
    """First sentence of a message, preferring one that asks for a change."""
    clauses = [c.strip(" ,") for c in _CLAUSE_SPLIT_RE.split(message.strip()) if c.strip(" ,")]
    if not clauses:
        return ""
    for clause in clauses:
        lowered = clause.lower()
        if any(keyword in lowered for keyword in ACTION_KEYWORDS):
            return clause.rstrip(".;")
    return clauses[0].rstrip(".;")


def build_local_checklist(user_messages: list[str], limit: int = 3) -> Checklist:
    """Fallback checklist from the last `limit` user messages."""
    items = []
    for message in user_messages[-limit:]:
        clause = first_clause(message)
        if clause and clause not in items:
            items.append(clause)
    return Checklist(items=items, is_checklist=bool(items))


def looks_like_question(text: str) -> bool:
    lowered = text.strip().lower()
    return lowered.endswith("?") or lowered.startswith(_QUESTION_OPENERS)


def _capitalize(text: str) -> str:
    return text[:1].upper() + text[1:] if text else text


def to_prose(checklist: Checklist, user_text: str, is_confirmation: bool) -> str:
    """Recompose a checklist into one sentence without any checklist framing."""
    description = checklist.description
    if not description:
        if is_confirmation:
            return "I'll proceed with your request right away."
        return checklist.prose

    if looks_like_question(user_text):
        return f"{_capitalize(description)}."
    if is_confirmation:
        return f"I'll proceed with that right away. {_capitalize(description)}."
    return f"I'm happy to help with that. {_capitalize(description)}."
